"""End-to-end prompt assembly.

state -> before_context hooks -> default blocks -> block config -> compile
-> tag expansion -> before_generation hooks -> cache breakpoints
"""

from pathlib import Path
from typing import Callable

import structlog

from storyloom.analyses import AnalysisStore
from storyloom.block_config import BlockConfigStore
from storyloom.blocks import (
    add_cache_breakpoints, apply_block_config, compile_blocks, create_default_blocks,
)
from storyloom.context import BuildOptions, ContextStateBuilder
from storyloom.hooks import PluginPipeline
from storyloom.models import ContextBlock, ContextBuildState, ContextMessage
from storyloom.registry import FragmentTypeRegistry
from storyloom.scripts import build_script_context
from storyloom.store import FragmentStore
from storyloom.tags import FragmentTagExpander

logger = structlog.get_logger(__name__)

BlockTransform = Callable[[list[ContextBlock], ContextBuildState], list[ContextBlock]]


class ContextPipeline:
    def __init__(self, data_dir: Path, plugins: PluginPipeline | None = None,
                 registry: FragmentTypeRegistry | None = None):
        self.store = FragmentStore(data_dir, registry)
        self.registry = self.store.registry
        self.builder = ContextStateBuilder(self.store, AnalysisStore(data_dir))
        self.block_configs = BlockConfigStore(data_dir)
        self.expander = FragmentTagExpander(self.store, self.registry)
        self.plugins = plugins or PluginPipeline()

    async def build_state(self, story_id: str, author_input: str = "",
                          options: BuildOptions | None = None) -> ContextBuildState:
        state = await self.builder.build(story_id, author_input, options)
        return await self.plugins.before_context(state)

    async def build_blocks(self, state: ContextBuildState, agent_name: str | None = None,
                           transform: BlockTransform | None = None) -> list[ContextBlock]:
        """Default blocks with the story-wide (or per-agent) config applied."""
        config = await self.block_configs.get_config(state.story.id, agent_name)
        blocks = create_default_blocks(state, self.registry)
        if transform is not None:
            blocks = transform(blocks, state)
        script_context = None
        if any(b.type == "script" and b.enabled for b in config.custom_blocks):
            script_context = await build_script_context(state, self.store)
        return apply_block_config(blocks, config, script_context)

    async def compile(
        self,
        story_id: str,
        author_input: str = "",
        options: BuildOptions | None = None,
        agent_name: str | None = None,
        transform: BlockTransform | None = None,
        tag_depth: int = 0,
        cache_breakpoints: bool = True,
    ) -> list[ContextMessage]:
        state = await self.build_state(story_id, author_input, options)
        blocks = await self.build_blocks(state, agent_name, transform)
        messages = compile_blocks(blocks)
        messages = await self.expander.expand_messages(messages, story_id, tag_depth)
        messages = await self.plugins.before_generation(messages)
        if cache_breakpoints:
            messages = add_cache_breakpoints(messages)
        logger.debug("Context compiled", story_id=story_id, agent_name=agent_name,
                     blocks=len(blocks), messages=len(messages))
        return messages

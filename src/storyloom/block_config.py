"""Per-story and per-agent block configuration files."""

import json
from dataclasses import asdict, fields, replace
from pathlib import Path

import structlog

from storyloom.models import BlockConfig, BlockOverride, CustomBlock
from storyloom.store import read_json, write_json_atomic

logger = structlog.get_logger(__name__)

STORY_CONFIG_FILE = "block-config.json"
AGENT_CONFIG_DIR = "agent-blocks"


class BlockConfigStore:
    """Reads and writes BlockConfig JSON.

    agent_name=None addresses the story-wide config (stories/<id>/block-config.json),
    otherwise stories/<id>/agent-blocks/<agent_name>.json.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def config_path(self, story_id: str, agent_name: str | None = None) -> Path:
        story_dir = self.data_dir / "stories" / story_id
        if agent_name is None:
            return story_dir / STORY_CONFIG_FILE
        return story_dir / AGENT_CONFIG_DIR / f"{agent_name}.json"

    async def get_config(self, story_id: str, agent_name: str | None = None) -> BlockConfig:
        """Load a config. Missing, unreadable or invalid files give an empty config."""
        path = self.config_path(story_id, agent_name)
        try:
            data = read_json(path)
            return BlockConfig.from_dict(data) if data else BlockConfig()
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError):
            logger.warning("Invalid block config, using empty config", path=str(path))
            return BlockConfig()

    async def save_config(self, story_id: str, config: BlockConfig,
                          agent_name: str | None = None) -> BlockConfig:
        write_json_atomic(self.config_path(story_id, agent_name), config.to_dict())
        return config

    async def add_custom_block(self, story_id: str, block: CustomBlock,
                               agent_name: str | None = None) -> BlockConfig:
        config = await self.get_config(story_id, agent_name)
        if any(b.id == block.id for b in config.custom_blocks):
            raise ValueError(f"Custom block already exists: {block.id}")
        config.custom_blocks.append(block)
        config.block_order.append(block.id)
        return await self.save_config(story_id, config, agent_name)

    async def update_custom_block(self, story_id: str, block_id: str, updates: dict,
                                  agent_name: str | None = None) -> BlockConfig | None:
        """Patch a custom block. Returns None if the block does not exist."""
        config = await self.get_config(story_id, agent_name)
        allowed = {f.name for f in fields(CustomBlock)} - {"id"}
        unknown = set(updates) - allowed
        if unknown:
            raise ValueError(f"Unknown custom block fields: {', '.join(sorted(unknown))}")
        for i, block in enumerate(config.custom_blocks):
            if block.id == block_id:
                config.custom_blocks[i] = replace(block, **updates)
                return await self.save_config(story_id, config, agent_name)
        return None

    async def delete_custom_block(self, story_id: str, block_id: str,
                                  agent_name: str | None = None) -> BlockConfig:
        config = await self.get_config(story_id, agent_name)
        config.custom_blocks = [b for b in config.custom_blocks if b.id != block_id]
        config.block_order = [i for i in config.block_order if i != block_id]
        config.overrides.pop(block_id, None)
        return await self.save_config(story_id, config, agent_name)

    async def update_overrides(self, story_id: str, overrides: dict[str, BlockOverride],
                               block_order: list[str] | None = None,
                               agent_name: str | None = None) -> BlockConfig:
        """Merge overrides field by field; replace block_order when given."""
        config = await self.get_config(story_id, agent_name)
        for block_id, override in overrides.items():
            current = config.overrides.get(block_id, BlockOverride())
            patch = {k: v for k, v in asdict(override).items() if v is not None}
            config.overrides[block_id] = replace(current, **patch)
        if block_order is not None:
            config.block_order = list(block_order)
        return await self.save_config(story_id, config, agent_name)

    async def set_disabled_tools(self, story_id: str, tools: list[str],
                                 agent_name: str | None = None) -> BlockConfig:
        config = await self.get_config(story_id, agent_name)
        config.disabled_tools = list(tools)
        return await self.save_config(story_id, config, agent_name)

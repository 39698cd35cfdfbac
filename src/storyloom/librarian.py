"""Librarian analysis: reads one prose fragment and reports continuity signals."""

import asyncio
from pathlib import Path

import structlog

from storyloom.analyses import AnalysisStore
from storyloom.block_config import BlockConfigStore
from storyloom.blocks import apply_block_config, compile_blocks
from storyloom.collector import AnalysisCollector, create_analysis_tools
from storyloom.models import BlockRole, ContextBlock, Fragment, LibrarianAnalysis, StoryMeta
from storyloom.providers import collect_text, run_tool_loop
from storyloom.store import FragmentStore
from storyloom.tags import FragmentTagExpander

logger = structlog.get_logger(__name__)

AGENT_NAME = "librarian.analyze"
SYSTEM_PROMPT_TAG = "pass-to-librarian-system-prompt"

ANALYZE_INSTRUCTIONS = """\
You are a librarian agent for a collaborative writing app.
Your job is to analyze new prose fragments and maintain story continuity.

You have five reporting tools. Use them to report your findings:

1. updateSummary: a concise summary of what happened in the new prose.
   Also provide structured fields when possible: events, stateChanges, openThreads.
   If the summary text is blank, structured fields are required.
2. reportMentions: each character reference by name, nickname or title (not pronouns),
   with the character ID and the exact text used.
3. reportContradictions: where the new prose contradicts established facts in the
   summary, character descriptions or knowledge. Only flag clear contradictions.
4. suggestKnowledge: new or updated character/knowledge fragments. Set
   targetFragmentId to refine an existing fragment; omit it for new information.
5. reportTimeline: significant events. "position" is relative to the previous prose:
   "before" for a flashback, "during" if concurrent, "after" if it follows.

Always call updateSummary. Only call the other tools if there are relevant findings.
Only return 'Analysis complete' in your final output."""


def create_analysis_blocks(
    story: StoryMeta,
    fragment: Fragment,
    characters: list[Fragment],
    knowledge: list[Fragment],
    system_fragments: list[Fragment] = (),
) -> list[ContextBlock]:
    blocks = [ContextBlock("instructions", BlockRole.SYSTEM, ANALYZE_INSTRUCTIONS, 100)]
    if system_fragments:
        blocks.append(ContextBlock(
            "system-fragments", BlockRole.SYSTEM,
            "\n\n".join(f"## {f.name}\n{f.content}" for f in system_fragments), 200,
        ))

    summary = story.summary or "(No summary yet. This may be the beginning of the story.)"
    blocks.append(ContextBlock("story-summary", BlockRole.USER,
                               f"## Story Summary So Far\n{summary}", 100))
    if characters:
        lines = ["## Known Characters"]
        lines.extend(f"- {c.id}: {c.name}: {c.description}" for c in characters)
        blocks.append(ContextBlock("characters", BlockRole.USER, "\n".join(lines), 200))
    if knowledge:
        lines = ["## Knowledge Base"]
        lines.extend(f"- {k.id}: {k.name}: {k.content}" for k in knowledge)
        blocks.append(ContextBlock("knowledge", BlockRole.USER, "\n".join(lines), 300))
    blocks.append(ContextBlock(
        "new-prose", BlockRole.USER,
        f"## New Prose Fragment\nFragment ID: {fragment.id}\n{fragment.content}", 400,
    ))
    return blocks


def append_summary(current: str, update: str) -> str:
    update = update.strip()
    if not update:
        return current
    return f"{current.strip()}\n\n{update}" if current.strip() else update


async def run_librarian(data_dir: Path, story_id: str, fragment_id: str,
                        model_key: str, max_steps: int = 6) -> LibrarianAnalysis:
    """Analyze one prose fragment, persist the analysis and extend the running summary."""
    store = FragmentStore(data_dir)
    log = logger.bind(story_id=story_id, fragment_id=fragment_id)

    story, fragment = await asyncio.gather(
        store.get_story(story_id), store.get_fragment(story_id, fragment_id))
    if story is None:
        raise ValueError(f"Story not found: {story_id}")
    if fragment is None:
        raise ValueError(f"Fragment not found: {fragment_id}")

    characters, knowledge, everything = await asyncio.gather(
        store.list_fragments(story_id, "character"),
        store.list_fragments(story_id, "knowledge"),
        store.list_fragments(story_id),
    )
    system_fragments = [f for f in everything if SYSTEM_PROMPT_TAG in f.tags]

    config = await BlockConfigStore(data_dir).get_config(story_id, AGENT_NAME)
    blocks = create_analysis_blocks(story, fragment, characters, knowledge, system_fragments)
    blocks = apply_block_config(blocks, config)
    messages = compile_blocks(blocks)
    messages = await FragmentTagExpander(store).expand_messages(messages, story_id)

    collector = AnalysisCollector()
    tools = [t for t in create_analysis_tools(collector) if t.name not in config.disabled_tools]
    log.info("Librarian analysis started", model=model_key, tools=len(tools))
    await collect_text(run_tool_loop(model_key, messages, tools, max_steps=max_steps))

    if not collector.summary_update:
        log.warning("Librarian produced no summary")
    analysis = await AnalysisStore(data_dir).save_analysis(
        story_id, collector.to_analysis(fragment_id))

    story.summary = append_summary(story.summary, analysis.summary_update)
    await store.update_story(story)
    log.info("Librarian analysis saved", analysis_id=analysis.id,
             mentions=len(analysis.mentions), contradictions=len(analysis.contradictions))
    return analysis

"""Context blocks — default block set, user config merge, compilation to messages."""

from dataclasses import replace

import structlog

from storyloom.models import (
    BlockConfig, BlockOverride, BlockRole, BlockSource, ContentPart,
    ContextBlock, ContextBuildState, ContextMessage, Placement,
)
from storyloom.registry import (
    CHAIN_TYPES, FragmentTypeRegistry, default_registry, plural_label, type_label,
)
from storyloom.scripts import ScriptContext, evaluate_script

logger = structlog.get_logger(__name__)

ROLE_ORDER = (BlockRole.SYSTEM, BlockRole.USER)
AUTHOR_INPUT_MARKER = "[@block=author-input]"

WRITER_INSTRUCTIONS = (
    "You are a creative writing assistant. Your task is to write prose that continues "
    "the story based on the author's direction.\n"
    "IMPORTANT: Output the prose directly as your text response. Do NOT use tools to "
    "write or save prose, that is handled automatically.\n"
    "Only use tools to look up context you need before writing."
)

# Base order values of the builtin blocks
ORDER_INSTRUCTIONS = 100
ORDER_TOOLS = 200
ORDER_STORY_INFO = 100
ORDER_SUMMARY = 150
ORDER_CHAPTER_SUMMARIES = 175
ORDER_PROSE = 200
ORDER_STICKY = 300
ORDER_SHORTLIST = 400
ORDER_AUTHOR_INPUT = 600


def _type_order(types, registry: FragmentTypeRegistry) -> list[str]:
    """Registry order first, unregistered types alphabetically after."""
    known = [d.type for d in registry.list_types()]
    present = set(types)
    return [t for t in known if t in present] + sorted(present - set(known))


def tool_lines(registry: FragmentTypeRegistry, extra_tools: list[tuple[str, str]] | None = None) -> list[str]:
    lines = []
    for definition in registry.list_types():
        cap = type_label(definition.type)
        lines.append(f"- get{cap}(id): Get full content of a {definition.type} fragment")
        lines.append(f"- list{plural_label(definition.type)}(): List all {definition.type} fragments")
    lines.append("- listFragmentTypes(): List all available fragment types")
    for name, description in extra_tools or []:
        lines.append(f"- {name}: {description}")
    return lines


def create_default_blocks(
    state: ContextBuildState,
    registry: FragmentTypeRegistry | None = None,
    extra_tools: list[tuple[str, str]] | None = None,
) -> list[ContextBlock]:
    """Builtin blocks for the writer prompt.

    Always present: instructions, tools, author-input. Everything else only
    when the state has something to show.
    """
    registry = registry or default_registry()
    blocks = [
        ContextBlock("instructions", BlockRole.SYSTEM, WRITER_INSTRUCTIONS, ORDER_INSTRUCTIONS),
        ContextBlock(
            "tools", BlockRole.SYSTEM,
            "## Available Tools\nYou have access to the following tools:\n"
            + "\n".join(tool_lines(registry, extra_tools)),
            ORDER_TOOLS,
        ),
    ]

    story = state.story
    if story.name or story.description:
        blocks.append(ContextBlock(
            "story-info", BlockRole.USER,
            f"## Story: {story.name}\n{story.description}".rstrip(),
            ORDER_STORY_INFO,
        ))

    if state.summary:
        blocks.append(ContextBlock(
            "summary", BlockRole.USER,
            f"## Story Summary So Far\n{state.summary}", ORDER_SUMMARY,
        ))

    if story.settings.hierarchical_summaries and state.chapter_summaries:
        lines = ["## Earlier Chapters"]
        for chapter in state.chapter_summaries:
            lines.append(f"### {chapter.name}\n{chapter.summary}")
        blocks.append(ContextBlock(
            "chapter-summaries", BlockRole.USER, "\n\n".join(lines), ORDER_CHAPTER_SUMMARIES,
        ))

    if state.prose_fragments:
        rendered = "\n\n".join(registry.render(p) for p in state.prose_fragments)
        blocks.append(ContextBlock(
            "prose", BlockRole.USER, f"## Recent Prose\n{rendered}", ORDER_PROSE,
        ))

    for i, type_name in enumerate(_type_order(state.sticky, registry)):
        if type_name in CHAIN_TYPES:
            continue
        for role, placement in ((BlockRole.SYSTEM, Placement.SYSTEM), (BlockRole.USER, Placement.USER)):
            placed = [f for f in state.sticky[type_name] if f.placement == placement]
            if not placed:
                continue
            block_id = f"sticky-{type_name}" if role == BlockRole.USER else f"system-{type_name}"
            body = "\n\n".join(registry.render(f) for f in placed)
            blocks.append(ContextBlock(
                block_id, role, f"## {plural_label(type_name)}\n{body}", ORDER_STICKY + i * 10,
            ))

    for i, type_name in enumerate(_type_order(state.shortlist, registry)):
        entries = state.shortlist[type_name]
        if not entries:
            continue
        lines = [f"## Available {plural_label(type_name)} "
                 f"(use get{type_label(type_name)}(id) to retrieve)"]
        lines.extend(f"- {e.id}: {e.description}" for e in entries)
        blocks.append(ContextBlock(
            f"shortlist-{type_name}", BlockRole.USER, "\n".join(lines), ORDER_SHORTLIST + i * 10,
        ))

    blocks.append(ContextBlock(
        "author-input", BlockRole.USER,
        f"The author wants the following to happen next: {state.author_input}",
        ORDER_AUTHOR_INPUT,
    ))
    return blocks


def compile_blocks(blocks: list[ContextBlock]) -> list[ContextMessage]:
    """One message per non-empty role, system first, blocks sorted by order (stable)."""
    messages = []
    for role in ROLE_ORDER:
        group = sorted((b for b in blocks if b.role == role), key=lambda b: b.order)
        if not group:
            continue
        content = "\n\n".join(f"[@block={b.id}]\n{b.content}" for b in group)
        messages.append(ContextMessage(role.value, content))
    return messages


# --- Editing primitives (return new lists) ---

def find_block(blocks: list[ContextBlock], block_id: str) -> ContextBlock | None:
    return next((b for b in blocks if b.id == block_id), None)


def replace_block_content(blocks: list[ContextBlock], block_id: str, content: str) -> list[ContextBlock]:
    return [replace(b, content=content) if b.id == block_id else b for b in blocks]


def remove_block(blocks: list[ContextBlock], block_id: str) -> list[ContextBlock]:
    return [b for b in blocks if b.id != block_id]


def _insert(blocks: list[ContextBlock], target_id: str, block: ContextBlock, offset: int) -> list[ContextBlock]:
    # The new block takes the target's order so the stable sort keeps it adjacent.
    for i, b in enumerate(blocks):
        if b.id == target_id:
            return blocks[:i + offset] + [replace(block, order=b.order)] + blocks[i + offset:]
    return blocks + [block]


def insert_block_before(blocks: list[ContextBlock], target_id: str, block: ContextBlock) -> list[ContextBlock]:
    return _insert(blocks, target_id, block, 0)


def insert_block_after(blocks: list[ContextBlock], target_id: str, block: ContextBlock) -> list[ContextBlock]:
    return _insert(blocks, target_id, block, 1)


def reorder_block(blocks: list[ContextBlock], block_id: str, order: float) -> list[ContextBlock]:
    return [replace(b, order=order) if b.id == block_id else b for b in blocks]


# --- User configuration merge ---

def _apply_override(block: ContextBlock, override: BlockOverride) -> ContextBlock:
    if override.custom_content is None or override.content_mode is None:
        return block
    custom = override.custom_content
    if override.content_mode in ("replace", "override"):
        return replace(block, content=custom)
    if override.content_mode == "prepend":
        return replace(block, content=f"{custom}\n{block.content}")
    if override.content_mode == "append":
        return replace(block, content=f"{block.content}\n{custom}")
    raise ValueError(f"Unknown content mode: {override.content_mode}")


def apply_block_order(blocks: list[ContextBlock], block_order: list[str]) -> list[ContextBlock]:
    """Listed ids take their index as order; the rest follow in their previous order."""
    rank = {block_id: i for i, block_id in enumerate(block_order)}
    listed = [replace(b, order=rank[b.id]) for b in blocks if b.id in rank]
    unlisted = sorted((b for b in blocks if b.id not in rank), key=lambda b: b.order)
    base = len(block_order)
    unlisted = [replace(b, order=base + i) for i, b in enumerate(unlisted)]
    return sorted(listed + unlisted, key=lambda b: b.order)


def apply_block_config(
    blocks: list[ContextBlock],
    config: BlockConfig,
    script_context: ScriptContext | None = None,
) -> list[ContextBlock]:
    """Merge overrides, custom/script blocks and explicit ordering into a block list."""
    result = []
    for block in blocks:
        override = config.overrides.get(block.id)
        if override is not None and override.enabled is False:
            continue
        result.append(_apply_override(block, override) if override else block)

    existing = {b.id for b in result}
    for custom in config.custom_blocks:
        override = config.overrides.get(custom.id)
        if not custom.enabled or (override is not None and override.enabled is False):
            continue
        if custom.id in existing:
            logger.warning("Custom block id collides with an existing block", block_id=custom.id)
            continue

        if custom.type == "script":
            try:
                content = evaluate_script(custom.content, script_context)
            except Exception as e:  # script errors render inline
                logger.warning("Script block failed", block_id=custom.id, error=str(e))
                content = f"[Script error in {custom.id}: {e}]"
            if not content.strip():
                continue
            source = BlockSource.SCRIPT
        else:
            content = custom.content
            source = BlockSource.CUSTOM

        block = ContextBlock(custom.id, custom.role, content, custom.order, source)
        result.append(_apply_override(block, override) if override else block)
        existing.add(custom.id)

    if config.block_order:
        result = apply_block_order(result, config.block_order)
    return result


def add_cache_breakpoints(messages: list[ContextMessage]) -> list[ContextMessage]:
    """Mark the cache-stable prefix of each message.

    System messages are cacheable in full. User messages are split at the
    author-input block: the part before it is cacheable, the rest is not.
    A user message without the marker passes through unchanged.
    """
    out = []
    for message in messages:
        if not isinstance(message.content, str):
            out.append(message)
            continue
        if message.role == "system":
            out.append(ContextMessage("system", [ContentPart(message.content, cache=True)]))
            continue
        idx = message.content.find(AUTHOR_INPUT_MARKER)
        if idx <= 0:
            out.append(message)
            continue
        out.append(ContextMessage(message.role, [
            ContentPart(message.content[:idx], cache=True),
            ContentPart(message.content[idx:]),
        ]))
    return out

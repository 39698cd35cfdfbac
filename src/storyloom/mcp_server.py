"""storyloom MCP server — exposes context assembly and run history as tools."""

import os
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from storyloom.agents import AgentRunHistory
from storyloom.analyses import AnalysisStore
from storyloom.context import BuildOptions
from storyloom.formatting import (
    format_analyses_compact, format_analyses_json,
    format_messages_compact, format_messages_json,
    format_runs_compact, format_runs_json,
)
from storyloom.pipeline import ContextPipeline
from storyloom.store import FragmentStore
from storyloom.tags import FragmentTagExpander

mcp = FastMCP("storyloom", instructions=(
    "storyloom assembles story fragments into model prompts. Use build_context "
    "to preview what a writer agent sees, and expand_fragment_tags to resolve "
    "<@id> references."
))


def _data_dir() -> Path:
    return Path(os.environ.get("STORYLOOM_DATA_DIR", os.getcwd()))


@mcp.tool()
async def build_context(
    story_id: str,
    author_input: str = "",
    prose_limit: int | None = None,
    max_characters: int | None = None,
    max_tokens: int | None = None,
    tag_depth: int = 0,
    format: str = "compact",
) -> str:
    """Compile the writer prompt messages for a story.

    Args:
        story_id: Story identifier
        author_input: What the author wants to happen next
        prose_limit: Keep the last N prose fragments
        max_characters: Prose budget in characters
        max_tokens: Prose budget in estimated tokens (chars / 4)
        tag_depth: Nested fragment tag expansion depth (default 0)
        format: Output format: "compact" or "json"
    """
    options = BuildOptions(prose_limit=prose_limit, max_characters=max_characters,
                           max_tokens=max_tokens)
    messages = await ContextPipeline(_data_dir()).compile(
        story_id, author_input, options, tag_depth=tag_depth, cache_breakpoints=False)
    if format == "json":
        return format_messages_json(messages)
    return format_messages_compact(messages)


@mcp.tool()
async def expand_fragment_tags(story_id: str, text: str, max_depth: int = 0) -> str:
    """Replace <@id> and <@id:short> fragment tags with fragment content.

    Args:
        story_id: Story identifier
        text: Text containing fragment tags
        max_depth: How many nested levels to expand inside expanded content
    """
    expander = FragmentTagExpander(FragmentStore(_data_dir()))
    return await expander.expand(text, story_id, max_depth=max_depth)


@mcp.tool()
async def list_agent_runs(story_id: str, limit: int = 30, format: str = "compact") -> str:
    """List recent agent runs with their traces, newest first.

    Args:
        story_id: Story identifier
        limit: Maximum results (default 30)
        format: Output format: "compact" or "json"
    """
    records = await AgentRunHistory(_data_dir()).list_agent_runs(story_id, limit=limit)
    if format == "json":
        return format_runs_json(records)
    return format_runs_compact(records)


@mcp.tool()
async def list_analyses(story_id: str, format: str = "compact") -> str:
    """List librarian analyses for a story, newest first.

    Args:
        story_id: Story identifier
        format: Output format: "compact" or "json"
    """
    records = await AnalysisStore(_data_dir()).list_analyses(story_id)
    if format == "json":
        return format_analyses_json(records)
    return format_analyses_compact(records)


def main():
    """Entry point for storyloom-mcp console script."""
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

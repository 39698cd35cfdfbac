"""storyloom CLI — inspect compiled context, tag expansion, agent runs and analyses."""

import asyncio
import json
import os
import sys
from pathlib import Path

import click
import httpx

from storyloom.agents import AgentError, AgentRunHistory, AgentRunner
from storyloom.analyses import AnalysisStore
from storyloom.builtin_agents import register_core_agents
from storyloom.context import BuildOptions
from storyloom.formatting import (
    format_analyses_compact, format_analyses_json,
    format_messages_compact, format_messages_json,
    format_runs_compact, format_runs_json,
)
from storyloom.log import configure_logging
from storyloom.pipeline import ContextPipeline
from storyloom.store import FragmentStore
from storyloom.tags import FragmentTagExpander

FORMAT_CHOICE = click.Choice(["compact", "json"])


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _require_story(data_dir: Path, story_id: str) -> None:
    if asyncio.run(FragmentStore(data_dir).get_story(story_id)) is None:
        _fail(f"Story not found: {story_id}")


@click.group()
@click.option("--data-dir", "-d", default=lambda: os.environ.get("STORYLOOM_DATA_DIR", "."),
              help="Data directory (default: $STORYLOOM_DATA_DIR or .)")
@click.option("--log-level", default=None, help="Log level (default: $STORYLOOM_LOG_LEVEL or WARNING)")
@click.pass_context
def cli(ctx, data_dir, log_level):
    """storyloom — context assembly and agent orchestration for stories."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = Path(data_dir).resolve()


@cli.command()
@click.argument("story_id")
@click.argument("author_input", default="")
@click.option("--prose-limit", type=int, default=None, help="Keep the last N prose fragments")
@click.option("--max-characters", type=int, default=None, help="Prose budget in characters")
@click.option("--max-tokens", type=int, default=None, help="Prose budget in estimated tokens")
@click.option("--tag-depth", type=int, default=0, help="Nested fragment tag expansion depth")
@click.option("--cache-breakpoints/--no-cache-breakpoints", default=False,
              help="Split messages into cacheable parts")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def context(ctx, story_id, author_input, prose_limit, max_characters, max_tokens,
            tag_depth, cache_breakpoints, fmt):
    """Print the compiled prompt messages for a story."""
    data_dir = ctx.obj["data_dir"]
    options = BuildOptions(prose_limit=prose_limit, max_characters=max_characters,
                           max_tokens=max_tokens)
    try:
        messages = asyncio.run(ContextPipeline(data_dir).compile(
            story_id, author_input, options, tag_depth=tag_depth,
            cache_breakpoints=cache_breakpoints,
        ))
    except ValueError as e:
        _fail(str(e))

    if fmt == "json":
        click.echo(format_messages_json(messages))
    else:
        click.echo(format_messages_compact(messages))


@cli.command()
@click.argument("story_id")
@click.argument("text")
@click.option("--depth", type=int, default=0, help="Nested expansion depth")
@click.pass_context
def expand(ctx, story_id, text, depth):
    """Expand <@id> and <@id:short> fragment tags in TEXT."""
    data_dir = ctx.obj["data_dir"]
    _require_story(data_dir, story_id)
    expander = FragmentTagExpander(FragmentStore(data_dir))
    click.echo(asyncio.run(expander.expand(text, story_id, max_depth=depth)))


@cli.command()
@click.argument("story_id")
@click.option("--limit", "-n", default=30, help="Max runs (default 30)")
@click.option("--clear", is_flag=True, help="Delete the run history instead")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def runs(ctx, story_id, limit, clear, fmt):
    """List recent agent runs for a story, newest first."""
    history = AgentRunHistory(ctx.obj["data_dir"])
    if clear:
        asyncio.run(history.clear(story_id))
        click.echo(f"Cleared agent run history for {story_id}")
        return

    records = asyncio.run(history.list_agent_runs(story_id, limit=limit))
    if fmt == "json":
        click.echo(format_runs_json(records))
    else:
        click.echo(format_runs_compact(records))


@cli.command()
@click.argument("story_id")
@click.option("--rebuild-index", is_flag=True, help="Rebuild the fragment -> analysis index")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def analyses(ctx, story_id, rebuild_index, fmt):
    """List librarian analyses for a story, newest first."""
    store = AnalysisStore(ctx.obj["data_dir"])
    if rebuild_index:
        index = asyncio.run(store.rebuild_index(story_id))
        click.echo(f"Index rebuilt: {len(index)} fragment(s)")
        return

    records = asyncio.run(store.list_analyses(story_id))
    if fmt == "json":
        click.echo(format_analyses_json(records))
    else:
        click.echo(format_analyses_compact(records))


@cli.command()
@click.argument("story_id")
@click.argument("agent_name")
@click.option("--input", "-i", "input_json", default="{}", help="Agent input as JSON")
@click.option("--model", "-m", default=None, help="Model key (default: $STORYLOOM_MODEL)")
@click.pass_context
def agent(ctx, story_id, agent_name, input_json, model):
    """Invoke a built-in agent and print its output and trace."""
    data_dir = ctx.obj["data_dir"]
    try:
        payload = json.loads(input_json)
    except json.JSONDecodeError as e:
        _fail(f"Invalid --input JSON: {e}")

    _require_story(data_dir, story_id)
    runner = AgentRunner(register_core_agents(model=model))
    try:
        result = asyncio.run(runner.invoke_agent(data_dir, story_id, agent_name, payload))
    except (AgentError, ValueError, httpx.HTTPError) as e:
        _fail(str(e))

    click.echo(json.dumps(result.output, indent=2, default=str))
    click.echo(f"Trace: {' -> '.join(t.agent_name for t in result.trace)} (run {result.run_id})")

"""Core agents: librarian analysis, prewriter, writer and direction suggestions."""

import json
import re

import structlog
from pydantic import BaseModel, ConfigDict, Field

from storyloom.agents import AgentDefinition, AgentInvocationContext, AgentRegistry
from storyloom.context import BuildOptions
from storyloom.hooks import PluginPipeline
from storyloom.librarian import run_librarian
from storyloom.models import BlockRole, ContextBlock, ContextBuildState, ContextMessage, Fragment
from storyloom.pipeline import ContextPipeline
from storyloom.providers import collect_text, generate, resolve_model, run_tool_loop
from storyloom.tools import create_fragment_tools

logger = structlog.get_logger(__name__)

PREWRITER_INSTRUCTIONS = """\
You are a writing planner. Analyze the full story context and the author's direction,
then produce a focused WRITING BRIEF for a prose writer.

The writer will ONLY see the most recent prose and your brief. The writer will NOT
see character sheets, guidelines, knowledge or the story summary, so everything the
writer needs must be in your brief.

Your brief MUST include:
1. SCENE SETUP: where we are, who is present, what just happened.
2. OBJECTIVE: what this passage should accomplish (1-2 sentences).
3. CHARACTER VOICES: for each active character, how they speak, their emotional
   state right now, what they want in this scene, and one example line.
4. PACING: how much story time to cover and exactly where to end.
5. KEY DETAILS: names, places and facts from knowledge/guidelines to reference.
6. TONE & STYLE: emotional register, prose style, POV constraints.
7. SCOPE LIMITS: what the writer must NOT do.

Keep the brief under 1000 words. Be direct and specific."""

DIRECTIONS_PROMPT = """\
Based on everything in the story so far, suggest exactly {count} possible directions the
story could go next. Return ONLY a JSON array with no other text. Each element must have:
- "title": a short evocative title (3-6 words)
- "description": 1-2 sentences describing this direction
- "instruction": a detailed writing prompt (2-3 sentences) for a writer to follow

Make each suggestion meaningfully different from the others.
Respond with ONLY the JSON array, no markdown fences or other text."""

# Blocks the writer keeps when a prewriter brief replaces the full context
BRIEF_KEEP_BLOCKS = frozenset({"instructions", "tools", "prose", "author-input"})

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


class MalformedOutputError(ValueError):
    """Model text could not be parsed as the structured output the agent expects."""


def parse_json_text(text: str):
    """Parse model text as JSON after stripping a surrounding markdown fence."""
    cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text.strip()))
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedOutputError(f"Model response is not valid JSON: {e}") from e


# --- Schemas ---

class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AnalyzeInput(_Schema):
    fragment_id: str = Field(alias="fragmentId")


class AnalyzeOutput(_Schema):
    analysis_id: str
    summary_update: str
    mentions: int
    contradictions: int


class WritingInput(_Schema):
    author_input: str = Field("", alias="authorInput")
    prose_limit: int | None = None
    max_characters: int | None = None
    max_tokens: int | None = None
    use_prewriter: bool | None = None
    save: bool = False


class PrewriterOutput(_Schema):
    brief: str


class WriterOutput(_Schema):
    text: str
    brief: str | None = None
    fragment_id: str | None = None


class DirectionsInput(_Schema):
    count: int = Field(4, ge=1, le=10)


class Direction(_Schema):
    title: str
    description: str
    instruction: str


class DirectionsOutput(_Schema):
    suggestions: list[Direction]


def _options(data: WritingInput) -> BuildOptions:
    return BuildOptions(prose_limit=data.prose_limit, max_characters=data.max_characters,
                        max_tokens=data.max_tokens)


def _with_brief(brief: str):
    def transform(blocks: list[ContextBlock], state: ContextBuildState) -> list[ContextBlock]:
        kept = [b for b in blocks if b.id in BRIEF_KEEP_BLOCKS]
        kept.append(ContextBlock("writing-brief", BlockRole.USER, f"## Writing Brief\n{brief}", 500))
        return kept
    return transform


def _as_prewriter(blocks: list[ContextBlock], state: ContextBuildState) -> list[ContextBlock]:
    return [
        ContextBlock(b.id, b.role, PREWRITER_INSTRUCTIONS, b.order, b.source)
        if b.id == "instructions" else b
        for b in blocks if b.id != "tools"
    ]


def register_core_agents(model: str | None = None,
                         plugins: PluginPipeline | None = None) -> AgentRegistry:
    """Registry with the built-in agents. model overrides STORYLOOM_MODEL and the default."""
    plugins = plugins or PluginPipeline()

    async def _model_for(pipeline: ContextPipeline, story_id: str) -> str:
        story = await pipeline.store.get_story(story_id)
        return resolve_model(model or (story.settings.model if story else None))

    async def analyze(ctx: AgentInvocationContext, data: AnalyzeInput) -> dict:
        pipeline = ContextPipeline(ctx.data_dir, plugins)
        analysis = await run_librarian(ctx.data_dir, ctx.story_id, data.fragment_id,
                                       await _model_for(pipeline, ctx.story_id))
        return {
            "analysis_id": analysis.id,
            "summary_update": analysis.summary_update,
            "mentions": len(analysis.mentions),
            "contradictions": len(analysis.contradictions),
        }

    async def prewrite(ctx: AgentInvocationContext, data: WritingInput) -> dict:
        pipeline = ContextPipeline(ctx.data_dir, plugins)
        messages = await pipeline.compile(
            ctx.story_id, data.author_input, _options(data),
            agent_name="generation.prewriter", transform=_as_prewriter,
        )
        completion = await generate(await _model_for(pipeline, ctx.story_id), messages)
        return {"brief": completion.text.strip()}

    async def write(ctx: AgentInvocationContext, data: WritingInput) -> dict:
        pipeline = ContextPipeline(ctx.data_dir, plugins)
        story = await pipeline.store.get_story(ctx.story_id)
        if story is None:
            raise ValueError(f"Story not found: {ctx.story_id}")

        use_prewriter = (story.settings.prewriter_enabled if data.use_prewriter is None
                         else data.use_prewriter)
        brief = None
        transform = None
        if use_prewriter:
            result = await ctx.invoke_agent("generation.prewriter", data.model_dump())
            brief = result["brief"]
            transform = _with_brief(brief)

        messages = await pipeline.compile(ctx.story_id, data.author_input, _options(data),
                                          transform=transform)
        config = await pipeline.block_configs.get_config(ctx.story_id)
        tools = create_fragment_tools(pipeline.store, ctx.story_id,
                                      disabled=config.disabled_tools)
        model_key = await _model_for(pipeline, ctx.story_id)
        text = await collect_text(run_tool_loop(model_key, messages, tools))
        result = await plugins.after_generation({"text": text.strip(), "brief": brief})

        if data.save and result["text"]:
            fragment = await pipeline.store.create_fragment(ctx.story_id, Fragment(
                id="", type="prose", name="Generated prose",
                description=result["text"][:50], content=result["text"],
                meta={"generated_by": "generation.writer"},
            ))
            await pipeline.store.add_prose_section(ctx.story_id, fragment.id)
            await plugins.after_save(fragment, ctx.story_id)
            result["fragment_id"] = fragment.id
        return result

    async def suggest(ctx: AgentInvocationContext, data: DirectionsInput) -> dict:
        pipeline = ContextPipeline(ctx.data_dir, plugins)
        messages = await pipeline.compile(ctx.story_id, "", agent_name="directions.suggest",
                                          cache_breakpoints=False)
        messages.append(ContextMessage("user", DIRECTIONS_PROMPT.format(count=data.count)))
        completion = await generate(await _model_for(pipeline, ctx.story_id), messages)
        suggestions = parse_json_text(completion.text)
        if not isinstance(suggestions, list):
            raise MalformedOutputError("Model response is not a JSON array")
        return {"suggestions": suggestions}

    return AgentRegistry([
        AgentDefinition("librarian.analyze", analyze, AnalyzeInput, AnalyzeOutput,
                        description="Analyze a prose fragment for continuity signals"),
        AgentDefinition("generation.prewriter", prewrite, WritingInput, PrewriterOutput,
                        description="Produce a writing brief from the full story context"),
        AgentDefinition("generation.writer", write, WritingInput, WriterOutput,
                        allowed_calls=("generation.prewriter",),
                        description="Generate the next prose passage"),
        AgentDefinition("directions.suggest", suggest, DirectionsInput, DirectionsOutput,
                        description="Suggest possible next directions for the story"),
    ])

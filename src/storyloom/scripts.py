"""Script blocks — a single Python expression evaluated against a read-only context.

Example block content::

    f"Story: {ctx.story.name} ({len(ctx.prose)} recent passages)"

Only a small builtin table is exposed and dunder access is rejected. This is
basic isolation, not a sandbox.
"""

import builtins
from types import MappingProxyType

from storyloom.models import ContextBuildState, Fragment
from storyloom.store import FragmentStore

_ALLOWED_BUILTINS = (
    "abs", "all", "any", "bool", "dict", "enumerate", "filter", "float", "int",
    "isinstance", "len", "list", "map", "max", "min", "range", "reversed",
    "round", "set", "sorted", "str", "sum", "tuple", "zip",
)
SAFE_BUILTINS = MappingProxyType({name: getattr(builtins, name) for name in _ALLOWED_BUILTINS})


class ScriptContext:
    """What a script expression sees as `ctx`."""

    def __init__(self, state: ContextBuildState, fragments: list[Fragment]):
        self.story = state.story
        self.author_input = state.author_input
        self.prose = tuple(state.prose_fragments)
        self.sticky = MappingProxyType({k: tuple(v) for k, v in state.sticky.items()})
        self.shortlist = MappingProxyType({k: tuple(v) for k, v in state.shortlist.items()})
        self.summary = state.summary or ""
        self.chapter_summaries = tuple(state.chapter_summaries)
        self._fragments = tuple(fragments)
        self._by_id = {f.id: f for f in fragments}

    def fragment(self, fragment_id: str) -> Fragment | None:
        return self._by_id.get(fragment_id)

    def fragments(self, fragment_type: str | None = None) -> list[Fragment]:
        return [f for f in self._fragments if fragment_type is None or f.type == fragment_type]

    def by_tag(self, tag: str) -> list[Fragment]:
        return [f for f in self._fragments if tag in f.tags]


async def build_script_context(state: ContextBuildState, store: FragmentStore) -> ScriptContext:
    """Snapshot the story's fragments so script evaluation stays synchronous."""
    fragments = await store.list_fragments(state.story.id)
    return ScriptContext(state, fragments)


def evaluate_script(source: str, ctx: ScriptContext | None) -> str:
    """Evaluate a script block expression. Raises on syntax or runtime errors."""
    if "__" in source:
        raise ValueError("dunder names are not allowed in scripts")
    code = compile(source.strip(), "<script block>", "eval")
    result = eval(code, {"__builtins__": dict(SAFE_BUILTINS)}, {"ctx": ctx})  # noqa: S307
    return "" if result is None else str(result)

"""Inline fragment references: <@id> and <@id:short>."""

import re
from dataclasses import replace

import structlog

from storyloom.models import ContextMessage, Fragment
from storyloom.registry import FragmentTypeRegistry
from storyloom.store import FragmentStore

logger = structlog.get_logger(__name__)

TAG_PATTERN = re.compile(r"<@([a-z]{2}-[A-Za-z0-9_-]+?)(:short)?>")


def unknown_marker(fragment_id: str) -> str:
    return f"[unknown fragment: {fragment_id}]"


def circular_marker(fragment_id: str) -> str:
    return f"[circular fragment: {fragment_id}]"


class FragmentTagExpander:
    """Replaces fragment tags with rendered fragment content.

    max_depth=0 expands the tags in the input text only; content pulled in by
    an expansion is inserted verbatim. With max_depth=N, tags inside expanded
    content are expanded N further levels, after which they are left as-is.

    Bad references never raise: unknown ids become [unknown fragment: id] and
    a tag that would revisit a fragment on the current expansion path becomes
    [circular fragment: id].
    """

    def __init__(self, store: FragmentStore, registry: FragmentTypeRegistry | None = None):
        self.store = store
        self.registry = registry or store.registry

    async def expand(self, text: str, story_id: str, max_depth: int = 0) -> str:
        return await self._expand(text, story_id, max_depth, frozenset(), {})

    async def expand_messages(self, messages: list[ContextMessage], story_id: str,
                              max_depth: int = 0) -> list[ContextMessage]:
        """Expand every message independently. Roles and cache flags are kept."""
        cache: dict[str, Fragment | None] = {}
        out = []
        for message in messages:
            if isinstance(message.content, str):
                content = await self._expand(message.content, story_id, max_depth, frozenset(), cache)
                out.append(ContextMessage(message.role, content))
            else:
                parts = [
                    replace(p, text=await self._expand(p.text, story_id, max_depth, frozenset(), cache))
                    for p in message.content
                ]
                out.append(ContextMessage(message.role, parts))
        return out

    async def _fetch(self, story_id: str, fragment_id: str,
                     cache: dict[str, Fragment | None]) -> Fragment | None:
        if fragment_id not in cache:
            cache[fragment_id] = await self.store.get_fragment(story_id, fragment_id)
        return cache[fragment_id]

    async def _expand(self, text: str, story_id: str, depth: int,
                      path: frozenset[str], cache: dict[str, Fragment | None]) -> str:
        matches = list(TAG_PATTERN.finditer(text))
        if not matches:
            return text

        pieces = []
        last = 0
        for match in matches:
            pieces.append(text[last:match.start()])
            pieces.append(await self._render_tag(
                match.group(1), bool(match.group(2)), story_id, depth, path, cache))
            last = match.end()
        pieces.append(text[last:])
        return "".join(pieces)

    async def _render_tag(self, fragment_id: str, short: bool, story_id: str, depth: int,
                          path: frozenset[str], cache: dict[str, Fragment | None]) -> str:
        if fragment_id in path and not short:
            logger.debug("Circular fragment reference", story_id=story_id, fragment_id=fragment_id)
            return circular_marker(fragment_id)

        fragment = await self._fetch(story_id, fragment_id, cache)
        if fragment is None:
            logger.debug("Unknown fragment reference", story_id=story_id, fragment_id=fragment_id)
            return unknown_marker(fragment_id)

        if short:
            return f"{fragment.name}: {fragment.description}"

        rendered = self.registry.render(fragment)
        if depth <= 0:
            return rendered
        return await self._expand(rendered, story_id, depth - 1, path | {fragment_id}, cache)

"""Context state assembly: prose window, sticky/shortlist split, summary reconstruction."""

import asyncio
import math
from dataclasses import dataclass

import structlog

from storyloom.analyses import AnalysisStore
from storyloom.models import (
    ChapterSummary, CompactMode, ContextBuildState, Fragment, ShortlistEntry,
)
from storyloom.registry import CHAIN_TYPES
from storyloom.store import FragmentStore

logger = structlog.get_logger(__name__)

DEFAULT_PROSE_LIMIT = 10
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Heuristic token count: characters / 4, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def select_prose_window(fragments: list[Fragment], mode: CompactMode, limit: int) -> list[Fragment]:
    """Select the budget-constrained suffix of an oldest-first prose list.

    Budget modes walk backward from the newest fragment and stop once the
    running total would exceed the budget. The newest fragment is always kept.
    """
    if not fragments:
        return []

    if mode == CompactMode.PROSE_LIMIT:
        return fragments[-limit:] if limit > 0 else []

    measure = len if mode == CompactMode.MAX_CHARACTERS else estimate_tokens
    selected: list[Fragment] = []
    total = 0
    for fragment in reversed(fragments):
        size = measure(fragment.content)
        if selected and total + size > limit:
            break
        selected.append(fragment)
        total += size
    selected.reverse()
    return selected


@dataclass
class BuildOptions:
    prose_limit: int | None = None
    max_characters: int | None = None
    max_tokens: int | None = None
    exclude_fragment_id: str | None = None
    prose_before_fragment_id: str | None = None
    summary_before_fragment_id: str | None = None
    exclude_story_summary: bool = False


class ContextStateBuilder:
    """Reads the store and assembles a request-scoped ContextBuildState. Read-only."""

    def __init__(self, store: FragmentStore, analyses: AnalysisStore | None = None):
        self.store = store
        self.analyses = analyses or AnalysisStore(store.data_dir)

    async def build(self, story_id: str, author_input: str = "",
                    options: BuildOptions | None = None) -> ContextBuildState:
        options = options or BuildOptions()
        log = logger.bind(story_id=story_id)

        story, fragments, chain = await asyncio.gather(
            self.store.get_story(story_id),
            self.store.list_fragments(story_id),
            self.store.get_prose_chain(story_id),
        )
        if story is None:
            raise ValueError(f"Story not found: {story_id}")

        # Chronological chain-type fragments plus their section positions
        by_id = {f.id: f for f in fragments}
        if chain and chain.entries:
            ordered: list[Fragment] = []
            positions: dict[str, int] = {}
            for i, entry in enumerate(chain.entries):
                fragment = by_id.get(entry.active)
                if fragment is None:
                    log.warning("Prose chain entry missing or archived", fragment_id=entry.active)
                    continue
                ordered.append(fragment)
                positions[fragment.id] = i

            def position_of(fragment_id: str) -> int | None:
                return chain.position_of(fragment_id)
        else:
            ordered = [f for f in fragments if f.type == "prose"]
            positions = {f.id: i for i, f in enumerate(ordered)}

            def position_of(fragment_id: str) -> int | None:
                return positions.get(fragment_id)

        candidates = [
            f for f in ordered
            if f.type == "prose" and f.id != options.exclude_fragment_id
        ]

        prose_cutoff = None
        if options.prose_before_fragment_id:
            prose_cutoff = position_of(options.prose_before_fragment_id)
            if prose_cutoff is None:
                log.warning("Prose cutoff fragment not found",
                            fragment_id=options.prose_before_fragment_id)
            else:
                candidates = [f for f in candidates if positions[f.id] < prose_cutoff]

        # Chain position only decides the cutoffs; the window itself is ordered by fragment order
        candidates.sort(key=lambda f: (f.order, f.created_at))

        mode, limit = self._resolve_compaction(story.settings, options)
        window = select_prose_window(candidates, mode, limit)

        sticky: dict[str, list[Fragment]] = {}
        shortlist: dict[str, list[ShortlistEntry]] = {}
        for f in fragments:
            if f.type in CHAIN_TYPES or f.id == options.exclude_fragment_id:
                continue
            if f.sticky:
                sticky.setdefault(f.type, []).append(f)
            else:
                shortlist.setdefault(f.type, []).append(ShortlistEntry(f.id, f.description))

        if options.exclude_story_summary:
            summary = None
        elif options.summary_before_fragment_id:
            cutoff = position_of(options.summary_before_fragment_id)
            summary = None if cutoff is None else await self._summary_before(
                story_id, [f for f in ordered if f.type == "prose" and positions[f.id] < cutoff])
        else:
            summary = story.summary or None

        chapter_summaries: list[ChapterSummary] = []
        if story.settings.hierarchical_summaries:
            if window:
                window_start = min(positions[f.id] for f in window)
            elif prose_cutoff is not None:
                window_start = prose_cutoff
            else:
                window_start = len(chain.entries) if chain and chain.entries else len(ordered)
            for f in ordered:
                if f.type == "marker" and positions[f.id] < window_start and f.meta.get("summary"):
                    chapter_summaries.append(ChapterSummary(f.id, f.name, f.meta["summary"]))

        state = ContextBuildState(
            story=story,
            author_input=author_input,
            prose_fragments=window,
            sticky=sticky,
            shortlist=shortlist,
            summary=summary,
            chapter_summaries=chapter_summaries,
            exclude_fragment_id=options.exclude_fragment_id,
            prose_before_fragment_id=options.prose_before_fragment_id,
            summary_before_fragment_id=options.summary_before_fragment_id,
        )
        log.info("Context state built", prose=len(window), mode=mode.value, limit=limit,
                 sticky=sum(len(v) for v in sticky.values()),
                 shortlist=sum(len(v) for v in shortlist.values()),
                 has_summary=summary is not None)
        return state

    @staticmethod
    def _resolve_compaction(settings, options: BuildOptions) -> tuple[CompactMode, int]:
        """Explicit options win over story settings."""
        if options.max_tokens is not None:
            return CompactMode.MAX_TOKENS, options.max_tokens
        if options.max_characters is not None:
            return CompactMode.MAX_CHARACTERS, options.max_characters
        if options.prose_limit is not None:
            return CompactMode.PROSE_LIMIT, options.prose_limit
        return settings.context_compact, settings.context_limit or DEFAULT_PROSE_LIMIT

    async def _summary_before(self, story_id: str, prior: list[Fragment]) -> str | None:
        """Concatenate the newest analysis summary of each fragment, oldest fragment first."""
        index = await self.analyses.latest_analysis_ids_by_fragment(story_id)
        wanted = [index[f.id] for f in prior if f.id in index]
        if not wanted:
            return None
        analyses = await asyncio.gather(
            *(self.analyses.get_analysis(story_id, aid) for aid in wanted))
        parts = [a.summary_update.strip() for a in analyses
                 if a is not None and a.summary_update.strip()]
        return "\n\n".join(parts) or None

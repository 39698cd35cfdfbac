"""Analysis collector and the librarian tools that write into it."""

from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from storyloom.models import LibrarianAnalysis
from storyloom.tools import ToolDefinition

MAX_SUMMARY_ITEMS = 8


class _ToolInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UpdateSummaryInput(_ToolInput):
    summary: str = Field("", max_length=1200,
                         description="A concise summary of what happened in the new prose fragment")
    events: list[str] = Field(default_factory=list, max_length=12,
                              description="Bullet-like event statements from the prose fragment")
    state_changes: list[str] = Field(
        default_factory=list, max_length=12, alias="stateChanges",
        description="What changed in goals, relationships, world state, or character condition")
    open_threads: list[str] = Field(
        default_factory=list, max_length=12, alias="openThreads",
        description="Unresolved questions or threads introduced or advanced by this prose")

    @model_validator(mode="after")
    def _require_signal(self):
        if not self.summary.strip() and not (self.events or self.state_changes or self.open_threads):
            raise ValueError(
                "Provide either summary text or at least one structured summary signal.")
        return self


class Mention(_ToolInput):
    character_id: str = Field(alias="characterId", description="The character fragment ID (e.g. ch-abc)")
    text: str = Field(description="The exact name, nickname, or title used for the character")


class ReportMentionsInput(_ToolInput):
    mentions: list[Mention]


class Contradiction(_ToolInput):
    description: str = Field(description="What the contradiction is")
    fragment_ids: list[str] = Field(default_factory=list, alias="fragmentIds",
                                    description="IDs of the fragments involved")


class ReportContradictionsInput(_ToolInput):
    contradictions: list[Contradiction]


class KnowledgeSuggestion(_ToolInput):
    type: Literal["character", "knowledge"]
    target_fragment_id: str | None = Field(
        None, alias="targetFragmentId",
        description="If updating an existing fragment, its ID. Omit for new fragments.")
    name: str
    description: str
    content: str


class SuggestKnowledgeInput(_ToolInput):
    suggestions: list[KnowledgeSuggestion]


class TimelineEvent(_ToolInput):
    event: str
    position: Literal["before", "during", "after"] = Field(
        description='"before" for flashback, "during" for concurrent, "after" for sequential')


class ReportTimelineInput(_ToolInput):
    events: list[TimelineEvent]


def unique_lines(values: list[str], max_items: int = MAX_SUMMARY_ITEMS) -> list[str]:
    """Trim, drop blanks and exact duplicates, keep first occurrence."""
    out: list[str] = []
    for value in values:
        value = value.strip()
        if value and value not in out:
            out.append(value)
        if len(out) >= max_items:
            break
    return out


def render_structured_summary(events: list[str], state_changes: list[str],
                              open_threads: list[str]) -> str:
    """'Events: a; b. State changes: c. Open threads: d.' with empty sections omitted."""
    parts = []
    for label, items in (("Events", events), ("State changes", state_changes),
                         ("Open threads", open_threads)):
        if items:
            parts.append(f"{label}: {'; '.join(items)}.")
    return " ".join(parts)


def _validated(schema: type[BaseModel], data):
    return data if isinstance(data, schema) else schema.model_validate(data)


@dataclass
class AnalysisCollector:
    """Accumulates one librarian turn's tool calls. Not persisted until to_analysis()."""

    summary_update: str = ""
    structured_summary: dict[str, list[str]] = field(default_factory=lambda: {
        "events": [], "state_changes": [], "open_threads": [],
    })
    mentions: list[dict] = field(default_factory=list)
    contradictions: list[dict] = field(default_factory=list)
    knowledge_suggestions: list[dict] = field(default_factory=list)
    timeline_events: list[dict] = field(default_factory=list)

    def update_summary(self, data) -> dict:
        """Last call wins. A blank summary is derived from the structured lists."""
        data = _validated(UpdateSummaryInput, data)
        structured = {
            "events": unique_lines(data.events),
            "state_changes": unique_lines(data.state_changes),
            "open_threads": unique_lines(data.open_threads),
        }
        self.structured_summary = structured
        self.summary_update = data.summary.strip() or render_structured_summary(
            structured["events"], structured["state_changes"], structured["open_threads"])
        return {"ok": True}

    def report_mentions(self, data) -> dict:
        data = _validated(ReportMentionsInput, data)
        self.mentions.extend(m.model_dump() for m in data.mentions)
        return {"ok": True}

    def report_contradictions(self, data) -> dict:
        data = _validated(ReportContradictionsInput, data)
        self.contradictions.extend(c.model_dump() for c in data.contradictions)
        return {"ok": True}

    def suggest_knowledge(self, data) -> dict:
        data = _validated(SuggestKnowledgeInput, data)
        self.knowledge_suggestions.extend(s.model_dump() for s in data.suggestions)
        return {"ok": True}

    def report_timeline(self, data) -> dict:
        data = _validated(ReportTimelineInput, data)
        self.timeline_events.extend(e.model_dump() for e in data.events)
        return {"ok": True}

    def to_analysis(self, fragment_id: str) -> LibrarianAnalysis:
        """Snapshot as an unsaved LibrarianAnalysis (id and created_at set on save)."""
        return LibrarianAnalysis(
            id="",
            created_at="",
            fragment_id=fragment_id,
            summary_update=self.summary_update,
            structured_summary={k: list(v) for k, v in self.structured_summary.items()},
            mentions=list(self.mentions),
            contradictions=list(self.contradictions),
            knowledge_suggestions=list(self.knowledge_suggestions),
            timeline_events=list(self.timeline_events),
        )


def create_analysis_tools(collector: AnalysisCollector) -> list[ToolDefinition]:
    """The five librarian tools, all bound to the same collector."""
    return [
        ToolDefinition(
            "updateSummary",
            "Set or update the summary for this prose fragment. Describes what happened "
            "in the new prose. Last call wins.",
            UpdateSummaryInput, collector.update_summary,
        ),
        ToolDefinition(
            "reportMentions",
            "Report character mentions found in the new prose. Call once with all mentions.",
            ReportMentionsInput, collector.report_mentions,
        ),
        ToolDefinition(
            "reportContradictions",
            "Report contradictions between the new prose and established facts. "
            "Only flag clear contradictions.",
            ReportContradictionsInput, collector.report_contradictions,
        ),
        ToolDefinition(
            "suggestKnowledge",
            "Suggest creating or updating character/knowledge fragments based on new "
            "information in the prose.",
            SuggestKnowledgeInput, collector.suggest_knowledge,
        ),
        ToolDefinition(
            "reportTimeline",
            "Report significant timeline events from the new prose.",
            ReportTimelineInput, collector.report_timeline,
        ),
    ]

"""Data models for stories, fragments, context blocks and agent runs."""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class Placement(str, Enum):
    SYSTEM = "system"
    USER = "user"


class BlockRole(str, Enum):
    SYSTEM = "system"
    USER = "user"


class BlockSource(str, Enum):
    BUILTIN = "builtin"
    CUSTOM = "custom"
    SCRIPT = "script"


class CompactMode(str, Enum):
    PROSE_LIMIT = "proseLimit"
    MAX_CHARACTERS = "maxCharacters"
    MAX_TOKENS = "maxTokens"


def _known(cls, data: dict) -> dict:
    """Drop keys the dataclass does not declare (forward-compatible JSON)."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class Fragment:
    id: str
    type: str
    name: str
    description: str = ""
    content: str = ""
    tags: list[str] = field(default_factory=list)
    refs: list[str] = field(default_factory=list)
    sticky: bool | None = None
    placement: Placement = Placement.USER
    order: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    archived: bool = False
    version: int = 1
    versions: list[dict] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        d = asdict(self)
        d["placement"] = self.placement.value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Fragment":
        d = _known(cls, data)
        d["sticky"] = bool(d.get("sticky"))
        d["placement"] = Placement(d.get("placement") or "user")
        return cls(**d)


@dataclass
class StorySettings:
    context_compact: CompactMode = CompactMode.PROSE_LIMIT
    context_limit: int = 10
    hierarchical_summaries: bool = False
    prewriter_enabled: bool = False
    model: str | None = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["context_compact"] = self.context_compact.value
        return d

    @classmethod
    def from_dict(cls, data: dict | None) -> "StorySettings":
        d = _known(cls, data or {})
        if "context_compact" in d:
            d["context_compact"] = CompactMode(d["context_compact"])
        return cls(**d)


@dataclass
class StoryMeta:
    id: str
    name: str
    description: str = ""
    summary: str = ""
    created_at: str = ""
    updated_at: str = ""
    settings: StorySettings = field(default_factory=StorySettings)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["settings"] = self.settings.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "StoryMeta":
        d = _known(cls, data)
        d["settings"] = StorySettings.from_dict(d.get("settings"))
        return cls(**d)


@dataclass
class ProseChainEntry:
    variations: list[str]
    active: str


@dataclass
class ProseChain:
    entries: list[ProseChainEntry] = field(default_factory=list)

    def active_ids(self) -> list[str]:
        return [e.active for e in self.entries]

    def position_of(self, fragment_id: str) -> int | None:
        """Section index holding fragment_id, whether or not it is the active variation."""
        for i, entry in enumerate(self.entries):
            if fragment_id == entry.active or fragment_id in entry.variations:
                return i
        return None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ProseChain":
        return cls(entries=[ProseChainEntry(**_known(ProseChainEntry, e))
                            for e in data.get("entries", [])])


@dataclass
class ShortlistEntry:
    id: str
    description: str


@dataclass
class ChapterSummary:
    marker_id: str
    name: str
    summary: str


@dataclass
class ContextBuildState:
    story: StoryMeta
    author_input: str = ""
    prose_fragments: list[Fragment] = field(default_factory=list)
    # Keyed by fragment type
    sticky: dict[str, list[Fragment]] = field(default_factory=dict)
    shortlist: dict[str, list[ShortlistEntry]] = field(default_factory=dict)
    summary: str | None = None
    chapter_summaries: list[ChapterSummary] = field(default_factory=list)
    exclude_fragment_id: str | None = None
    prose_before_fragment_id: str | None = None
    summary_before_fragment_id: str | None = None


@dataclass
class ContextBlock:
    id: str
    role: BlockRole
    content: str
    order: float
    source: BlockSource = BlockSource.BUILTIN


@dataclass
class ContentPart:
    text: str
    cache: bool = False


@dataclass
class ContextMessage:
    role: str
    content: str | list[ContentPart]

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content)

    def to_dict(self) -> dict:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [asdict(p) for p in self.content]}


@dataclass
class BlockOverride:
    enabled: bool | None = None
    content_mode: str | None = None  # "replace" | "override" | "prepend" | "append"
    custom_content: str | None = None


@dataclass
class CustomBlock:
    id: str
    name: str
    role: BlockRole
    order: float
    content: str = ""
    enabled: bool = True
    type: str = "simple"  # "simple" | "script"


@dataclass
class BlockConfig:
    custom_blocks: list[CustomBlock] = field(default_factory=list)
    overrides: dict[str, BlockOverride] = field(default_factory=dict)
    block_order: list[str] = field(default_factory=list)
    disabled_tools: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "custom_blocks": [
                {**asdict(b), "role": b.role.value} for b in self.custom_blocks
            ],
            "overrides": {k: asdict(v) for k, v in self.overrides.items()},
            "block_order": list(self.block_order),
            "disabled_tools": list(self.disabled_tools),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BlockConfig":
        custom = []
        for raw in data.get("custom_blocks", []):
            b = _known(CustomBlock, raw)
            b["role"] = BlockRole(b["role"])
            custom.append(CustomBlock(**b))
        return cls(
            custom_blocks=custom,
            overrides={k: BlockOverride(**_known(BlockOverride, v))
                       for k, v in data.get("overrides", {}).items()},
            block_order=list(data.get("block_order", [])),
            disabled_tools=list(data.get("disabled_tools", [])),
        )


@dataclass
class AgentTraceEntry:
    run_id: str
    parent_run_id: str | None
    agent_name: str
    input: Any
    output: Any
    started_at: str
    finished_at: str
    duration_ms: int = 0


@dataclass
class AgentRunRecord:
    id: str
    agent_name: str
    story_id: str
    output: Any
    trace: list[AgentTraceEntry] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AgentRunRecord":
        d = _known(cls, data)
        d["trace"] = [AgentTraceEntry(**_known(AgentTraceEntry, t))
                      for t in d.get("trace", [])]
        return cls(**d)


@dataclass
class LibrarianAnalysis:
    id: str
    created_at: str
    fragment_id: str
    summary_update: str = ""
    structured_summary: dict[str, list[str]] = field(default_factory=dict)
    mentions: list[dict] = field(default_factory=list)
    contradictions: list[dict] = field(default_factory=list)
    knowledge_suggestions: list[dict] = field(default_factory=list)
    timeline_events: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LibrarianAnalysis":
        return cls(**_known(cls, data))

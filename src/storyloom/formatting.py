"""Output formatters for compiled messages, agent runs and analyses."""

import json
from dataclasses import asdict

from pydantic_core import to_jsonable_python

from storyloom.models import AgentRunRecord, ContextMessage, LibrarianAnalysis


def _short_timestamp(ts: str) -> str:
    """Convert ISO timestamp to compact form: '2026-02-23 14:30'."""
    return ts[:16].replace("T", " ")


def _dumps(data) -> str:
    return json.dumps(to_jsonable_python(data, fallback=str), indent=2)


def format_messages_compact(messages: list[ContextMessage]) -> str:
    """Each message under a role header; cached parts are marked."""
    if not messages:
        return "(no messages)"
    out = []
    for message in messages:
        if isinstance(message.content, str):
            out.append(f"=== {message.role} ===\n{message.content}")
            continue
        out.append(f"=== {message.role} ({len(message.content)} parts) ===")
        for part in message.content:
            marker = "[cached] " if part.cache else ""
            out.append(f"--- {marker}part ---\n{part.text}")
    return "\n".join(out)


def format_messages_json(messages: list[ContextMessage]) -> str:
    return _dumps([m.to_dict() for m in messages])


def format_run_compact(record: AgentRunRecord) -> str:
    """Single line for a run, then one indented line per trace frame."""
    lines = [f"[{_short_timestamp(record.started_at)}] {record.agent_name} ({record.id}) "
             f"— {len(record.trace)} frame(s)"]
    for entry in record.trace:
        lines.append(f"  - {entry.agent_name} {entry.duration_ms}ms")
    return "\n".join(lines)


def format_runs_compact(records: list[AgentRunRecord]) -> str:
    if not records:
        return "(no runs)"
    return "\n".join(format_run_compact(r) for r in records)


def format_runs_json(records: list[AgentRunRecord]) -> str:
    return _dumps([r.to_dict() for r in records])


def format_analysis_compact(analysis: LibrarianAnalysis) -> str:
    counts = []
    for label, items in (("mentions", analysis.mentions),
                         ("contradictions", analysis.contradictions),
                         ("suggestions", analysis.knowledge_suggestions),
                         ("timeline", analysis.timeline_events)):
        if items:
            counts.append(f"{label}: {len(items)}")
    extra = f" ({', '.join(counts)})" if counts else ""
    summary = analysis.summary_update or "(no summary)"
    return (f"[{_short_timestamp(analysis.created_at)}] {analysis.id} "
            f"{analysis.fragment_id} — {summary}{extra}")


def format_analyses_compact(analyses: list[LibrarianAnalysis]) -> str:
    if not analyses:
        return "(no analyses)"
    return "\n".join(format_analysis_compact(a) for a in analyses)


def format_analyses_json(analyses: list[LibrarianAnalysis]) -> str:
    return json.dumps([asdict(a) for a in analyses], indent=2)

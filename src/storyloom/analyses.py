"""Librarian analysis persistence with a rebuildable fragment -> latest-analysis index."""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

import structlog

from storyloom.models import LibrarianAnalysis
from storyloom.store import read_json, write_json_atomic

logger = structlog.get_logger(__name__)

INDEX_FILE = "_index.json"


class AnalysisStore:
    """Stores one JSON record per analysis under stories/<id>/librarian/analyses/."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def analyses_dir(self, story_id: str) -> Path:
        return self.data_dir / "stories" / story_id / "librarian" / "analyses"

    def _index_path(self, story_id: str) -> Path:
        return self.analyses_dir(story_id) / INDEX_FILE

    @staticmethod
    def generate_id() -> str:
        return f"la-{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    async def save_analysis(self, story_id: str, analysis: LibrarianAnalysis) -> LibrarianAnalysis:
        """Write the record and point the index at it if it is the newest for its fragment."""
        if not analysis.id:
            analysis.id = self.generate_id()
        if not analysis.created_at:
            analysis.created_at = self._now_iso()
        write_json_atomic(self.analyses_dir(story_id) / f"{analysis.id}.json",
                          analysis.to_dict())

        index = await self.latest_analysis_ids_by_fragment(story_id)
        current_id = index.get(analysis.fragment_id)
        current = await self.get_analysis(story_id, current_id) if current_id else None
        if current is None or _newer(analysis, current):
            index[analysis.fragment_id] = analysis.id
            write_json_atomic(self._index_path(story_id), index)
        return analysis

    async def get_analysis(self, story_id: str, analysis_id: str) -> LibrarianAnalysis | None:
        try:
            data = read_json(self.analyses_dir(story_id) / f"{analysis_id}.json")
        except (OSError, json.JSONDecodeError):
            return None
        return LibrarianAnalysis.from_dict(data) if data else None

    def _scan(self, story_id: str) -> list[LibrarianAnalysis]:
        directory = self.analyses_dir(story_id)
        if not directory.is_dir():
            return []
        records = []
        for path in directory.glob("*.json"):
            if path.name == INDEX_FILE:
                continue
            try:
                records.append(LibrarianAnalysis.from_dict(
                    json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, json.JSONDecodeError, TypeError):
                logger.warning("Skipping unreadable analysis record", path=str(path))
        return records

    async def list_analyses(self, story_id: str) -> list[LibrarianAnalysis]:
        """All analyses, newest first."""
        records = self._scan(story_id)
        records.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return records

    async def latest_analysis_ids_by_fragment(self, story_id: str) -> dict[str, str]:
        """Read the index, rebuilding it when it is missing or corrupted."""
        path = self._index_path(story_id)
        try:
            data = read_json(path)
        except (OSError, json.JSONDecodeError):
            data = None
            logger.warning("Analysis index unreadable, rebuilding", story_id=story_id)
        if isinstance(data, dict):
            return data
        if not self.analyses_dir(story_id).is_dir():
            return {}
        return await self.rebuild_index(story_id)

    async def rebuild_index(self, story_id: str) -> dict[str, str]:
        """Recompute fragment_id -> newest analysis id from the records on disk."""
        latest: dict[str, LibrarianAnalysis] = {}
        for analysis in self._scan(story_id):
            current = latest.get(analysis.fragment_id)
            if current is None or _newer(analysis, current):
                latest[analysis.fragment_id] = analysis
        index = {fid: a.id for fid, a in sorted(latest.items())}
        write_json_atomic(self._index_path(story_id), index)
        logger.info("Analysis index rebuilt", story_id=story_id, fragments=len(index))
        return index


def _newer(a: LibrarianAnalysis, b: LibrarianAnalysis) -> bool:
    return (a.created_at, a.id) > (b.created_at, b.id)

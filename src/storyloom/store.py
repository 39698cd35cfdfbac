"""FragmentStore — JSON file persistence for stories, fragments and the prose chain."""

import json
import os
import secrets
import string
from datetime import datetime, timezone
from pathlib import Path

import structlog

from storyloom.models import Fragment, ProseChain, ProseChainEntry, StoryMeta
from storyloom.registry import FragmentTypeRegistry, default_registry

logger = structlog.get_logger(__name__)

MAX_DESCRIPTION_CHARS = 50
ID_ALPHABET = string.ascii_lowercase + string.digits
PROSE_CHAIN_FILE = "prose-chain.json"


def write_json_atomic(path: Path, data) -> None:
    """Write JSON via a temp file + rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def read_json(path: Path):
    """Read a JSON file, returning None when it is missing."""
    if not path.is_file():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


class FragmentStore:
    """File-backed story store.

    Layout under data_dir:
        stories/<story_id>/meta.json
        stories/<story_id>/fragments/<fragment_id>.json
        stories/<story_id>/prose-chain.json

    Single writer, read-then-write, last write wins.
    """

    def __init__(self, data_dir: Path, registry: FragmentTypeRegistry | None = None):
        self.data_dir = Path(data_dir)
        self.registry = registry or default_registry()

    def story_dir(self, story_id: str) -> Path:
        return self.data_dir / "stories" / story_id

    def _fragment_path(self, story_id: str, fragment_id: str) -> Path:
        return self.story_dir(story_id) / "fragments" / f"{fragment_id}.json"

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    def _generate_id(self, fragment_type: str) -> str:
        definition = self.registry.get(fragment_type)
        prefix = definition.prefix if definition else fragment_type[:2]
        suffix = "".join(secrets.choice(ID_ALPHABET) for _ in range(6))
        return f"{prefix}-{suffix}"

    # --- Stories ---

    async def create_story(self, story: StoryMeta) -> StoryMeta:
        now = self._now_iso()
        story.created_at = story.created_at or now
        story.updated_at = story.updated_at or now
        (self.story_dir(story.id) / "fragments").mkdir(parents=True, exist_ok=True)
        write_json_atomic(self.story_dir(story.id) / "meta.json", story.to_dict())
        return story

    async def get_story(self, story_id: str) -> StoryMeta | None:
        data = read_json(self.story_dir(story_id) / "meta.json")
        return StoryMeta.from_dict(data) if data else None

    async def update_story(self, story: StoryMeta) -> StoryMeta:
        story.updated_at = self._now_iso()
        write_json_atomic(self.story_dir(story.id) / "meta.json", story.to_dict())
        return story

    # --- Fragments ---

    async def create_fragment(self, story_id: str, fragment: Fragment) -> Fragment:
        """Persist a new fragment. Generates id/timestamps if not set."""
        if len(fragment.description) > MAX_DESCRIPTION_CHARS:
            raise ValueError(
                f"Description exceeds {MAX_DESCRIPTION_CHARS} characters: "
                f"{len(fragment.description)}"
            )
        if not fragment.id:
            fragment.id = self._generate_id(fragment.type)
        if fragment.sticky is None:
            definition = self.registry.get(fragment.type)
            fragment.sticky = definition.sticky_by_default if definition else False
        now = self._now_iso()
        fragment.created_at = fragment.created_at or now
        fragment.updated_at = fragment.updated_at or now
        write_json_atomic(self._fragment_path(story_id, fragment.id), fragment.to_dict())
        return fragment

    async def get_fragment(self, story_id: str, fragment_id: str) -> Fragment | None:
        try:
            data = read_json(self._fragment_path(story_id, fragment_id))
        except (OSError, json.JSONDecodeError):
            logger.warning("Unreadable fragment file", story_id=story_id,
                           fragment_id=fragment_id)
            return None
        return Fragment.from_dict(data) if data else None

    async def list_fragments(
        self,
        story_id: str,
        fragment_type: str | None = None,
        include_archived: bool = False,
    ) -> list[Fragment]:
        """All fragments of a story, sorted by (order, created_at)."""
        frag_dir = self.story_dir(story_id) / "fragments"
        if not frag_dir.is_dir():
            return []

        fragments = []
        for path in sorted(frag_dir.glob("*.json")):
            try:
                fragment = Fragment.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError):
                logger.warning("Skipping unreadable fragment file", path=str(path))
                continue
            if fragment_type and fragment.type != fragment_type:
                continue
            if fragment.archived and not include_archived:
                continue
            fragments.append(fragment)

        fragments.sort(key=lambda f: (f.order, f.created_at))
        return fragments

    async def update_fragment(self, story_id: str, fragment: Fragment) -> Fragment:
        """Overwrite a fragment, pushing the previous content onto its version history."""
        previous = await self.get_fragment(story_id, fragment.id)
        if previous is None:
            raise ValueError(f"Fragment not found: {fragment.id}")
        fragment.versions = previous.versions + [{
            "version": previous.version,
            "name": previous.name,
            "description": previous.description,
            "content": previous.content,
            "updated_at": previous.updated_at,
        }]
        fragment.version = previous.version + 1
        fragment.updated_at = self._now_iso()
        write_json_atomic(self._fragment_path(story_id, fragment.id), fragment.to_dict())
        return fragment

    async def archive_fragment(self, story_id: str, fragment_id: str) -> Fragment | None:
        fragment = await self.get_fragment(story_id, fragment_id)
        if fragment is None:
            return None
        fragment.archived = True
        fragment.updated_at = self._now_iso()
        write_json_atomic(self._fragment_path(story_id, fragment_id), fragment.to_dict())
        return fragment

    # --- Prose chain ---

    async def get_prose_chain(self, story_id: str) -> ProseChain | None:
        data = read_json(self.story_dir(story_id) / PROSE_CHAIN_FILE)
        return ProseChain.from_dict(data) if data else None

    async def _save_prose_chain(self, story_id: str, chain: ProseChain) -> None:
        write_json_atomic(self.story_dir(story_id) / PROSE_CHAIN_FILE, chain.to_dict())

    async def add_prose_section(self, story_id: str, fragment_id: str) -> ProseChain:
        """Append a new section to the end of the chain."""
        chain = await self.get_prose_chain(story_id) or ProseChain()
        chain.entries.append(ProseChainEntry(variations=[fragment_id], active=fragment_id))
        await self._save_prose_chain(story_id, chain)
        return chain

    async def add_prose_variation(self, story_id: str, section: int,
                                  fragment_id: str) -> ProseChain:
        """Add a variation to an existing section and make it active."""
        chain = await self.get_prose_chain(story_id)
        if chain is None or not 0 <= section < len(chain.entries):
            raise ValueError(f"Prose section not found: {section}")
        entry = chain.entries[section]
        entry.variations.append(fragment_id)
        entry.active = fragment_id
        await self._save_prose_chain(story_id, chain)
        return chain

    async def switch_variation(self, story_id: str, section: int,
                               fragment_id: str) -> ProseChain:
        chain = await self.get_prose_chain(story_id)
        if chain is None or not 0 <= section < len(chain.entries):
            raise ValueError(f"Prose section not found: {section}")
        entry = chain.entries[section]
        if fragment_id not in entry.variations:
            raise ValueError(f"Fragment {fragment_id} is not a variation of section {section}")
        entry.active = fragment_id
        await self._save_prose_chain(story_id, chain)
        return chain

"""Shared fixtures for storyloom tests."""

import asyncio
from itertools import count

import pytest

from storyloom.models import Fragment, Placement, StoryMeta
from storyloom.store import FragmentStore

STORY_ID = "st-lantern"


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def store(data_dir):
    return FragmentStore(data_dir)


@pytest.fixture
def story(store):
    """Empty story."""
    return asyncio.run(store.create_story(StoryMeta(
        id=STORY_ID, name="The Lantern", description="A ghost story in a lighthouse",
    )))


@pytest.fixture
def make_fragment(store, story):
    """Factory persisting fragments with strictly increasing created_at.

    chain=True also appends the fragment as a new prose chain section.
    """
    counter = count()

    def make(type="prose", content="", id="", name="", description="", chain=False, **kwargs):
        n = next(counter)
        fragment = Fragment(
            id=id, type=type, name=name or f"{type} {n}", description=description,
            content=content, created_at=f"2026-01-01T{n // 60:02d}:{n % 60:02d}:00+00:00",
            **kwargs,
        )
        asyncio.run(store.create_fragment(story.id, fragment))
        if chain:
            asyncio.run(store.add_prose_section(story.id, fragment.id))
        return fragment

    return make


@pytest.fixture
def seeded_story(story, make_fragment):
    """Story with a guideline, a sticky character, shortlisted knowledge and three passages."""
    make_fragment("guideline", "Write in past tense.", id="gl-tense", name="Tense",
                  description="Past tense", sticky=True, placement=Placement.SYSTEM)
    make_fragment("character", "Keeper of the lighthouse.", id="ch-mara", name="Mara",
                  description="The keeper", sticky=True)
    make_fragment("knowledge", "The lamp has not been lit in forty years.", id="kn-lamp",
                  name="The Lamp", description="The dark lamp")
    make_fragment("prose", "The storm came in at dusk.", id="pr-one", chain=True)
    make_fragment("prose", "Mara climbed the stairs. <@ch-mara:short>", id="pr-two", chain=True)
    make_fragment("prose", "The lamp flickered.", id="pr-three", chain=True)
    return story

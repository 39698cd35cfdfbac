"""Tests for context blocks: defaults, editing, config merge, compilation."""

import pytest

from storyloom.blocks import (
    AUTHOR_INPUT_MARKER, add_cache_breakpoints, apply_block_config, apply_block_order,
    compile_blocks, create_default_blocks, find_block, insert_block_after,
    insert_block_before, remove_block, reorder_block, replace_block_content,
)
from storyloom.models import (
    BlockConfig, BlockOverride, BlockRole, BlockSource, ChapterSummary, ContentPart,
    ContextBlock, ContextBuildState, ContextMessage, CustomBlock, Fragment, Placement,
    ShortlistEntry, StoryMeta,
)
from storyloom.scripts import ScriptContext


def block(id, role=BlockRole.USER, content="", order=0):
    return ContextBlock(id, role, content or id, order)


def block_ids(blocks):
    return [b.id for b in blocks]


@pytest.fixture
def state():
    story = StoryMeta(id="st-x", name="The Lantern", description="A ghost story")
    return ContextBuildState(
        story=story,
        author_input="Mara lights the lamp",
        prose_fragments=[
            Fragment(id="pr-1", type="prose", name="", content="The storm came in."),
            Fragment(id="pr-2", type="prose", name="", content="The lamp flickered."),
        ],
        sticky={
            "character": [Fragment(id="ch-mara", type="character", name="Mara",
                                   content="The keeper.")],
            "guideline": [Fragment(id="gl-tense", type="guideline", name="Tense",
                                   content="Past tense.", placement=Placement.SYSTEM)],
        },
        shortlist={"knowledge": [ShortlistEntry("kn-lamp", "The dark lamp")]},
        summary="Mara arrived.",
    )


class TestCompileBlocks:

    def test_system_first_then_user(self):
        messages = compile_blocks([
            block("u", BlockRole.USER, "user text"),
            block("s", BlockRole.SYSTEM, "system text"),
        ])
        assert [m.role for m in messages] == ["system", "user"]
        assert messages[0].content == "[@block=s]\nsystem text"

    def test_sorted_by_order(self):
        messages = compile_blocks([block("b", order=2), block("a", order=1)])
        assert messages[0].content == "[@block=a]\na\n\n[@block=b]\nb"

    def test_stable_for_equal_order(self):
        messages = compile_blocks([block("first", order=5), block("second", order=5)])
        assert messages[0].content.index("first") < messages[0].content.index("second")

    def test_role_without_blocks_omitted(self):
        messages = compile_blocks([block("only", BlockRole.USER)])
        assert [m.role for m in messages] == ["user"]

    def test_empty(self):
        assert compile_blocks([]) == []


class TestDefaultBlocks:

    def test_block_set(self, state):
        blocks = create_default_blocks(state)
        assert block_ids(blocks) == [
            "instructions", "tools", "story-info", "summary", "prose",
            "sticky-character", "system-guideline", "shortlist-knowledge", "author-input",
        ]

    def test_roles_and_orders(self, state):
        blocks = {b.id: b for b in create_default_blocks(state)}
        assert blocks["instructions"].role == BlockRole.SYSTEM
        assert blocks["system-guideline"].role == BlockRole.SYSTEM
        assert blocks["sticky-character"].role == BlockRole.USER
        assert blocks["author-input"].order == 600
        assert blocks["sticky-character"].order == 300
        assert blocks["system-guideline"].order == 310

    def test_contents(self, state):
        blocks = {b.id: b for b in create_default_blocks(state)}
        assert blocks["story-info"].content == "## Story: The Lantern\nA ghost story"
        assert blocks["summary"].content == "## Story Summary So Far\nMara arrived."
        assert blocks["prose"].content == "## Recent Prose\nThe storm came in.\n\nThe lamp flickered."
        assert blocks["sticky-character"].content == "## Characters\n## Mara\nThe keeper."
        assert blocks["system-guideline"].content == "## Guidelines\n**Tense**: Past tense."
        assert blocks["shortlist-knowledge"].content == (
            "## Available Knowledge (use getKnowledge(id) to retrieve)\n- kn-lamp: The dark lamp"
        )
        assert blocks["author-input"].content == (
            "The author wants the following to happen next: Mara lights the lamp"
        )

    def test_tools_list(self, state):
        tools = find_block(create_default_blocks(state), "tools").content
        assert "- getCharacter(id)" in tools
        assert "- listCharacters()" in tools
        assert "- listProse()" in tools
        assert "- listFragmentTypes()" in tools

    def test_extra_tools_listed(self, state):
        blocks = create_default_blocks(state, extra_tools=[("searchNotes(q)", "Search notes")])
        assert "- searchNotes(q): Search notes" in find_block(blocks, "tools").content

    def test_minimal_state(self):
        state = ContextBuildState(story=StoryMeta(id="st-x", name=""))
        assert block_ids(create_default_blocks(state)) == ["instructions", "tools", "author-input"]

    def test_chapter_summaries_only_when_enabled(self, state):
        state.chapter_summaries = [ChapterSummary("mk-1", "Chapter One", "Storm.")]
        assert find_block(create_default_blocks(state), "chapter-summaries") is None

        state.story.settings.hierarchical_summaries = True
        chapters = find_block(create_default_blocks(state), "chapter-summaries")
        assert chapters.content == "## Earlier Chapters\n\n### Chapter One\nStorm."
        assert chapters.order == 175

    def test_compiled_prompt(self, state):
        messages = compile_blocks(create_default_blocks(state))
        system, user = messages
        assert system.content.startswith("[@block=instructions]\n")
        assert "[@block=system-guideline]" in system.content
        assert user.content.startswith("[@block=story-info]")
        assert user.content.rstrip().endswith("Mara lights the lamp")


class TestEditingPrimitives:

    @pytest.fixture
    def blocks(self):
        return [block("a", order=1), block("b", order=2), block("c", order=3)]

    def test_find(self, blocks):
        assert find_block(blocks, "b").order == 2
        assert find_block(blocks, "z") is None

    def test_replace_content_does_not_mutate(self, blocks):
        result = replace_block_content(blocks, "b", "new")
        assert find_block(result, "b").content == "new"
        assert find_block(blocks, "b").content == "b"

    def test_remove(self, blocks):
        assert block_ids(remove_block(blocks, "b")) == ["a", "c"]
        assert len(blocks) == 3

    def test_insert_before_takes_target_order(self, blocks):
        result = insert_block_before(blocks, "b", block("new", order=99))
        assert block_ids(result) == ["a", "new", "b", "c"]
        assert find_block(result, "new").order == 2
        assert "[@block=new]\nnew\n\n[@block=b]" in compile_blocks(result)[0].content

    def test_insert_after(self, blocks):
        result = insert_block_after(blocks, "b", block("new"))
        assert block_ids(result) == ["a", "b", "new", "c"]
        assert "[@block=b]\nb\n\n[@block=new]" in compile_blocks(result)[0].content

    def test_insert_missing_target_appends(self, blocks):
        result = insert_block_after(blocks, "zz", block("new", order=7))
        assert block_ids(result)[-1] == "new"
        assert find_block(result, "new").order == 7

    def test_reorder(self, blocks):
        result = reorder_block(blocks, "a", 10)
        assert compile_blocks(result)[0].content.endswith("[@block=a]\na")


class TestApplyBlockConfig:

    @pytest.fixture
    def blocks(self):
        return [
            block("instructions", BlockRole.SYSTEM, "Write well.", 100),
            block("prose", BlockRole.USER, "Recent prose", 200),
            block("author-input", BlockRole.USER, "Next", 600),
        ]

    def test_empty_config_is_identity(self, blocks):
        assert apply_block_config(blocks, BlockConfig()) == blocks

    def test_disabled_block_removed(self, blocks):
        config = BlockConfig(overrides={"prose": BlockOverride(enabled=False)})
        assert block_ids(apply_block_config(blocks, config)) == ["instructions", "author-input"]

    @pytest.mark.parametrize("mode,expected", [
        ("replace", "Custom"),
        ("override", "Custom"),
        ("prepend", "Custom\nRecent prose"),
        ("append", "Recent prose\nCustom"),
    ])
    def test_content_modes(self, blocks, mode, expected):
        config = BlockConfig(overrides={
            "prose": BlockOverride(content_mode=mode, custom_content="Custom"),
        })
        assert find_block(apply_block_config(blocks, config), "prose").content == expected

    def test_override_without_content_is_noop(self, blocks):
        config = BlockConfig(overrides={"prose": BlockOverride(content_mode="replace")})
        assert find_block(apply_block_config(blocks, config), "prose").content == "Recent prose"

    def test_unknown_content_mode(self, blocks):
        config = BlockConfig(overrides={
            "prose": BlockOverride(content_mode="shuffle", custom_content="x"),
        })
        with pytest.raises(ValueError, match="Unknown content mode"):
            apply_block_config(blocks, config)

    def test_simple_custom_block(self, blocks):
        config = BlockConfig(custom_blocks=[
            CustomBlock("style", "Style", BlockRole.SYSTEM, 150, "Be terse."),
        ])
        result = apply_block_config(blocks, config)
        style = find_block(result, "style")
        assert style.source == BlockSource.CUSTOM
        assert compile_blocks(result)[0].content.endswith("[@block=style]\nBe terse.")

    def test_disabled_custom_block_skipped(self, blocks):
        config = BlockConfig(custom_blocks=[
            CustomBlock("style", "Style", BlockRole.USER, 150, "x", enabled=False),
        ])
        assert find_block(apply_block_config(blocks, config), "style") is None

    def test_custom_block_colliding_id_skipped(self, blocks):
        config = BlockConfig(custom_blocks=[
            CustomBlock("prose", "Prose", BlockRole.USER, 1, "Hijacked"),
        ])
        result = apply_block_config(blocks, config)
        assert [b.content for b in result if b.id == "prose"] == ["Recent prose"]

    def test_script_block(self, blocks):
        ctx = ScriptContext(ContextBuildState(story=StoryMeta(id="st-x", name="Lantern")), [])
        config = BlockConfig(custom_blocks=[
            CustomBlock("sc", "Script", BlockRole.USER, 300,
                        'f"Story: {ctx.story.name}"', type="script"),
        ])
        sc = find_block(apply_block_config(blocks, config, ctx), "sc")
        assert sc.content == "Story: Lantern"
        assert sc.source == BlockSource.SCRIPT

    def test_script_error_rendered_inline(self, blocks):
        config = BlockConfig(custom_blocks=[
            CustomBlock("sc", "Script", BlockRole.USER, 300, "1 / 0", type="script"),
        ])
        sc = find_block(apply_block_config(blocks, config), "sc")
        assert sc.content == "[Script error in sc: division by zero]"

    def test_script_dunder_rejected(self, blocks):
        config = BlockConfig(custom_blocks=[
            CustomBlock("sc", "Script", BlockRole.USER, 300, "ctx.__class__", type="script"),
        ])
        sc = find_block(apply_block_config(blocks, config), "sc")
        assert "dunder names are not allowed" in sc.content

    def test_blank_script_dropped(self, blocks):
        config = BlockConfig(custom_blocks=[
            CustomBlock("sc", "Script", BlockRole.USER, 300, '"   "', type="script"),
        ])
        assert find_block(apply_block_config(blocks, config), "sc") is None

    def test_block_order(self, blocks):
        config = BlockConfig(block_order=["author-input", "prose"])
        result = apply_block_config(blocks, config)
        assert [(b.id, b.order) for b in result] == [
            ("author-input", 0), ("prose", 1), ("instructions", 2),
        ]
        assert compile_blocks(result)[1].content.startswith("[@block=author-input]")

    def test_block_order_ignores_unknown_ids(self, blocks):
        result = apply_block_order(blocks, ["ghost", "prose"])
        assert [(b.id, b.order) for b in result] == [
            ("prose", 1), ("instructions", 2), ("author-input", 3),
        ]


class TestCacheBreakpoints:

    def test_system_cached_whole(self):
        (message,) = add_cache_breakpoints([ContextMessage("system", "rules")])
        assert message.content == [ContentPart("rules", cache=True)]

    def test_user_split_at_author_input(self):
        text = f"[@block=prose]\nOld prose\n\n{AUTHOR_INPUT_MARKER}\nNext"
        (message,) = add_cache_breakpoints([ContextMessage("user", text)])
        prefix, suffix = message.content
        assert prefix.cache is True
        assert suffix.cache is False
        assert prefix.text == "[@block=prose]\nOld prose\n\n"
        assert suffix.text.startswith(AUTHOR_INPUT_MARKER)
        assert message.text() == text

    def test_user_without_marker_unchanged(self):
        (message,) = add_cache_breakpoints([ContextMessage("user", "no marker here")])
        assert message.content == "no marker here"

    def test_marker_at_start_unchanged(self):
        text = f"{AUTHOR_INPUT_MARKER}\nNext"
        (message,) = add_cache_breakpoints([ContextMessage("user", text)])
        assert message.content == text

    def test_already_split_passes_through(self):
        parts = [ContentPart("a", cache=True)]
        (message,) = add_cache_breakpoints([ContextMessage("user", parts)])
        assert message.content is parts

"""Tests for block configuration persistence."""

import asyncio

import pytest

from storyloom.block_config import BlockConfigStore
from storyloom.models import BlockConfig, BlockOverride, BlockRole, CustomBlock

STORY = "st-lantern"


@pytest.fixture
def configs(data_dir):
    return BlockConfigStore(data_dir)


def run(coro):
    return asyncio.run(coro)


def style_block(**kwargs):
    return CustomBlock(**{"id": "style", "name": "Style", "role": BlockRole.SYSTEM,
                          "order": 150, "content": "Be terse.", **kwargs})


class TestBlockConfigStore:

    def test_missing_config_is_empty(self, configs):
        assert run(configs.get_config(STORY)) == BlockConfig()

    def test_paths(self, configs, data_dir):
        assert configs.config_path(STORY) == data_dir / "stories" / STORY / "block-config.json"
        assert configs.config_path(STORY, "librarian.analyze") == (
            data_dir / "stories" / STORY / "agent-blocks" / "librarian.analyze.json"
        )

    def test_invalid_config_is_empty(self, configs):
        path = configs.config_path(STORY)
        path.parent.mkdir(parents=True)
        path.write_text('{"custom_blocks": [{"id": "x"}]}', encoding="utf-8")
        assert run(configs.get_config(STORY)) == BlockConfig()

    def test_save_and_load(self, configs):
        config = BlockConfig(
            custom_blocks=[style_block()],
            overrides={"prose": BlockOverride(content_mode="append", custom_content="More.")},
            block_order=["style", "prose"],
            disabled_tools=["listProse"],
        )
        run(configs.save_config(STORY, config))
        assert run(configs.get_config(STORY)) == config

    def test_add_custom_block_appends_to_order(self, configs):
        config = run(configs.add_custom_block(STORY, style_block()))
        assert config.block_order == ["style"]
        assert run(configs.get_config(STORY)).custom_blocks[0].role == BlockRole.SYSTEM

    def test_add_duplicate_rejected(self, configs):
        run(configs.add_custom_block(STORY, style_block()))
        with pytest.raises(ValueError, match="Custom block already exists: style"):
            run(configs.add_custom_block(STORY, style_block()))

    def test_update_custom_block(self, configs):
        run(configs.add_custom_block(STORY, style_block()))
        config = run(configs.update_custom_block(STORY, "style", {"content": "Be lush."}))
        assert config.custom_blocks[0].content == "Be lush."
        assert config.custom_blocks[0].order == 150

    def test_update_missing_block(self, configs):
        assert run(configs.update_custom_block(STORY, "nope", {"content": "x"})) is None

    def test_update_unknown_field(self, configs):
        run(configs.add_custom_block(STORY, style_block()))
        with pytest.raises(ValueError, match="Unknown custom block fields: colour"):
            run(configs.update_custom_block(STORY, "style", {"colour": "red"}))

    def test_delete_custom_block(self, configs):
        run(configs.add_custom_block(STORY, style_block()))
        run(configs.update_overrides(STORY, {"style": BlockOverride(enabled=False)}))
        config = run(configs.delete_custom_block(STORY, "style"))
        assert config.custom_blocks == []
        assert config.block_order == []
        assert "style" not in config.overrides

    def test_update_overrides_merges_fields(self, configs):
        run(configs.update_overrides(STORY, {
            "prose": BlockOverride(content_mode="prepend", custom_content="Note."),
        }))
        config = run(configs.update_overrides(STORY, {"prose": BlockOverride(enabled=False)}))
        assert config.overrides["prose"] == BlockOverride(
            enabled=False, content_mode="prepend", custom_content="Note.")

    def test_update_overrides_block_order(self, configs):
        run(configs.update_overrides(STORY, {}, block_order=["prose", "summary"]))
        assert run(configs.get_config(STORY)).block_order == ["prose", "summary"]

    def test_disabled_tools(self, configs):
        run(configs.set_disabled_tools(STORY, ["listProse"]))
        assert run(configs.get_config(STORY)).disabled_tools == ["listProse"]

    def test_agent_configs_are_separate(self, configs):
        run(configs.add_custom_block(STORY, style_block(), agent_name="generation.writer"))
        assert run(configs.get_config(STORY)) == BlockConfig()
        assert run(configs.get_config(STORY, "generation.writer")).block_order == ["style"]

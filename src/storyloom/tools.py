"""Tool definitions offered to the model, plus read-only fragment lookup tools."""

from dataclasses import dataclass
from typing import Any, Callable

import structlog
from pydantic import BaseModel, Field, ValidationError

from storyloom.registry import FragmentTypeRegistry, plural_label, type_label
from storyloom.store import FragmentStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: type[BaseModel]
    handler: Callable[[Any], Any]

    def json_schema(self) -> dict:
        return self.input_schema.model_json_schema()

    def execute(self, data: dict) -> Any:
        """Validate and run. Invalid input yields {"error": ...} instead of raising.

        The handler may be async, in which case the awaitable is returned.
        """
        try:
            parsed = self.input_schema.model_validate(data or {})
        except ValidationError as e:
            return {"error": validation_message(e)}
        return self.handler(parsed)


def validation_message(error: ValidationError) -> str:
    return "; ".join(err["msg"] for err in error.errors())


class FragmentIdInput(BaseModel):
    id: str = Field(description="The fragment ID (e.g. ch-a1b2c3)")


class NoInput(BaseModel):
    pass


def create_fragment_tools(store: FragmentStore, story_id: str,
                          registry: FragmentTypeRegistry | None = None,
                          disabled: list[str] | None = None) -> list[ToolDefinition]:
    """get<Type>(id) and list<Types>() for every registered type, plus listFragmentTypes()."""
    registry = registry or store.registry
    tools = []

    for definition in registry.list_types():
        type_name = definition.type

        async def get_fragment(data: FragmentIdInput, type_name=type_name):
            fragment = await store.get_fragment(story_id, data.id)
            if fragment is None or fragment.type != type_name:
                logger.debug("Tool lookup missed", story_id=story_id, fragment_id=data.id)
                return {"error": f"Fragment not found: {data.id}"}
            return {
                "id": fragment.id,
                "type": fragment.type,
                "name": fragment.name,
                "description": fragment.description,
                "content": fragment.content,
                "tags": fragment.tags,
                "refs": fragment.refs,
                "sticky": fragment.sticky,
            }

        async def list_fragments(data: NoInput, type_name=type_name):
            fragments = await store.list_fragments(story_id, type_name)
            return {"fragments": [
                {"id": f.id, "name": f.name, "description": f.description} for f in fragments
            ]}

        tools.append(ToolDefinition(
            f"get{type_label(type_name)}",
            f"Get the full content of a {type_name} fragment by its ID",
            FragmentIdInput, get_fragment,
        ))
        tools.append(ToolDefinition(
            f"list{plural_label(type_name)}",
            f"List all {type_name} fragments (returns id, name, description)",
            NoInput, list_fragments,
        ))

    def list_types(data: NoInput):
        return {"types": [
            {"type": d.type, "prefix": d.prefix, "sticky_by_default": d.sticky_by_default}
            for d in registry.list_types()
        ]}

    tools.append(ToolDefinition(
        "listFragmentTypes", "List all available fragment types", NoInput, list_types))

    if disabled:
        tools = [t for t in tools if t.name not in disabled]
    return tools

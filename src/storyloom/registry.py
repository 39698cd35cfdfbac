"""Fragment type registry: prefixes, stickiness defaults and context renderers."""

import re
from dataclasses import dataclass
from typing import Callable

from storyloom.models import Fragment

# Fragment tags only match two-letter prefixes
PREFIX_PATTERN = re.compile(r"[a-z]{2}")


@dataclass(frozen=True)
class FragmentTypeDefinition:
    type: str
    prefix: str
    sticky_by_default: bool
    render: Callable[[Fragment], str]


BUILTIN_TYPES: tuple[FragmentTypeDefinition, ...] = (
    FragmentTypeDefinition("prose", "pr", False, lambda f: f.content),
    FragmentTypeDefinition("character", "ch", False, lambda f: f"## {f.name}\n{f.content}"),
    FragmentTypeDefinition("guideline", "gl", True, lambda f: f"**{f.name}**: {f.content}"),
    FragmentTypeDefinition("knowledge", "kn", False, lambda f: f"### {f.name}\n{f.content}"),
    FragmentTypeDefinition("marker", "mk", False, lambda f: f"--- {f.name} ---"),
)

# Types that live in the prose chain rather than in sticky/shortlist groups
CHAIN_TYPES = frozenset({"prose", "marker"})


class FragmentTypeRegistry:
    """Lookup table of fragment types. Populated before use, read-only afterwards."""

    def __init__(self, definitions: tuple[FragmentTypeDefinition, ...] = ()):
        self._types: dict[str, FragmentTypeDefinition] = {}
        self._prefixes: dict[str, FragmentTypeDefinition] = {}
        for d in definitions:
            self.register(d)

    def register(self, definition: FragmentTypeDefinition) -> None:
        if not PREFIX_PATTERN.fullmatch(definition.prefix):
            raise ValueError(f'Prefix must be two lowercase letters: "{definition.prefix}"')
        if definition.type in self._types:
            raise ValueError(f'Fragment type "{definition.type}" is already registered')
        if definition.prefix in self._prefixes:
            raise ValueError(f'Prefix "{definition.prefix}" is already in use')
        self._types[definition.type] = definition
        self._prefixes[definition.prefix] = definition

    def get(self, type_name: str) -> FragmentTypeDefinition | None:
        return self._types.get(type_name)

    def list_types(self) -> list[FragmentTypeDefinition]:
        return list(self._types.values())

    def render(self, fragment: Fragment) -> str:
        definition = self._types.get(fragment.type)
        if definition is None:
            return f"[{fragment.type}:{fragment.id}] {fragment.content}"
        return definition.render(fragment)


def default_registry() -> FragmentTypeRegistry:
    """Fresh registry holding the builtin fragment types."""
    return FragmentTypeRegistry(BUILTIN_TYPES)


def type_label(type_name: str) -> str:
    """'character' -> 'Character'."""
    return type_name[:1].upper() + type_name[1:]


def plural_label(type_name: str) -> str:
    """'character' -> 'Characters'. Mass nouns stay singular."""
    label = type_label(type_name)
    return label if type_name in ("prose", "knowledge") else f"{label}s"

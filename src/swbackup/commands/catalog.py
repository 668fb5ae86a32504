"""Brand specific commands that make a switch upload its running-config."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from swbackup.core.models import BACKUP_FUNCTION, CommandTemplate

DEFAULT_TEMPLATES: Mapping[str, Mapping[str, str]] = {
    "Aruba": {BACKUP_FUNCTION: 'copy running-config tftp {server} "{filename}"'},
    "HP": {BACKUP_FUNCTION: 'copy running-config tftp {server} "{filename}"'},
    "ProCurve": {BACKUP_FUNCTION: 'copy running-config tftp {server} "{filename}"'},
}


def _key(value: str) -> str:
    return value.strip()


@dataclass(slots=True)
class CommandCatalog:
    """Lookup of command templates by brand and function.

    Brand and function are compared exactly after trimming surrounding
    whitespace. "Aruba" matches neither "aruba" nor "Aruba 2930F".
    """

    _templates: dict[tuple[str, str], CommandTemplate] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, *mappings: Mapping[str, Mapping[str, str]]) -> "CommandCatalog":
        """Build a catalog, later mappings overriding earlier ones."""

        catalog = cls()
        for mapping in mappings:
            for brand, functions in mapping.items():
                for function, template in functions.items():
                    catalog.register(brand, function, template)
        return catalog

    @classmethod
    def default(cls, overrides: Mapping[str, Mapping[str, str]] | None = None) -> "CommandCatalog":
        return cls.from_mapping(DEFAULT_TEMPLATES, overrides or {})

    def register(self, brand: str, function: str, template: str) -> CommandTemplate:
        entry = CommandTemplate(brand=brand.strip(), function=function.strip(), template=template)
        self._templates[(_key(brand), _key(function))] = entry
        return entry

    def resolve(self, brand: str, function: str = BACKUP_FUNCTION) -> CommandTemplate | None:
        return self._templates.get((_key(brand), _key(function)))

    def brands(self) -> list[str]:
        return sorted({template.brand for template in self._templates.values()})

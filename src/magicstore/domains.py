"""Built-in store domains used by the shell tools.

Each domain is one JSON file under settings.data_dir holding a version tag and
one list of records. Record shapes belong to the tools; here they are opaque.

    quickjump/paths.json       {"version": 1, "paths": [...]}
    templater/templates.json   {"version": 1, "templates": [...]}
    unity/projects.json        {"version": 1, "projects": [...]}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from magicstore.config import StoreSettings
from magicstore.store import Store, get_store

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from magicstore.loader import RecoveryEvent


@dataclass(frozen=True)
class StoreDomain:
    key: str
    filename: str               # relative to settings.data_dir
    list_field: str
    version: int = 1

    def path(self, settings: StoreSettings) -> Path:
        return settings.data_dir / self.filename

    def default(self) -> dict[str, Any]:
        return {"version": self.version, self.list_field: []}

    def normalize(self, doc: Any) -> dict[str, Any]:
        """Fill absent fields; reject shapes no tool could use."""
        if not isinstance(doc, dict):
            msg = f"{self.key}: expected a JSON object, got {type(doc).__name__}"
            raise TypeError(msg)
        records = doc.get(self.list_field)
        if records is None:
            records = []
        elif not isinstance(records, list):
            msg = f"{self.key}: {self.list_field!r} must be a list, got {type(records).__name__}"
            raise TypeError(msg)
        return {**doc, "version": doc.get("version", self.version), self.list_field: records}

    def records(self, doc: dict[str, Any]) -> list[Any]:
        return doc[self.list_field]


DOMAINS: dict[str, StoreDomain] = {
    d.key: d
    for d in (
        StoreDomain("quickjump", "quickjump/paths.json", "paths"),
        StoreDomain("templater", "templater/templates.json", "templates"),
        StoreDomain("unity", "unity/projects.json", "projects"),
    )
}


def get_domain(key: str) -> StoreDomain:
    try:
        return DOMAINS[key]
    except KeyError:
        msg = f"unknown store {key!r} (known: {', '.join(sorted(DOMAINS))})"
        raise ValueError(msg) from None


def open_domain(
    key: str,
    settings: StoreSettings | None = None,
    *,
    on_corruption: Callable[[RecoveryEvent], None] | None = None,
) -> Store:
    """The process-wide Store for a built-in domain."""
    domain = get_domain(key)
    settings = settings or StoreSettings()
    return get_store(
        key,
        domain.path(settings),
        default=domain.default,
        normalize=domain.normalize,
        settings=settings,
        on_corruption=on_corruption,
    )

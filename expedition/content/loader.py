"""Structured content loading helpers."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Sequence

import yaml

from .models import Item, LootEntry, Monster, SchemaError
from .registry import ItemRegistry, MonsterRegistry

__all__ = ["ContentLibrary", "ContentLoadError", "DEFAULT_CONTENT_PATH"]

SUPPORTED_EXTENSIONS = (".json", ".yaml", ".yml")
DEFAULT_CONTENT_PATH = Path(__file__).with_name("data")


class ContentLoadError(RuntimeError):
    """Raised when content could not be loaded from disk."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        if path is not None:
            message = f"{message} (source: {path})"
        super().__init__(message)
        self.path = path


@dataclass(frozen=True)
class ContentLibrary:
    """Container bundling all loaded content registries."""

    base_path: Path
    items: ItemRegistry
    monsters: MonsterRegistry

    @classmethod
    def load_from_path(cls, base_path: Path | None = None) -> "ContentLibrary":
        loader = _ContentLoader(base_path or DEFAULT_CONTENT_PATH)
        return loader.load()


class _ContentLoader:
    def __init__(self, base_path: Path) -> None:
        self.base_path = base_path

    # -- public entrypoint -------------------------------------------------
    def load(self) -> ContentLibrary:
        items = self._load_items()
        monsters = self._load_monsters(items)
        return ContentLibrary(base_path=self.base_path, items=items, monsters=monsters)

    # -- concrete loaders --------------------------------------------------
    def _load_items(self) -> ItemRegistry:
        registry = ItemRegistry()
        for file_path, (key, data) in self._iter_entries("items"):
            try:
                item = Item.from_mapping(key, data)
            except SchemaError as exc:
                raise ContentLoadError(str(exc), path=file_path) from exc
            try:
                registry.register(item.key, item)
            except ValueError as exc:
                raise ContentLoadError(str(exc), path=file_path) from exc
        return registry

    def _load_monsters(self, items: ItemRegistry) -> MonsterRegistry:
        registry = MonsterRegistry()
        for file_path, (key, data) in self._iter_entries("monsters"):
            loot = self._resolve_loot(file_path, data.get("loot"), items)
            try:
                monster = Monster.from_mapping(key, data, loot)
            except SchemaError as exc:
                raise ContentLoadError(str(exc), path=file_path) from exc
            try:
                registry.register(monster.key, monster)
            except ValueError as exc:
                raise ContentLoadError(str(exc), path=file_path) from exc
        return registry

    # -- helpers -----------------------------------------------------------
    def _iter_entries(
        self, category: str
    ) -> Iterable[tuple[Path, tuple[str, MutableMapping[str, object]]]]:
        path = self.base_path / category
        if not path.exists():
            return []
        files = sorted(
            file_path
            for file_path in path.iterdir()
            if file_path.is_file() and file_path.suffix.lower() in SUPPORTED_EXTENSIONS
        )
        entries: list[tuple[Path, tuple[str, MutableMapping[str, object]]]] = []
        for file_path in files:
            raw = self._load_structured(file_path)
            if isinstance(raw, MutableMapping):
                mapping = dict(raw)
                entries.append((file_path, (self._extract_key(file_path, mapping), mapping)))
            elif isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
                for index, element in enumerate(raw):
                    if not isinstance(element, MutableMapping):
                        raise ContentLoadError(
                            f"Expected mapping entries in {category} definition",
                            path=file_path,
                        )
                    mapping = dict(element)
                    key = self._extract_key(file_path, mapping, suffix=str(index))
                    entries.append((file_path, (key, mapping)))
            else:
                raise ContentLoadError(
                    f"Unsupported structure in {category} content: expected mapping or list of mappings",
                    path=file_path,
                )
        return entries

    def _load_structured(self, file_path: Path) -> object:
        try:
            text = file_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ContentLoadError("Unable to read content file", path=file_path) from exc
        suffix = file_path.suffix.lower()
        try:
            if suffix == ".json":
                return json.loads(text)
            if suffix in {".yaml", ".yml"}:
                return yaml.safe_load(text)
        except (ValueError, yaml.YAMLError) as exc:
            raise ContentLoadError("Failed to parse structured content", path=file_path) from exc
        raise ContentLoadError(
            f"Unsupported file extension '{file_path.suffix}' for content file",
            path=file_path,
        )

    def _extract_key(
        self,
        file_path: Path,
        mapping: Mapping[str, object],
        *,
        suffix: str | None = None,
    ) -> str:
        for field in ("id", "key", "slug"):
            value = mapping.get(field)
            if isinstance(value, str) and value.strip():
                return value
        name = mapping.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip().lower().replace(" ", "_")
        stem = file_path.stem
        if suffix is not None:
            stem = f"{stem}-{suffix}"
        return stem

    def _resolve_loot(
        self, file_path: Path, raw: object, items: ItemRegistry
    ) -> tuple[LootEntry, ...]:
        if raw is None:
            return ()
        if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
            raise ContentLoadError("loot must be a sequence", path=file_path)
        resolved: list[LootEntry] = []
        for element in raw:
            weight = 1
            if isinstance(element, str):
                identifier = element
            elif isinstance(element, Mapping):
                identifier = element.get("item") or element.get("id") or element.get("name")
                try:
                    weight = int(element.get("weight", 1))
                except (TypeError, ValueError) as exc:
                    raise ContentLoadError("loot weight must be an integer", path=file_path) from exc
            else:
                raise ContentLoadError("loot entries must be strings or mappings", path=file_path)
            if not isinstance(identifier, str):
                raise ContentLoadError("loot entries must name an item", path=file_path)
            try:
                item = items.get(identifier)
            except KeyError as exc:
                raise ContentLoadError(f"Unknown loot item '{identifier}'", path=file_path) from exc
            resolved.append(LootEntry(item=item, weight=max(1, weight)))
        return tuple(resolved)

"""Chunk manifest model and the naming rules shared by splitter and reconstructor."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterator

from pydantic import Field, PositiveInt, RootModel, ValidationError

DEFAULT_MANIFEST_NAME = "chunks-manifest.json"
PART_SEPARATOR = ".part"


class ManifestError(ValueError):
    """Raised when a manifest payload cannot be parsed."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class ChunkManifest(RootModel[dict[str, PositiveInt]]):
    """Mapping of root-relative paths to the number of chunks they were split into."""

    root: dict[str, PositiveInt] = Field(default_factory=dict)

    def __contains__(self, key: object) -> bool:
        return key in self.root

    def __iter__(self) -> Iterator[str]:  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)

    def get(self, key: str) -> int | None:
        return self.root.get(normalize_key(key))

    def set(self, key: str, chunk_count: int) -> None:
        if chunk_count <= 0:
            raise ValueError("chunk_count must be positive")
        self.root[normalize_key(key)] = chunk_count

    def remove(self, key: str) -> None:
        self.root.pop(normalize_key(key), None)

    def entries(self) -> list[tuple[str, int]]:
        return sorted(self.root.items())

    @classmethod
    def from_json(cls, text: str | bytes) -> "ChunkManifest":
        """Parse a manifest body, raising ``ManifestError`` for anything malformed."""
        try:
            return cls.model_validate_json(text)
        except ValidationError as exc:
            raise ManifestError(f"Invalid chunk manifest: {exc.error_count()} error(s)") from exc

    def to_json(self) -> str:
        return json.dumps(self.root, ensure_ascii=False, indent=2)


def load_manifest(path: Path) -> ChunkManifest:
    """Read a manifest from disk; a missing file yields an empty manifest."""
    if not path.exists():
        return ChunkManifest()
    try:
        return ChunkManifest.from_json(path.read_bytes())
    except ManifestError as exc:
        raise ManifestError(str(exc), path=path) from exc


def write_manifest(manifest: ChunkManifest, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(manifest.to_json(), encoding="utf-8")
    return path


def normalize_key(value: str) -> str:
    """Return the forward-slash, root-relative form used as a manifest key."""
    return value.replace("\\", "/").lstrip("/")


def chunk_count(size: int, max_chunk_size: int) -> int:
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    return -(-size // max_chunk_size)


def chunk_name(name: str, index: int) -> str:
    """Name of the 1-indexed chunk ``index`` of ``name`` (a path or a URL)."""
    if index < 1:
        raise ValueError("chunk indices start at 1")
    return f"{name}{PART_SEPARATOR}{index}"


def chunk_names(name: str, count: int) -> list[str]:
    return [chunk_name(name, index) for index in range(1, count + 1)]


def split_part_suffix(name: str) -> tuple[str, int] | None:
    """Split ``foo.bin.part3`` into ``("foo.bin", 3)``; ``None`` for non-chunk names."""
    base, separator, index = name.rpartition(PART_SEPARATOR)
    if not separator or not base or not index.isdigit():
        return None
    number = int(index)
    if number < 1:
        return None
    return base, number

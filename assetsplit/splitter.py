"""Build-time splitting of oversized files into numbered chunk siblings."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .config import DEFAULT_MAX_CHUNK_SIZE
from .manifest import (
    DEFAULT_MANIFEST_NAME,
    ChunkManifest,
    ManifestError,
    chunk_count,
    chunk_name,
    load_manifest,
    split_part_suffix,
    write_manifest,
)

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024


class SplitError(RuntimeError):
    """Raised when a tree cannot be split or joined."""


@dataclass(slots=True)
class SplitFile:
    """A file that was replaced by its chunks."""

    relative_path: str
    size: int
    chunk_paths: list[Path] = field(default_factory=list)

    @property
    def chunk_count(self) -> int:
        return len(self.chunk_paths)


@dataclass(slots=True)
class SplitResult:
    """Outcome of one splitter run."""

    manifest: ChunkManifest
    manifest_path: Path
    scanned_files: int = 0
    split_files: list[SplitFile] = field(default_factory=list)
    manifest_written: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.split_files)


@dataclass(slots=True)
class JoinResult:
    """Outcome of reassembling split files in place."""

    manifest_path: Path
    restored: list[Path] = field(default_factory=list)
    removed_parts: list[Path] = field(default_factory=list)
    manifest_removed: bool = False


def split_tree(
    root_dir: Path | str,
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
    *,
    manifest_name: str = DEFAULT_MANIFEST_NAME,
) -> SplitResult:
    """Split every file under ``root_dir`` larger than ``max_chunk_size`` bytes.

    Each oversized file is replaced by ``<name>.part1`` .. ``<name>.partN`` and
    recorded in the manifest stored at ``root_dir / manifest_name``. An existing
    manifest is extended; it is only rewritten when something was split.
    I/O errors propagate and abort the run.
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")

    root = Path(root_dir)
    if not root.is_dir():
        raise SplitError(f"Root directory not found: {root}")

    manifest_path = root / manifest_name
    manifest = _load_existing_manifest(manifest_path)
    result = SplitResult(manifest=manifest, manifest_path=manifest_path)

    logger.info("Checking for large files in %s", root)
    for path in _collect_files(root):
        if path == manifest_path:
            continue
        result.scanned_files += 1

        relative_path = path.relative_to(root).as_posix()
        if _is_recorded_chunk(relative_path, manifest):
            logger.debug("Skipping chunk of an already split file: %s", relative_path)
            continue

        size = path.stat().st_size
        if size <= max_chunk_size:
            continue

        logger.info("Splitting %s (%.2f MB)", relative_path, size / _MIB)
        chunk_paths = _write_chunks(path, size, max_chunk_size)
        path.unlink()
        logger.info("Removed original file: %s", relative_path)

        manifest.set(relative_path, len(chunk_paths))
        result.split_files.append(SplitFile(relative_path=relative_path, size=size, chunk_paths=chunk_paths))

    if result.split_files:
        write_manifest(manifest, manifest_path)
        result.manifest_written = True
        logger.info("Manifest updated at %s", manifest_path)
    else:
        logger.info("No new files needed splitting.")

    return result


def join_tree(
    root_dir: Path | str,
    *,
    manifest_name: str = DEFAULT_MANIFEST_NAME,
    keep_parts: bool = False,
) -> JoinResult:
    """Reassemble every file recorded in the manifest back into its original path.

    Restored entries are removed from the manifest; the manifest file itself is
    deleted once empty.
    """
    root = Path(root_dir)
    if not root.is_dir():
        raise SplitError(f"Root directory not found: {root}")

    manifest_path = root / manifest_name
    manifest = load_manifest(manifest_path)
    result = JoinResult(manifest_path=manifest_path)
    if not manifest:
        logger.info("No split files recorded in %s", manifest_path)
        return result

    for relative_path, count in manifest.entries():
        target = root / relative_path
        if target.exists():
            raise SplitError(f"Refusing to overwrite existing file: {relative_path}")
        parts = [root / chunk_name(relative_path, index) for index in range(1, count + 1)]
        missing = [part for part in parts if not part.is_file()]
        if missing:
            raise SplitError(f"Missing chunk {missing[0].name} for {relative_path}")

        _concatenate(parts, target)
        logger.info("Restored %s from %d chunk(s)", relative_path, count)
        result.restored.append(target)
        manifest.remove(relative_path)

        if not keep_parts:
            for part in parts:
                part.unlink()
            result.removed_parts.extend(parts)

    if manifest:
        write_manifest(manifest, manifest_path)
    else:
        manifest_path.unlink(missing_ok=True)
        result.manifest_removed = True

    return result


def _load_existing_manifest(path: Path) -> ChunkManifest:
    try:
        return load_manifest(path)
    except ManifestError:
        logger.warning("Could not parse existing manifest at %s, starting fresh.", path)
        return ChunkManifest()


def _collect_files(root: Path) -> list[Path]:
    # Materialized up front so chunks written during the walk are not rescanned.
    return sorted(entry for entry in root.rglob("*") if entry.is_file() and not entry.is_symlink())


def _is_recorded_chunk(relative_path: str, manifest: ChunkManifest) -> bool:
    parsed = split_part_suffix(relative_path)
    if parsed is None:
        return False
    return parsed[0] in manifest


def _write_chunks(path: Path, size: int, max_chunk_size: int) -> list[Path]:
    total = chunk_count(size, max_chunk_size)
    written: list[Path] = []
    with path.open("rb") as source:
        for index in range(1, total + 1):
            chunk_path = path.with_name(chunk_name(path.name, index))
            data = source.read(max_chunk_size)
            chunk_path.write_bytes(data)
            written.append(chunk_path)
            logger.info("  Created %s", chunk_path.name)
    _remove_stale_chunks(path, total + 1)
    return written


def _remove_stale_chunks(path: Path, first_index: int) -> None:
    # Parts left over from an earlier split with a smaller threshold.
    index = first_index
    while True:
        stale = path.with_name(chunk_name(path.name, index))
        if not stale.exists():
            return
        stale.unlink()
        logger.debug("Removed stale chunk %s", stale.name)
        index += 1


def _concatenate(parts: Iterable[Path], target: Path) -> None:
    with target.open("wb") as out_file:
        for part in parts:
            with part.open("rb") as chunk_file:
                shutil.copyfileobj(chunk_file, out_file)

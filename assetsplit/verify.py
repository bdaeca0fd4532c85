"""Consistency checks for a split output tree."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

from .manifest import DEFAULT_MANIFEST_NAME, ManifestError, load_manifest, split_part_suffix


@dataclass(slots=True)
class VerificationIssue:
    """Represents a problem discovered in a split tree."""

    kind: str
    target: str
    message: str


@dataclass(slots=True)
class VerificationReport:
    """Aggregate verification results."""

    entries_checked: int
    issues: list[VerificationIssue] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.kind != "orphaned-chunk")

    @property
    def warning_count(self) -> int:
        return sum(1 for issue in self.issues if issue.kind == "orphaned-chunk")


def verify_tree(root_dir: Path, *, manifest_name: str = DEFAULT_MANIFEST_NAME) -> VerificationReport:
    """Check that every manifest entry is backed by contiguous chunks on disk.

    Errors: an unreadable manifest, missing or extra parts for an entry, or an
    original file still present next to its parts. Chunk files with no entry
    are reported as warnings.
    """
    root = root_dir.resolve()
    manifest_path = root / manifest_name
    try:
        manifest = load_manifest(manifest_path)
    except ManifestError as exc:
        return VerificationReport(
            entries_checked=0,
            issues=[VerificationIssue(kind="invalid-manifest", target=manifest_name, message=str(exc))],
        )

    parts_on_disk = _collect_parts(root)
    issues: list[VerificationIssue] = []

    for relative_path, count in manifest.entries():
        found = parts_on_disk.pop(relative_path, set())
        missing = [index for index in range(1, count + 1) if index not in found]
        if missing:
            listed = ", ".join(f"part{index}" for index in missing)
            issues.append(
                VerificationIssue(
                    kind="missing-chunk",
                    target=relative_path,
                    message=f"Expected {count} chunk(s); missing {listed}",
                )
            )
        extra = sorted(index for index in found if index > count)
        if extra:
            listed = ", ".join(f"part{index}" for index in extra)
            issues.append(
                VerificationIssue(
                    kind="extra-chunk",
                    target=relative_path,
                    message=f"Manifest records {count} chunk(s) but found {listed}",
                )
            )
        if (root / relative_path).exists():
            issues.append(
                VerificationIssue(
                    kind="original-present",
                    target=relative_path,
                    message="Original file still exists next to its chunks",
                )
            )

    for relative_path in sorted(parts_on_disk):
        issues.append(
            VerificationIssue(
                kind="orphaned-chunk",
                target=relative_path,
                message="Chunk files found without a manifest entry",
            )
        )

    return VerificationReport(entries_checked=len(manifest), issues=issues)


def _collect_parts(root: Path) -> dict[str, set[int]]:
    parts: dict[str, set[int]] = defaultdict(set)
    for entry in root.rglob("*"):
        if not entry.is_file():
            continue
        parsed = split_part_suffix(entry.relative_to(root).as_posix())
        if parsed is None:
            continue
        base, index = parsed
        parts[base].add(index)
    return dict(parts)

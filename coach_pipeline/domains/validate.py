from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List


@dataclass(slots=True)
class MirrorReport:
    missing: List[str] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)
    mismatched: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing or self.extra or self.mismatched)

    def lines(self) -> List[str]:
        result = [f"Missing in mirror: {name}" for name in self.missing]
        result.extend(f"Not present in canonical directory: {name}" for name in self.extra)
        result.extend(f"Content differs: {name}" for name in self.mismatched)
        return result


def _json_names(directory: Path) -> set[str]:
    if not directory.is_dir():
        return set()
    return {path.name for path in directory.glob("*.json") if path.is_file()}


def compare_domain_dirs(canonical_dir: Path, mirror_dir: Path) -> MirrorReport:
    """Byte-for-byte comparison of the canonical domain configs with their mirror copy."""
    canonical = _json_names(canonical_dir)
    mirror = _json_names(mirror_dir)
    report = MirrorReport(
        missing=sorted(canonical - mirror),
        extra=sorted(mirror - canonical),
    )
    for name in sorted(canonical & mirror):
        if (canonical_dir / name).read_bytes() != (mirror_dir / name).read_bytes():
            report.mismatched.append(name)
    return report


def sync_domain_dirs(canonical_dir: Path, mirror_dir: Path) -> List[str]:
    """Copy canonical files over the mirror and drop files the canonical directory does not have."""
    mirror_dir.mkdir(parents=True, exist_ok=True)
    report = compare_domain_dirs(canonical_dir, mirror_dir)
    changed: List[str] = []
    for name in report.missing + report.mismatched:
        shutil.copyfile(canonical_dir / name, mirror_dir / name)
        changed.append(name)
    for name in report.extra:
        (mirror_dir / name).unlink()
        changed.append(name)
    return changed

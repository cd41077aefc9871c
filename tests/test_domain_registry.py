from __future__ import annotations

import json
import os
import shutil
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from coach_pipeline.config import PACKAGE_ROOT  # noqa: E402
from coach_pipeline.domains import VALID_DOMAINS, DomainRegistry, compare_domain_dirs, sync_domain_dirs  # noqa: E402

import check_domain_configs  # noqa: E402


CANONICAL_DIR = PACKAGE_ROOT / "domains" / "data"
MIRROR_DIR = PROJECT_ROOT / "resources" / "domain_configs"


def _write(path: Path, payload: dict) -> None:  # type: ignore[type-arg]
    path.write_text(json.dumps(payload), encoding="utf-8")


def _bump_mtime(path: Path, seconds: int) -> None:
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + seconds * 1_000_000_000))


def test_shipped_definitions_load_for_every_domain() -> None:
    registry = DomainRegistry(CANONICAL_DIR)

    assert set(registry.all()) == set(VALID_DOMAINS)
    career = registry.get("career")
    assert "quitting" in career.keywords
    assert career.methodology
    assert registry.get("general").prompt_addition == ""


def test_shipped_mirror_is_byte_identical() -> None:
    report = compare_domain_dirs(CANONICAL_DIR, MIRROR_DIR)

    assert report.ok, report.lines()


def test_edits_are_picked_up_without_restart(tmp_path: Path) -> None:
    path = tmp_path / "career.json"
    _write(path, {"id": "career", "name": "Career", "tone": "calm", "domainKeywords": ["job"]})
    registry = DomainRegistry(tmp_path)
    assert registry.get("career").tone == "calm"

    _write(path, {"id": "career", "name": "Career", "tone": "energetic and direct", "domainKeywords": ["job"]})
    _bump_mtime(path, 5)

    assert registry.get("career").tone == "energetic and direct"


def test_malformed_or_missing_definitions_fall_back_to_neutral(tmp_path: Path) -> None:
    (tmp_path / "career.json").write_text("{not json", encoding="utf-8")
    _write(tmp_path / "fitness.json", {"id": "fitness", "domainKeywords": "gym"})
    _write(tmp_path / "tarot.json", {"id": "tarot"})
    registry = DomainRegistry(tmp_path)

    assert registry.is_available("career") is False
    assert registry.is_available("fitness") is False
    assert registry.is_available("tarot") is False
    assert registry.get("career").id == "general"
    assert registry.keywords("career") == ()


def test_missing_directory_still_yields_general(tmp_path: Path) -> None:
    registry = DomainRegistry(tmp_path / "nope")

    assert list(registry.all()) == ["general"]
    assert registry.get(None).id == "general"


def test_disabled_domain_is_unavailable(tmp_path: Path) -> None:
    _write(tmp_path / "creativity.json", {"id": "creativity", "enabled": False, "domainKeywords": ["art"]})
    registry = DomainRegistry(tmp_path)

    assert registry.is_available("creativity") is False
    assert "creativity" not in registry.all()


def test_mirror_report_and_sync(tmp_path: Path) -> None:
    canonical = tmp_path / "canonical"
    mirror = tmp_path / "mirror"
    canonical.mkdir()
    mirror.mkdir()
    _write(canonical / "career.json", {"id": "career"})
    _write(canonical / "life.json", {"id": "life"})
    _write(mirror / "career.json", {"id": "career", "tone": "drifted"})
    _write(mirror / "old.json", {"id": "old"})

    report = compare_domain_dirs(canonical, mirror)
    assert report.missing == ["life.json"]
    assert report.extra == ["old.json"]
    assert report.mismatched == ["career.json"]
    assert report.ok is False

    changed = sync_domain_dirs(canonical, mirror)

    assert sorted(changed) == ["career.json", "life.json", "old.json"]
    assert compare_domain_dirs(canonical, mirror).ok


def test_check_script_exits_non_zero_on_mismatch(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    canonical = tmp_path / "canonical"
    mirror = tmp_path / "mirror"
    shutil.copytree(CANONICAL_DIR, canonical)
    shutil.copytree(CANONICAL_DIR, mirror)
    (mirror / "life.json").write_text("{}", encoding="utf-8")
    monkeypatch.setenv("DOMAIN_CONFIG_DIR", str(canonical))
    monkeypatch.setenv("DOMAIN_CONFIG_MIRROR_DIR", str(mirror))

    with pytest.raises(SystemExit) as failed:
        check_domain_configs.main([])
    assert failed.value.code == 1
    assert "Content differs: life.json" in capsys.readouterr().out

    with pytest.raises(SystemExit) as synced:
        check_domain_configs.main(["--sync"])
    assert synced.value.code == 0

from __future__ import annotations

import plistlib
from pathlib import Path

import pytest

import update_core
from update_core import (
    MISSING_VERSION,
    ManifestError,
    UpdateError,
    compare_versions,
    expand_package,
    is_update_needed,
    read_installed_version,
    read_package_version,
)

from helpers import DISTRIBUTION_TEMPLATE, write_app

PATTERN = r'<product[^>]+version="([^"]+)"'


@pytest.mark.parametrize(
    ("installed", "available", "expected"),
    [
        ("120.0.6099.129", "120.0.6099.129", 0),
        ("9.0.0.0", "10.0.0.0", -1),
        ("10.9", "10.10", -1),
        ("10.10", "10.9", 1),
        ("1.0", "1.0.0", 0),
        (MISSING_VERSION, "0.0.1", -1),
        ("1.2.beta", "1.10", -1),
    ],
)
def test_compare_versions(installed: str, available: str, expected: int) -> None:
    assert compare_versions(installed, available) == expected


def test_tie_is_up_to_date() -> None:
    assert not is_update_needed("120.0.6099.129", "120.0.6099.129")


def test_numeric_not_lexical() -> None:
    assert is_update_needed("9.0.0.0", "10.0.0.0")
    assert not is_update_needed("10.0.0.0", "9.0.0.0")


def test_missing_install_is_older_than_anything() -> None:
    for available in ("0.1", "1", "120.0.6099.129", "2024.1.1"):
        assert is_update_needed(MISSING_VERSION, available)


def test_read_package_version(tmp_path: Path) -> None:
    manifest = tmp_path / "Distribution"
    manifest.write_text(DISTRIBUTION_TEMPLATE.format(version="121.0.6167.85"), encoding="utf-8")
    assert read_package_version(manifest, PATTERN) == "121.0.6167.85"


def test_read_package_version_missing_manifest(tmp_path: Path) -> None:
    with pytest.raises(ManifestError, match="missing"):
        read_package_version(tmp_path / "Distribution", PATTERN)


def test_read_package_version_without_match(tmp_path: Path) -> None:
    manifest = tmp_path / "Distribution"
    manifest.write_text("<installer-gui-script><title>x</title></installer-gui-script>", encoding="utf-8")
    with pytest.raises(ManifestError, match="parse"):
        read_package_version(manifest, PATTERN)


def test_read_installed_version(app_path: Path) -> None:
    write_app(app_path, "120.0.6099.129")
    assert read_installed_version(app_path) == "120.0.6099.129"


def test_read_installed_version_absent(app_path: Path) -> None:
    assert read_installed_version(app_path) == MISSING_VERSION


def test_read_installed_version_without_key(app_path: Path) -> None:
    (app_path / "Contents").mkdir(parents=True)
    with open(app_path / "Contents" / "Info.plist", "wb") as handle:
        plistlib.dump({"CFBundleName": "Google Chrome"}, handle)
    with pytest.raises(UpdateError):
        read_installed_version(app_path)


def test_read_installed_version_corrupt_plist(app_path: Path) -> None:
    (app_path / "Contents").mkdir(parents=True)
    (app_path / "Contents" / "Info.plist").write_bytes(b"not a plist")
    with pytest.raises(UpdateError):
        read_installed_version(app_path)


def test_expand_package_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls = []

    def fake_run(args, timeout=None):
        calls.append(args)
        return {"success": False, "returncode": 1, "stdout": "", "stderr": "bad pkg\n", "error": "Exit code 1"}

    monkeypatch.setattr(update_core, "run_command", fake_run)
    with pytest.raises(ManifestError, match="bad pkg"):
        expand_package(tmp_path / "a.pkg", tmp_path / "expanded")
    assert calls == [["pkgutil", "--expand-full", tmp_path / "a.pkg", tmp_path / "expanded"]]

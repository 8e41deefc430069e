"""Shared helpers for the updater tests."""

from __future__ import annotations

import os
import plistlib
from pathlib import Path

CONFIG_TEMPLATE = """\
app_name: Google Chrome
app_path: "{app_path}"
package_url: https://example.com/googlechrome.pkg
package_name: googlechrome.pkg
work_root: "{work_root}"
console_path: "{console_path}"
quit_timeout: 1
download:
  retries: 2
  timeout: 5
idle:
  threshold_seconds: 1200
  interval_seconds: 300
  max_checks: 5
"""

DISTRIBUTION_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<installer-gui-script minSpecVersion="2">
    <title>Google Chrome</title>
    <product id="com.google.Chrome" version="{version}"/>
    <pkg-ref id="com.google.Chrome"/>
</installer-gui-script>
"""

def write_app(app_path: Path, version: str) -> None:
    """Create a minimal application bundle with an Info.plist."""
    contents = app_path / "Contents"
    (contents / "MacOS").mkdir(parents=True, exist_ok=True)
    (contents / "Resources" / "en.lproj").mkdir(parents=True, exist_ok=True)
    with open(contents / "Info.plist", "wb") as handle:
        plistlib.dump({"CFBundleShortVersionString": version, "CFBundleName": "Google Chrome"}, handle)
    (contents / "MacOS" / "Google Chrome").write_bytes(b"\x7fELF" + version.encode() * 64)
    (contents / "Resources" / "en.lproj" / "Localizable.strings").write_text("hello", encoding="utf-8")
    link = contents / "Frameworks"
    if not link.is_symlink():
        os.symlink("Resources", link)

def snapshot_tree(root: Path) -> dict[str, object]:
    """Map every entry under root to its bytes or symlink target."""
    tree: dict[str, object] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(dirpath) / name
            relative = str(path.relative_to(root))
            if path.is_symlink():
                tree[relative] = ("link", os.readlink(path))
            elif path.is_dir():
                tree[relative] = ("dir",)
            else:
                tree[relative] = ("file", path.read_bytes())
    return tree


from __future__ import annotations

from pathlib import Path

import pytest

from helpers import CONFIG_TEMPLATE
from validate_config import validate_config


@pytest.fixture
def work_root(tmp_path: Path) -> Path:
    root = tmp_path / "work"
    root.mkdir()
    return root


@pytest.fixture
def app_path(tmp_path: Path) -> Path:
    return tmp_path / "Applications" / "Google Chrome.app"


@pytest.fixture
def config_path(tmp_path: Path, work_root: Path, app_path: Path) -> Path:
    console = tmp_path / "console"
    console.write_text("", encoding="utf-8")
    path = tmp_path / "update.yaml"
    path.write_text(
        CONFIG_TEMPLATE.format(app_path=app_path, work_root=work_root, console_path=console),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def config(config_path: Path) -> dict:
    return validate_config(config_path)

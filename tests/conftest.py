from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ptcontrol.config import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_env(monkeypatch, tmp_path):
    monkeypatch.setenv("PT_STORE_PATH", str(tmp_path / "pt_state.db"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()

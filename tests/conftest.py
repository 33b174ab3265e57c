from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


def _ensure_project_root_on_path() -> None:
    """Guarantee the repository root is discoverable for absolute imports."""

    root = Path(__file__).resolve().parent.parent
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


_ensure_project_root_on_path()


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory):
    """Keep user settings and stray fake-executable switches out of tests."""

    for name in list(os.environ):
        if name.startswith(("EMBEDDED_POSTGRES_", "FAKE_POSTGRES_", "FAKE_INITDB_")):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("EMBEDDED_POSTGRES_LOG_DIR", str(tmp_path_factory.mktemp("logs")))
    yield

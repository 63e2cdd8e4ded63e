import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def isolated_log_dir(tmp_path, monkeypatch):
    """Keep log files written during tests out of the project tree."""

    log_dir = tmp_path / "logs"
    monkeypatch.setenv("PLACEWORKS_LOG_DIR", str(log_dir))
    yield log_dir

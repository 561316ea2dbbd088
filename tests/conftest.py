"""
Test configuration and fixtures
"""
import sys
from pathlib import Path

# Add src to Python path so the suite runs without an editable install
project_root = Path(__file__).parent.parent
src_path = project_root / "src"

sys.path.insert(0, str(src_path))

import pytest

from hwsigner.core import config


@pytest.fixture(autouse=True)
def _default_path_policy(monkeypatch):
    """Keep tests independent of HWSIGNER_* variables set in the shell."""
    monkeypatch.setattr(config, "STRICT_PATH_LENGTH", False)
    monkeypatch.setattr(config, "LEDGER_MIN_EIP712_VERSION", (1, 5, 0))

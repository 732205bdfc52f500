import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import gh_pr_picker as ghp  # noqa: E402

from helpers import FakeClock  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def categories():
    return list(ghp.DEFAULT_CATEGORIES)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    monkeypatch.delenv('BASE_DIR', raising=False)
    monkeypatch.delenv('MOCK_FETCH', raising=False)

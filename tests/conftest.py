# conftest.py
# Shared fixtures: in-memory collaborators and an isolated settings cache.

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)

if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from faultlab.annotations.recorder import InMemoryAnnotationRecorder
from faultlab.core.config import get_settings
from faultlab.flags.controller import InMemoryFlagController
from faultlab.storage.object_store import InMemoryObjectStore


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch, tmp_path):
    """Settings read from a clean environment for every test."""
    monkeypatch.setenv("FAULTLAB_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("ANNOTATION_DB_PATH", str(tmp_path / "annotations.db"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def flags():
    return InMemoryFlagController({"cartServiceFailure": False})


@pytest.fixture
def recorder():
    return InMemoryAnnotationRecorder()


@pytest.fixture
def store():
    return InMemoryObjectStore()

"""
Test configuration and fixtures for the upload pipeline.

This module provides common fixtures and configuration for all tests.
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

# Add the parent directory to the path so we can import main
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# main builds an application at import time; keep its upload root out of the working tree
os.environ.setdefault("UPLOAD_ROOT", tempfile.mkdtemp(prefix="deed_vault_tests_"))

from core.config import AppConfig
from main import create_app
from models.upload import NormalizedFile, UploadConfiguration
from tests.utils.fixtures import make_text_content


@pytest.fixture
def upload_root(tmp_path: Path, monkeypatch) -> str:
    """
    Fresh upload root for one test, exported as UPLOAD_ROOT.

    Returns:
        str: Path of the upload root
    """
    root = tmp_path / "uploads"
    monkeypatch.setenv("UPLOAD_ROOT", str(root))
    monkeypatch.setenv("STORAGE_TYPE", "local")
    monkeypatch.setenv("UPLOAD_STRATEGY", "form")
    monkeypatch.delenv("MALICIOUS_HASHES_FILE", raising=False)
    monkeypatch.delenv("MAX_FILE_SIZE", raising=False)
    return str(root)


@pytest.fixture
def app_factory(upload_root: str, monkeypatch) -> Callable[..., FastAPI]:
    """
    Build an application whose configuration comes from the given environment overrides.

    Returns:
        Callable: ``build(**env) -> FastAPI``
    """

    def build(**env) -> FastAPI:
        for key, value in env.items():
            monkeypatch.setenv(key, str(value))
        return create_app(AppConfig())

    return build


@pytest.fixture
def test_client(app_factory) -> Generator[TestClient, None, None]:
    """
    FastAPI test client fixture for synchronous testing.

    Yields:
        TestClient: Client for an application rooted in a temporary directory
    """
    with TestClient(app_factory()) as client:
        yield client


@pytest.fixture
def channel_config(tmp_path: Path) -> UploadConfiguration:
    """General-purpose channel configuration rooted in a temporary directory."""
    return UploadConfiguration(name="general", upload_root=str(tmp_path / "uploads"))


@pytest.fixture
def text_file() -> NormalizedFile:
    """A small, clean plain-text upload."""
    content = make_text_content()
    return NormalizedFile(filename="deed_summary.txt", mime_type="text/plain", size=len(content), content=content)

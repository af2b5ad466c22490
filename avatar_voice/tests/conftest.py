"""Test configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient

from avatar_voice.core.settings import get_settings

# Keys that would otherwise leak in from a developer's shell.
_ISOLATED_ENV_KEYS = (
    "FILLER_TEXT_TEMPLATE",
    "ELEVENLABS_API_KEY",
    "ELEVENLABS_VOICE_ID",
    "DIRECTLINE_SECRET",
    "COPILOT_PROMPT_INSTRUCTIONS",
    "COPILOT_CLEAN_REPLY",
    "ENTRA_TENANT_ID",
    "ENTRA_CLIENT_ID",
    "ENTRA_CLIENT_SECRET",
)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Give every test fresh settings built from a known environment."""
    for key in _ISOLATED_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LOGS_DIR", str(tmp_path / "logs"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    from avatar_voice.main import app

    with TestClient(app) as test_client:
        yield test_client

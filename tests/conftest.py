from __future__ import annotations

import os

import pytest

from auth_redirector import config as config_module


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host environment and cached settings out of each test."""
    for env_key in (*config_module.ENV_KEYS.values(), config_module.CONFIG_PATH_ENV):
        if env_key in os.environ:
            monkeypatch.delenv(env_key)
    monkeypatch.setattr(config_module, "load_dotenv", lambda **_: None)
    config_module._load_settings_cached.cache_clear()
    yield
    config_module._load_settings_cached.cache_clear()

from __future__ import annotations

import pytest

from auth_redirector import config


def _required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONNECT_URL", "HTTPS://connect.example.com/app/")
    monkeypatch.setenv("OAUTH_CLIENT_ID", "client-123")
    monkeypatch.setenv("OAUTH_CLIENT_SECRET", "secret-456")


def test_split_csv_preserve_case() -> None:
    values = config._split_csv_preserve_case(" A, B ,,C ")
    assert values == ["A", "B", "C"]


def test_defaults_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    _required_env(monkeypatch)

    settings = config.load_settings()

    assert settings.urls.connect_url == "https://connect.example.com/app"
    assert settings.urls.static_url == "https://connect.example.com/app"
    assert settings.urls.default_after == "https://connect.example.com/app"
    assert settings.oauth.authorize_endpoint == config.GOOGLE_AUTHORIZE_ENDPOINT
    assert settings.oauth.scopes == ("email",)
    assert settings.cookie.name == "ID"
    assert settings.cookie.domain is None
    assert settings.policy.email_pattern == ".*"
    assert settings.policy.salt is None
    assert settings.backend.enabled is False
    assert settings.server.trusted_peers == ("127.0.0.1", "::1")


def test_load_settings_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    _required_env(monkeypatch)
    assert config.load_settings() is config.load_settings()


def test_csv_environment_values(monkeypatch: pytest.MonkeyPatch) -> None:
    _required_env(monkeypatch)
    monkeypatch.setenv("OAUTH_SCOPES", "openid, email ,profile")
    monkeypatch.setenv("REDIRECTOR_TRUSTED_PEERS", "127.0.0.1,10.0.0.0/8")
    monkeypatch.setenv("BACKEND_HOST", "127.0.0.1")
    monkeypatch.setenv("BACKEND_PORT", "9000")
    monkeypatch.setenv("BACKEND_FIELDS", "id,email,name")

    settings = config.load_settings()

    assert settings.oauth.scopes == ("openid", "email", "profile")
    assert settings.server.trusted_peers == ("127.0.0.1", "10.0.0.0/8")
    assert settings.backend.enabled is True
    assert settings.backend.port == 9000
    assert settings.backend.fields == ("id", "email", "name")


def test_empty_salt_is_kept(monkeypatch: pytest.MonkeyPatch) -> None:
    _required_env(monkeypatch)
    monkeypatch.setenv("ID_SALT", "")
    monkeypatch.setenv("COOKIE_DOMAIN", "")

    settings = config.load_settings()

    assert settings.policy.salt == ""
    assert settings.cookie.domain is None


def test_missing_connect_url_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OAUTH_CLIENT_ID", "client-123")
    monkeypatch.setenv("OAUTH_CLIENT_SECRET", "secret-456")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()


def test_missing_client_secret_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    _required_env(monkeypatch)
    monkeypatch.delenv("OAUTH_CLIENT_SECRET")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()


@pytest.mark.parametrize(
    ("env_key", "value"),
    [
        ("EMAIL_PATTERN", "(unclosed"),
        ("BACKEND_FIELDS", "id,password"),
        ("REDIRECTOR_TRUSTED_PEERS", "not-an-address"),
        ("CONNECT_URL", "ftp://connect.example.com"),
        ("REDIRECTOR_PORT", "0"),
        ("COOKIE_NAME", "I D"),
        ("COOKIE_DOMAIN", "example.com;evil"),
    ],
)
def test_invalid_values_are_rejected(
    monkeypatch: pytest.MonkeyPatch, env_key: str, value: str
) -> None:
    _required_env(monkeypatch)
    monkeypatch.setenv(env_key, value)

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()


def test_backend_host_requires_port(monkeypatch: pytest.MonkeyPatch) -> None:
    _required_env(monkeypatch)
    monkeypatch.setenv("BACKEND_HOST", "127.0.0.1")

    with pytest.raises(RuntimeError, match="host and port must be set together"):
        config.load_settings()


def test_yaml_file_with_env_substitution(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    path = tmp_path / "redirector.yaml"
    path.write_text(
        "urls:\n"
        "  connect_url: https://connect.example.com\n"
        "  static_url: https://static.example.com/\n"
        "oauth:\n"
        "  client_id: client-from-file\n"
        "  client_secret: ${TEST_REDIRECTOR_SECRET}\n"
        "policy:\n"
        "  email_pattern: '.*@example\\.com'\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("TEST_REDIRECTOR_SECRET", "from-env")
    monkeypatch.setenv(config.CONFIG_PATH_ENV, str(path))

    settings = config.load_settings()

    assert settings.oauth.client_id == "client-from-file"
    assert settings.oauth.client_secret == "from-env"
    assert settings.urls.static_url == "https://static.example.com"
    assert settings.policy.email_pattern == r".*@example\.com"


def test_environment_overrides_file(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    path = tmp_path / "redirector.yaml"
    path.write_text(
        "urls:\n"
        "  connect_url: https://connect.example.com\n"
        "oauth:\n"
        "  client_id: client-from-file\n"
        "  client_secret: secret-from-file\n",
        encoding="utf-8",
    )
    monkeypatch.setenv(config.CONFIG_PATH_ENV, str(path))
    monkeypatch.setenv("OAUTH_CLIENT_ID", "client-from-env")

    settings = config.load_settings()

    assert settings.oauth.client_id == "client-from-env"
    assert settings.oauth.client_secret == "secret-from-file"


def test_load_config_file_missing(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        config.load_config_file(tmp_path / "absent.yaml")


def test_load_config_file_empty(tmp_path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert config.load_config_file(path) == {}


def test_load_config_file_requires_mapping(tmp_path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        config.load_config_file(path)


def test_unknown_env_reference_is_left_verbatim(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TEST_REDIRECTOR_UNSET", raising=False)
    assert config._substitute_env_vars("x-${TEST_REDIRECTOR_UNSET}") == "x-${TEST_REDIRECTOR_UNSET}"

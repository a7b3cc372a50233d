"""Tests for credential resolution and .env loading."""

from pathlib import Path

import pytest

from credentials import (
    DirectToken,
    EnvSettings,
    IdentityCredential,
    has_env_credentials,
    resolve_credentials,
)


def make_settings(tmp_path: Path, **env: str) -> EnvSettings:
    environ = {"MONEYLOVER_MCP_DISABLE_ENV_FILE": "1"}
    environ.update(env)
    return EnvSettings(environ=environ, project_dir=tmp_path)


class TestResolveCredentials:
    """Precedence: direct token, then EMAIL/PASSWORD, then nothing."""

    def test_nothing_configured(self, tmp_path):
        settings = make_settings(tmp_path)
        assert resolve_credentials(settings) is None
        assert not has_env_credentials(settings)

    def test_identity_credential(self, tmp_path):
        settings = make_settings(tmp_path, EMAIL=" user@example.com ", PASSWORD="secret")
        assert resolve_credentials(settings) == IdentityCredential(email="user@example.com", password="secret")

    def test_email_without_password_is_not_usable(self, tmp_path):
        settings = make_settings(tmp_path, EMAIL="user@example.com", PASSWORD="   ")
        assert resolve_credentials(settings) is None

    def test_direct_token_wins_over_identity(self, tmp_path):
        settings = make_settings(
            tmp_path, EMAIL="user@example.com", PASSWORD="secret", MONEYLOVER_TOKEN="env-token"
        )
        assert resolve_credentials(settings) == DirectToken(token="env-token")

    def test_alternate_direct_token_spelling(self, tmp_path):
        settings = make_settings(tmp_path, MONEYLOVER_TOKEN="  ", MONEY_LOVER_TOKEN="alt-token")
        assert resolve_credentials(settings) == DirectToken(token="alt-token")

    def test_first_direct_token_spelling_wins(self, tmp_path):
        settings = make_settings(tmp_path, MONEYLOVER_TOKEN="first", MONEY_LOVER_TOKEN="second")
        assert resolve_credentials(settings) == DirectToken(token="first")

    def test_changes_take_effect_immediately(self, tmp_path):
        settings = make_settings(tmp_path, EMAIL="user@example.com", PASSWORD="secret")
        assert isinstance(resolve_credentials(settings), IdentityCredential)

        settings.environ["MONEYLOVER_TOKEN"] = "late-token"
        assert resolve_credentials(settings) == DirectToken(token="late-token")

        del settings.environ["MONEYLOVER_TOKEN"]
        settings.environ["EMAIL"] = "other@example.com"
        assert resolve_credentials(settings) == IdentityCredential(email="other@example.com", password="secret")

    def test_password_not_in_repr(self, tmp_path):
        credential = IdentityCredential(email="user@example.com", password="hunter2")
        assert "hunter2" not in repr(credential)


class TestEnvFile:
    """Loading credentials from a .env file."""

    def test_loads_configured_env_file(self, tmp_path):
        env_file = tmp_path / "custom.env"
        env_file.write_text("EMAIL=file@example.com\nPASSWORD='file-pass'\n")
        settings = EnvSettings(environ={"MONEYLOVER_MCP_ENV_FILE": str(env_file)}, project_dir=tmp_path)

        assert resolve_credentials(settings) == IdentityCredential(email="file@example.com", password="file-pass")

    def test_does_not_override_existing_environment(self, tmp_path):
        env_file = tmp_path / "custom.env"
        env_file.write_text("EMAIL=file@example.com\nPASSWORD=file-pass\n")
        settings = EnvSettings(
            environ={"MONEYLOVER_MCP_ENV_FILE": str(env_file), "EMAIL": "env@example.com"},
            project_dir=tmp_path,
        )

        assert resolve_credentials(settings) == IdentityCredential(email="env@example.com", password="file-pass")

    def test_disable_flag_skips_file(self, tmp_path):
        (tmp_path / ".env").write_text("EMAIL=file@example.com\nPASSWORD=file-pass\n")
        settings = EnvSettings(environ={"MONEYLOVER_MCP_DISABLE_ENV_FILE": "1"}, project_dir=tmp_path)

        assert resolve_credentials(settings) is None

    def test_falls_back_to_project_env_file(self, tmp_path):
        (tmp_path / ".env").write_text("MONEYLOVER_TOKEN=project-token\n")
        settings = EnvSettings(
            environ={"MONEYLOVER_MCP_ENV_FILE": str(tmp_path / "missing.env")},
            project_dir=tmp_path,
        )

        assert resolve_credentials(settings) == DirectToken(token="project-token")

    def test_file_loaded_once_until_reset(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("EMAIL=first@example.com\nPASSWORD=pw\n")
        environ = {}
        settings = EnvSettings(environ=environ, project_dir=tmp_path)

        assert settings.load_env_file_if_needed() == env_file.resolve()
        assert settings.load_env_file_if_needed() is None

        del environ["EMAIL"]
        settings.reset()
        assert settings.load_env_file_if_needed() == env_file.resolve()
        assert environ["EMAIL"] == "first@example.com"

    def test_unreadable_file_is_skipped(self, tmp_path, caplog):
        bad = tmp_path / "bad.env"
        bad.write_text("EMAIL=bad@example.com\n")
        good_dir = tmp_path / "project"
        good_dir.mkdir()
        (good_dir / ".env").write_text("EMAIL=good@example.com\nPASSWORD=pw\n")

        settings = EnvSettings(environ={"MONEYLOVER_MCP_ENV_FILE": str(bad)}, project_dir=good_dir)
        with pytest.MonkeyPatch.context() as mp:
            def failing(path, *args, **kwargs):
                if Path(path) == bad.resolve():
                    raise PermissionError("denied")
                from dotenv import dotenv_values as real
                return real(path, *args, **kwargs)

            mp.setattr("credentials.dotenv_values", failing)
            assert settings.email == "good@example.com"

        assert "Failed to load environment file" in caplog.text

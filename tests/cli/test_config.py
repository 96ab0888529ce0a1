"""Tests for YAML config loading with env var resolution."""

import pytest

from giftflow.cli.config import GiftflowConfig, load_config, resolve_env_vars


class TestResolveEnvVars:
    def test_resolves_reference(self, monkeypatch):
        monkeypatch.setenv("PROVIDER_KEY", "abc")
        assert resolve_env_vars("key=${PROVIDER_KEY}") == "key=abc"

    def test_missing_var_is_empty(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        assert resolve_env_vars("${NOT_SET_ANYWHERE}") == ""


class TestLoadConfig:
    def test_loads_yaml_with_env_refs(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROVIDER_KEY", "secret-key")
        path = tmp_path / "giftflow.yaml"
        path.write_text(
            "scheduler:\n"
            "  lead_days: 3\n"
            "provider:\n"
            "  api_key: ${PROVIDER_KEY}\n"
            "notifications:\n"
            "  admin_email: ops@example.com\n"
        )

        config = load_config(str(path))

        assert config.scheduler.lead_days == 3
        assert config.scheduler.inter_order_delay_seconds == 2.0
        assert config.provider.api_key == "secret-key"
        assert config.notifications.admin_email == "ops@example.com"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "giftflow.yaml"
        path.write_text("security:\n  daily_order_limit: 10\n")
        monkeypatch.setenv("GIFTFLOW_SECURITY_DAILY_ORDER_LIMIT", "3")
        monkeypatch.setenv("GIFTFLOW_SCHEDULER_ENABLED", "false")

        config = load_config(str(path))

        assert config.security.daily_order_limit == 3
        assert config.scheduler.enabled is False

    def test_explicit_missing_path_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "absent.yaml"))

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))

        config = load_config()

        assert config == GiftflowConfig()
        assert config.scheduler.lead_days == 4
        assert config.security.retry_abuse_max_retries == 5

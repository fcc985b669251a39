"""Tests for YAML settings loading."""
from pathlib import Path

import pytest

from config.settings import DatabaseConfig, QueueConfig, Settings, load_settings


def write_config(tmp_path, text: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(text)
    return str(path)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()
        assert settings.queue.max_attempts == 3
        assert settings.webhooks.max_attempts == 1
        assert settings.delivery.bridge_url == ""

    def test_sections_override_defaults(self, tmp_path):
        path = write_config(tmp_path, """
app_name: Dispatch Test
queue:
  max_attempts: 5
  pacing_delay_min_ms: 0
  pacing_delay_max_ms: 0
webhooks:
  enabled: false
database:
  store_backend: file
  store_file_dir: /var/lib/wadispatch
""")
        settings = load_settings(path)
        assert settings.app_name == "Dispatch Test"
        assert settings.queue.max_attempts == 5
        assert settings.queue.pacing_delay_max_ms == 0
        assert settings.queue.backoff_base_ms == QueueConfig().backoff_base_ms
        assert settings.webhooks.enabled is False
        assert settings.database == DatabaseConfig(
            url=DatabaseConfig().url, store_backend="file", store_file_dir="/var/lib/wadispatch",
        )

    def test_env_substitution_and_coercion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WA_BRIDGE_URL", "http://bridge:3000")
        monkeypatch.setenv("WA_MAX_ATTEMPTS", "4")
        monkeypatch.setenv("WA_RATE", "0.5")
        monkeypatch.setenv("WA_RECOVER", "no")
        path = write_config(tmp_path, """
queue:
  max_attempts: ${WA_MAX_ATTEMPTS}
  rate_limit_per_second: ${WA_RATE}
  recover_on_startup: ${WA_RECOVER}
delivery:
  bridge_url: ${WA_BRIDGE_URL}
""")
        settings = load_settings(path)
        assert settings.delivery.bridge_url == "http://bridge:3000"
        assert settings.queue.max_attempts == 4
        assert settings.queue.rate_limit_per_second == 0.5
        assert settings.queue.recover_on_startup is False

    def test_unset_env_var_left_verbatim(self, tmp_path, monkeypatch):
        monkeypatch.delenv("WA_NOT_SET", raising=False)
        path = write_config(tmp_path, "delivery:\n  api_key: ${WA_NOT_SET}\n")
        assert load_settings(path).delivery.api_key == "${WA_NOT_SET}"

    def test_unknown_keys_ignored(self, tmp_path):
        path = write_config(tmp_path, "queue:\n  max_attempts: 2\n  turbo: true\n")
        assert load_settings(path).queue.max_attempts == 2

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, "app_name: FromEnv\n")
        monkeypatch.setenv("WADISPATCH_CONFIG", path)
        assert load_settings().app_name == "FromEnv"

    def test_example_file_loads(self):
        example = Path(__file__).parent.parent / "config" / "settings.example.yaml"
        settings = load_settings(str(example))
        assert settings.queue.max_attempts >= 1
        assert settings.database.store_backend in ("sql", "memory", "file")

    @pytest.mark.parametrize("text", ["", "queue:\n", "webhooks: null\n"])
    def test_empty_sections(self, tmp_path, text):
        settings = load_settings(write_config(tmp_path, text))
        assert settings.queue == QueueConfig()

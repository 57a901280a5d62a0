"""Unit tests for configuration loading."""

import pytest

from timetide.config.config_loader import default_config, load_config

ENV_VARS = (
    'DATABASE_URL', 'LOG_LEVEL', 'GOOGLE_CLIENT_ID', 'GOOGLE_CLIENT_SECRET',
    'OUTLOOK_CLIENT_ID', 'OUTLOOK_CLIENT_SECRET', 'TIMETIDE_WEBHOOK_AUTO_DISABLE_THRESHOLD',
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / 'absent.yaml')

        assert config == default_config()
        assert config['webhooks']['auto_disable_threshold'] == 10
        assert config['worker']['max_attempts'] == 3

    def test_yaml_overrides_are_merged(self, tmp_path):
        path = tmp_path / 'timetide.yaml'
        path.write_text(
            "worker:\n"
            "  concurrency: 2\n"
            "providers:\n"
            "  google:\n"
            "    client_id: from-yaml\n",
            encoding='utf-8'
        )

        config = load_config(path)

        assert config['worker']['concurrency'] == 2
        assert config['worker']['lease_seconds'] == 120
        assert config['providers']['google']['client_id'] == 'from-yaml'
        assert config['providers']['google']['token_url'] == 'https://oauth2.googleapis.com/token'

    def test_environment_wins_over_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / 'timetide.yaml'
        path.write_text("database:\n  url: sqlite+aiosqlite:///yaml.db\n", encoding='utf-8')
        monkeypatch.setenv('DATABASE_URL', 'sqlite+aiosqlite:///env.db')
        monkeypatch.setenv('LOG_LEVEL', 'debug')
        monkeypatch.setenv('OUTLOOK_CLIENT_SECRET', 'shh')
        monkeypatch.setenv('TIMETIDE_WEBHOOK_AUTO_DISABLE_THRESHOLD', '50')

        config = load_config(path)

        assert config['database']['url'] == 'sqlite+aiosqlite:///env.db'
        assert config['logging']['level'] == 'DEBUG'
        assert config['providers']['outlook']['client_secret'] == 'shh'
        assert config['webhooks']['auto_disable_threshold'] == 50

    def test_non_integer_threshold_is_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv('TIMETIDE_WEBHOOK_AUTO_DISABLE_THRESHOLD', 'many')

        assert load_config(tmp_path / 'absent.yaml')['webhooks']['auto_disable_threshold'] == 10

    def test_broken_yaml_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / 'timetide.yaml'
        path.write_text("worker: [unclosed\n", encoding='utf-8')

        assert load_config(path)['worker']['concurrency'] == 5

    def test_defaults_are_fresh_copies(self):
        first = default_config()
        first['worker']['concurrency'] = 99

        assert default_config()['worker']['concurrency'] == 5

import os
import json
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from tunebridge.crosscutting.config import CredentialStore, JsonFileStore, Settings, setup_config
from tunebridge.domain.errors import ConfigurationError


class TestSettings:
    """Tests for environment-driven settings."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.env_file = os.path.join(self.temp_dir, '.env')
        Path(self.env_file).write_text('')

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults(self):
        with patch.dict(os.environ, {'TUNEBRIDGE_CONFIG_DIR': self.temp_dir}):
            settings = Settings.from_env(self.env_file)

        assert settings.config_dir == Path(self.temp_dir)
        assert settings.storefront == 'us'
        assert settings.match_batch_size == 25
        assert settings.transfer_batch_size == 25
        assert settings.flexible_threshold == 12
        assert settings.spotify_rate_limit == 95

    def test_environment_overrides(self):
        env = {
            'TUNEBRIDGE_CONFIG_DIR': self.temp_dir,
            'TUNEBRIDGE_STOREFRONT': 'gb',
            'TUNEBRIDGE_MATCH_BATCH_SIZE': '10',
            'TUNEBRIDGE_FLEXIBLE_THRESHOLD': '',
        }
        with patch.dict(os.environ, env):
            settings = Settings.from_env(self.env_file)

        assert settings.storefront == 'gb'
        assert settings.match_batch_size == 10
        assert settings.flexible_threshold == 12

    def test_reads_dotenv_file(self):
        Path(self.env_file).write_text('APPLE_MUSIC_USER_TOKEN=user-from-dotenv\n')

        with patch.dict(os.environ, {'TUNEBRIDGE_CONFIG_DIR': self.temp_dir}):
            settings = Settings.from_env(self.env_file)

        assert settings.apple_user_token == 'user-from-dotenv'

    def test_invalid_integer_is_configuration_error(self):
        with patch.dict(os.environ, {'TUNEBRIDGE_CONFIG_DIR': self.temp_dir, 'TUNEBRIDGE_RATE_WINDOW_SEC': 'soon'}):
            with pytest.raises(ConfigurationError):
                Settings.from_env(self.env_file)


class TestJsonFileStore:
    """Tests for the JSON key/value store."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / 'nested' / 'store.json'
        self.store = JsonFileStore(self.path)

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_get_missing_key_returns_default(self):
        assert self.store.get('nothing') is None
        assert self.store.get('nothing', []) == []

    def test_set_persists_to_disk(self):
        self.store.set('autoSyncJobs', [{'id': 'job_1'}])

        assert json.loads(self.path.read_text(encoding='utf-8')) == {'autoSyncJobs': [{'id': 'job_1'}]}
        assert JsonFileStore(self.path).get('autoSyncJobs') == [{'id': 'job_1'}]

    def test_delete(self):
        self.store.set('a', 1)
        self.store.set('b', 2)

        self.store.delete('a')
        self.store.delete('missing')

        assert self.store.get('a') is None
        assert self.store.get('b') == 2

    def test_corrupt_file_is_configuration_error(self):
        self.path.write_text('{not json', encoding='utf-8')

        with pytest.raises(ConfigurationError):
            self.store.get('a')


class TestCredentialStore:
    """Tests for credential lookup and persistence."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.settings = Settings(
            config_dir=Path(self.temp_dir),
            spotify_access_token='env-access',
            spotify_refresh_token='env-refresh',
            apple_developer_token='dev-token',
        )
        self.store = JsonFileStore(Path(self.temp_dir) / 'store.json')
        self.credentials = CredentialStore(self.store, self.settings)

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_settings_are_the_fallback(self):
        assert self.credentials.get_spotify_tokens() == {'access_token': 'env-access', 'refresh_token': 'env-refresh'}

    def test_refreshed_tokens_win_over_settings(self):
        self.credentials.save_spotify_tokens('new-access')

        assert self.credentials.require_spotify_access_token() == 'new-access'
        assert self.credentials.get_spotify_tokens()['refresh_token'] == 'env-refresh'

        self.credentials.save_spotify_tokens('newer-access', 'new-refresh')
        assert self.store.get('spotify') == {'access_token': 'newer-access', 'refresh_token': 'new-refresh'}

    def test_missing_apple_user_token(self):
        with pytest.raises(ConfigurationError, match='APPLE_MUSIC_USER_TOKEN'):
            self.credentials.require_apple_tokens()

    def test_missing_tokens_without_settings(self):
        credentials = CredentialStore(self.store)

        with pytest.raises(ConfigurationError):
            credentials.require_spotify_access_token()
        with pytest.raises(ConfigurationError):
            credentials.require_yandex_token()

    def test_yandex_token_from_store(self):
        self.store.set('yandex', {'access_token': 'y0_token'})

        assert self.credentials.require_yandex_token() == 'y0_token'

    def test_config_summary_has_no_secrets(self):
        summary = self.credentials.get_config_summary()

        assert summary == {
            'has_spotify_access_token': True,
            'has_spotify_refresh_token': True,
            'has_apple_developer_token': True,
            'has_apple_user_token': False,
        }
        assert 'env-access' not in json.dumps(summary)


def test_setup_config_creates_store_in_config_dir():
    temp_dir = tempfile.mkdtemp()
    try:
        settings = Settings(config_dir=Path(temp_dir) / 'tb')

        resolved, store, credentials = setup_config(settings)

        assert resolved is settings
        assert settings.config_dir.exists()
        assert store.path == settings.config_dir / 'store.json'
        assert credentials.settings is settings
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

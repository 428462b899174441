import os
import json
import threading
from dataclasses import dataclass
from typing import Dict, Any, Optional
from pathlib import Path

from dotenv import load_dotenv

from tunebridge.domain.errors import ConfigurationError


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from the environment (and `.env`)."""

    config_dir: Path
    storefront: str = 'us'
    match_batch_size: int = 25
    transfer_batch_size: int = 25
    spotify_rate_limit: int = 95
    apple_rate_limit: int = 300
    rate_window_sec: int = 60
    flexible_threshold: int = 12
    scheduler_interval_sec: int = 60
    http_timeout_sec: int = 15
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    spotify_redirect_uri: Optional[str] = None
    spotify_access_token: Optional[str] = None
    spotify_refresh_token: Optional[str] = None
    yandex_access_token: Optional[str] = None
    apple_developer_token: Optional[str] = None
    apple_user_token: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'Settings':
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()
        config_dir = os.getenv('TUNEBRIDGE_CONFIG_DIR') or str(Path.home() / '.tunebridge')
        return cls(
            config_dir=Path(config_dir).expanduser(),
            storefront=os.getenv('TUNEBRIDGE_STOREFRONT', 'us'),
            match_batch_size=_env_int('TUNEBRIDGE_MATCH_BATCH_SIZE', 25),
            transfer_batch_size=_env_int('TUNEBRIDGE_TRANSFER_BATCH_SIZE', 25),
            spotify_rate_limit=_env_int('TUNEBRIDGE_SPOTIFY_RATE_LIMIT', 95),
            apple_rate_limit=_env_int('TUNEBRIDGE_APPLE_RATE_LIMIT', 300),
            rate_window_sec=_env_int('TUNEBRIDGE_RATE_WINDOW_SEC', 60),
            flexible_threshold=_env_int('TUNEBRIDGE_FLEXIBLE_THRESHOLD', 12),
            scheduler_interval_sec=_env_int('TUNEBRIDGE_SCHEDULER_INTERVAL_SEC', 60),
            http_timeout_sec=_env_int('TUNEBRIDGE_HTTP_TIMEOUT_SEC', 15),
            spotify_client_id=os.getenv('SPOTIFY_CLIENT_ID'),
            spotify_client_secret=os.getenv('SPOTIFY_CLIENT_SECRET'),
            spotify_redirect_uri=os.getenv('SPOTIFY_REDIRECT_URI'),
            spotify_access_token=os.getenv('SPOTIFY_ACCESS_TOKEN'),
            spotify_refresh_token=os.getenv('SPOTIFY_REFRESH_TOKEN'),
            yandex_access_token=os.getenv('YANDEX_ACCESS_TOKEN'),
            apple_developer_token=os.getenv('APPLE_MUSIC_DEVELOPER_TOKEN'),
            apple_user_token=os.getenv('APPLE_MUSIC_USER_TOKEN'),
        )


class JsonFileStore:
    """Thread-safe key/value store persisted as one JSON document."""

    def __init__(self, path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigurationError(f"Failed to load store from {self.path}: {e}")

    def _write(self, data: Dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except IOError as e:
            raise ConfigurationError(f"Failed to save store to {self.path}: {e}")

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._write(data)


class CredentialStore:
    """Credential cache on top of a key/value store.

    Stored values win over the ones found in `Settings` so that refreshed tokens
    survive a restart.
    """

    def __init__(self, store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings
        self._lock = threading.Lock()

    def get_spotify_tokens(self) -> Dict[str, Optional[str]]:
        with self._lock:
            stored = self.store.get('spotify') or {}
        return {
            'access_token': stored.get('access_token') or getattr(self.settings, 'spotify_access_token', None),
            'refresh_token': stored.get('refresh_token') or getattr(self.settings, 'spotify_refresh_token', None),
        }

    def save_spotify_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        with self._lock:
            current = self.store.get('spotify') or {}
            current['access_token'] = access_token
            if refresh_token:
                current['refresh_token'] = refresh_token
            self.store.set('spotify', current)

    def require_spotify_access_token(self) -> str:
        token = self.get_spotify_tokens().get('access_token')
        if not token:
            raise ConfigurationError("Spotify access token not configured (SPOTIFY_ACCESS_TOKEN)")
        return token

    def get_apple_tokens(self) -> Dict[str, Optional[str]]:
        with self._lock:
            stored = self.store.get('apple') or {}
        return {
            'developer_token': stored.get('developer_token') or getattr(self.settings, 'apple_developer_token', None),
            'user_token': stored.get('user_token') or getattr(self.settings, 'apple_user_token', None),
        }

    def require_apple_tokens(self) -> Dict[str, str]:
        tokens = self.get_apple_tokens()
        if not tokens['developer_token']:
            raise ConfigurationError("Apple Music developer token not configured (APPLE_MUSIC_DEVELOPER_TOKEN)")
        if not tokens['user_token']:
            raise ConfigurationError("Apple Music user token not configured (APPLE_MUSIC_USER_TOKEN)")
        return tokens

    def require_yandex_token(self) -> str:
        with self._lock:
            stored = self.store.get('yandex') or {}
        token = stored.get('access_token') or getattr(self.settings, 'yandex_access_token', None)
        if not token:
            raise ConfigurationError("YANDEX_ACCESS_TOKEN not found in environment or store")
        return token

    def get_config_summary(self) -> Dict[str, Any]:
        """Configuration summary without secret values."""
        spotify = self.get_spotify_tokens()
        apple = self.get_apple_tokens()
        return {
            'has_spotify_access_token': bool(spotify['access_token']),
            'has_spotify_refresh_token': bool(spotify['refresh_token']),
            'has_apple_developer_token': bool(apple['developer_token']),
            'has_apple_user_token': bool(apple['user_token']),
        }


def setup_config(settings: Optional[Settings] = None):
    """Build the settings, key/value store and credential store for one process."""
    settings = settings or Settings.from_env()
    settings.config_dir.mkdir(parents=True, exist_ok=True)
    store = JsonFileStore(settings.config_dir / 'store.json')
    return settings, store, CredentialStore(store, settings)

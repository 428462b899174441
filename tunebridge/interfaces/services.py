import logging
import threading
from typing import Any, Dict, Optional

from tunebridge.application.matching import MatcherSettings, TrackMatcher
from tunebridge.application.pipeline import SyncOrchestrator
from tunebridge.application.history import TransferHistory
from tunebridge.application.scheduler import AutoSyncScheduler, ScheduledJobStore
from tunebridge.application.transfer import BatchTransferEngine, TransferSettings
from tunebridge.domain.errors import ConfigurationError
from tunebridge.crosscutting.broadcast import BroadcastChannel
from tunebridge.crosscutting.config import CredentialStore, Settings, setup_config
from tunebridge.crosscutting.ratelimit import RateLimiter
from tunebridge.infrastructure.providers.apple import AppleMusicProvider
from tunebridge.infrastructure.providers.spotify import SpotifyProvider
from tunebridge.infrastructure.providers.yandex import YandexMusicProvider


logger = logging.getLogger(__name__)

SUPPORTED_DIRECTIONS = {('spotify', 'apple')}


class Services:
    """Process-wide wiring shared by the CLI and the HTTP interface.

    Providers are built on first use so that a missing credential only fails
    the operation that needs it.
    """

    def __init__(self, settings: Settings, store, credentials: CredentialStore,
                 channel: Optional[BroadcastChannel] = None):
        self.settings = settings
        self.store = store
        self.credentials = credentials
        self.channel = channel or BroadcastChannel()
        self.limiters = {
            'spotify': RateLimiter(settings.spotify_rate_limit, settings.rate_window_sec, name='spotify'),
            'apple': RateLimiter(settings.apple_rate_limit, settings.rate_window_sec, name='apple'),
        }
        self._providers: Dict[str, Any] = {}
        self._orchestrator: Optional[SyncOrchestrator] = None
        self._lock = threading.RLock()
        self.jobs = ScheduledJobStore(store)
        self.history = TransferHistory(store)
        self.scheduler = AutoSyncScheduler(
            self.jobs,
            self.run_scheduled,
            channel=self.channel,
            interval=settings.scheduler_interval_sec,
            create_playlist=self.create_playlist,
        )

    @classmethod
    def from_env(cls, settings: Optional[Settings] = None) -> 'Services':
        settings, store, credentials = setup_config(settings)
        return cls(settings, store, credentials)

    def provider(self, service: str):
        """Return the (cached) provider for `service`.

        Raises:
            ConfigurationError: Unknown service or missing credentials
        """
        service = str(service or '').lower()
        with self._lock:
            if service not in self._providers:
                self._providers[service] = self._build_provider(service)
            return self._providers[service]

    def _build_provider(self, service: str):
        if service == 'spotify':
            tokens = self.credentials.get_spotify_tokens()
            access_token = self.credentials.require_spotify_access_token()
            return SpotifyProvider(
                access_token,
                refresh_token=tokens.get('refresh_token'),
                client_id=self.settings.spotify_client_id,
                client_secret=self.settings.spotify_client_secret,
                redirect_uri=self.settings.spotify_redirect_uri,
                limiter=self.limiters['spotify'],
                on_token_refresh=self.credentials.save_spotify_tokens,
                requests_timeout=self.settings.http_timeout_sec,
            )
        if service == 'apple':
            tokens = self.credentials.require_apple_tokens()
            auto_storefront = self.settings.storefront == 'auto'
            provider = AppleMusicProvider(
                tokens['developer_token'],
                tokens['user_token'],
                storefront='us' if auto_storefront else self.settings.storefront,
                limiter=self.limiters['apple'],
                timeout=self.settings.http_timeout_sec,
            )
            if auto_storefront:
                provider.storefront = provider.detect_storefront()
                logger.info(f"Detected Apple Music storefront: {provider.storefront}")
            return provider
        if service == 'yandex':
            return YandexMusicProvider(self.credentials.require_yandex_token())
        raise ConfigurationError(f"Unknown service: {service}")

    @property
    def orchestrator(self) -> SyncOrchestrator:
        with self._lock:
            if self._orchestrator is None:
                destination = self.provider('apple')
                matcher = TrackMatcher(MatcherSettings(flexible_threshold=self.settings.flexible_threshold),
                                       channel=self.channel)
                transfer = BatchTransferEngine(destination, channel=self.channel,
                                               settings=TransferSettings(batch_size=self.settings.transfer_batch_size))
                self._orchestrator = SyncOrchestrator(
                    None,
                    destination,
                    matcher=matcher,
                    transfer=transfer,
                    channel=self.channel,
                    match_batch_size=self.settings.match_batch_size,
                    resolve_service=self.provider,
                    storefront=destination.storefront,
                    history=self.history,
                )
            return self._orchestrator

    def create_playlist(self, service: str, name: str) -> str:
        playlist = self.provider(service).create_playlist(name)
        logger.info(f"Created {service} playlist '{name}' ({playlist.id})")
        return playlist.id

    def run_scheduled(self, source_service: str, destination_service: str,
                      source_id: str, destination_id: str):
        if (source_service, destination_service) not in SUPPORTED_DIRECTIONS:
            raise ConfigurationError(f"Transfers from {source_service} to {destination_service} are not supported")
        return self.orchestrator.run_exclusive(source_id, destination_id)

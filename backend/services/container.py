"""
Process-wide wiring of the odds, ledger and settlement services.

Routes and scheduled jobs call :func:`get_services`; tests either build a
:class:`ServiceContainer` directly or swap the singleton with
:func:`set_services` / :func:`reset_services`.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from backend.core.settings import EngineSettings
from backend.models import SessionLocal, utcnow
from backend.services.bet_ledger import BetLedger
from backend.services.odds import OddsProviderClient
from backend.services.odds_cache import OddsCacheManager, OddsCacheStore
from backend.services.settlement import SettlementResolver
from backend.services.verification import OddsVerificationService

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Builds every service from one settings bundle and session factory."""

    def __init__(
        self,
        settings: EngineSettings,
        session_factory=None,
        client: Optional[OddsProviderClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory or SessionLocal
        self.clock = clock
        self.client = client or OddsProviderClient.from_settings(settings)

        self.store = OddsCacheStore(self.session_factory, clock=clock)
        self.cache = OddsCacheManager(self.store, self.client, settings, clock=clock)
        self.verifier = OddsVerificationService(self.client, self.store, clock=clock)
        self.ledger = BetLedger(self.verifier, settings, self.session_factory, clock=clock)
        self.settlement = SettlementResolver(
            self.ledger, self.client, settings, self.session_factory, clock=clock,
        )

    def close(self) -> None:
        self.client.close()


_services: Optional[ServiceContainer] = None
_services_lock = threading.Lock()


def get_services() -> ServiceContainer:
    """Lazily-constructed singleton built from the environment."""
    global _services
    with _services_lock:
        if _services is None:
            settings = EngineSettings.from_env()
            logger.info(
                "Services initialised: %d odds credential(s), fallback=%s",
                len(settings.odds_api_keys), settings.verification_fallback.value,
            )
            _services = ServiceContainer(settings)
        return _services


def set_services(container: ServiceContainer) -> None:
    global _services
    with _services_lock:
        _services = container


def reset_services() -> None:
    global _services
    with _services_lock:
        if _services is not None:
            _services.close()
        _services = None

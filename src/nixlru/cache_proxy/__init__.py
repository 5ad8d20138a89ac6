"""Cache-fill and cache-serve engine for the Nix binary cache protocol.

``store`` owns the on-disk layout, ``fetcher`` fills it from upstream caches,
``guard`` coordinates fetches with operator freezes, and ``app`` exposes it all
over HTTP.
"""

from .app import CacheService, create_app
from .fetcher import FetchCoordinator, FetchError
from .guard import ConcurrencyGuard, Ticker
from .store import CacheStore, Category

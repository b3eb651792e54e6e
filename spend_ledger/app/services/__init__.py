from .cache import CacheBackend, InMemoryCache, RedisCache, build_cache
from .ledger import LedgerService
from .plans import PlanCatalog, seed_catalog
from .quota import QuotaCounter
from .repository import LedgerRepository
from .spend_guard import SpendGuard

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    "build_cache",
    "LedgerService",
    "PlanCatalog",
    "seed_catalog",
    "QuotaCounter",
    "LedgerRepository",
    "SpendGuard",
]

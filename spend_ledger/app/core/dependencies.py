from functools import lru_cache

from fastapi import Depends
from sqlmodel import Session

from ..services import (
    CacheBackend,
    LedgerRepository,
    LedgerService,
    PlanCatalog,
    QuotaCounter,
    SpendGuard,
    build_cache,
)
from .config import get_settings
from .db import get_session


@lru_cache()
def get_cache() -> CacheBackend:
    settings = get_settings()
    return build_cache(settings.cache_backend, settings.redis_url)


def get_ledger_service(session: Session = Depends(get_session)) -> LedgerService:
    settings = get_settings()
    repository = LedgerRepository(session)
    return LedgerService(
        session,
        repository,
        policy=settings.balance_policy(),
        page_size=settings.history_page_size,
    )


def get_quota_counter(
    ledger: LedgerService = Depends(get_ledger_service),
    cache: CacheBackend = Depends(get_cache),
) -> QuotaCounter:
    return QuotaCounter(ledger.repository, cache, get_settings().quota_policy())


def get_spend_guard(
    ledger: LedgerService = Depends(get_ledger_service),
    quota: QuotaCounter = Depends(get_quota_counter),
) -> SpendGuard:
    catalog = PlanCatalog(ledger.repository, get_settings().default_plan_name)
    return SpendGuard(ledger, quota, catalog)

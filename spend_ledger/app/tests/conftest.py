from datetime import UTC, datetime
from typing import Callable
from uuid import UUID

import pytest
from sqlmodel import Session, SQLModel

from ..core.config import Settings
from ..core.db import create_engine_for_url
from ..models import AccountCreate, EntryType, PlanModel
from ..services import (
    InMemoryCache,
    LedgerRepository,
    LedgerService,
    PlanCatalog,
    QuotaCounter,
    SpendGuard,
    seed_catalog,
)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def build_guard(
    session: Session,
    cache: InMemoryCache,
    clock: Callable[[], datetime] | None = None,
) -> SpendGuard:
    settings = Settings()
    ledger = LedgerService(session, policy=settings.balance_policy())
    if clock is None:
        quota = QuotaCounter(ledger.repository, cache, settings.quota_policy())
    else:
        quota = QuotaCounter(ledger.repository, cache, settings.quota_policy(), clock=clock)
    catalog = PlanCatalog(ledger.repository, settings.default_plan_name)
    return SpendGuard(ledger, quota, catalog)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        seed_catalog(session, Settings())
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime.now(UTC))


@pytest.fixture
def ledger(session) -> LedgerService:
    return LedgerService(session, page_size=2)


@pytest.fixture
def guard(session, cache) -> SpendGuard:
    return build_guard(session, cache)


@pytest.fixture
def add_plan(session) -> Callable[..., PlanModel]:
    def _add_plan(name: str, **fields) -> PlanModel:
        plan = PlanModel(name=name, display_name=name.title(), **fields)
        LedgerRepository(session).add_plan(plan)
        session.commit()
        return plan

    return _add_plan


@pytest.fixture
def set_price(session) -> Callable[[str, int], None]:
    def _set_price(category: str, unit_price: int) -> None:
        LedgerRepository(session).set_price(category, unit_price)
        session.commit()

    return _set_price


@pytest.fixture
def make_account(ledger) -> Callable[..., UUID]:
    counter = {"n": 0}

    def _make_account(balance: int = 0, plan_name: str | None = None) -> UUID:
        counter["n"] += 1
        account = ledger.create_account(
            AccountCreate(owner_name=f"Tenant {counter['n']}", plan_name=plan_name)
        )
        if balance:
            ledger.record_credit(
                account.id, EntryType.TOPUP, balance, idempotency_key=f"seed:{account.id}"
            )
        return account.id

    return _make_account

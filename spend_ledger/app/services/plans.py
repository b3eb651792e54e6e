from __future__ import annotations

import logging

from sqlmodel import Session

from ..core.config import Settings
from ..core.errors import PlanNotFoundError
from ..models import AccountModel, PlanModel
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

FEATURE_FLAGS = {
    "campaign": "campaign_enabled",
    "broadcast": "broadcast_enabled",
    "inbox": "inbox_enabled",
    "template": "template_enabled",
    "api": "api_access_enabled",
}


class PlanCatalog:
    """Read-only view over plan definitions and the per-category price list."""

    def __init__(self, repository: LedgerRepository, default_plan_name: str) -> None:
        self.repository = repository
        self.default_plan_name = default_plan_name

    def plan_for(self, account: AccountModel) -> PlanModel:
        name = account.plan_name or self.default_plan_name
        plan = self.repository.get_plan(name)
        if plan is None:
            raise PlanNotFoundError(f"Plan {name} not found")
        return plan

    def feature_enabled(self, plan: PlanModel, feature: str) -> bool:
        field = FEATURE_FLAGS.get(feature)
        if field is None:
            return False
        return bool(getattr(plan, field))

    def unit_price(self, category: str) -> int:
        price = self.repository.get_price(category)
        if price is None:
            raise ValueError(f"Unknown message category: {category}")
        return price.unit_price


def seed_catalog(session: Session, settings: Settings) -> None:
    """Insert the default plan and price list when they are missing."""
    repository = LedgerRepository(session)
    if repository.get_plan(settings.default_plan_name) is None:
        repository.add_plan(
            PlanModel(
                name=settings.default_plan_name,
                display_name=settings.default_plan_name.title(),
                max_daily_send=settings.default_daily_limit,
                max_monthly_send=settings.default_monthly_limit,
            )
        )
        logger.info("catalog.plan.seeded", extra={"plan": settings.default_plan_name})
    for category, unit_price in settings.default_unit_prices.items():
        if repository.get_price(category) is None:
            repository.set_price(category, unit_price)
    session.commit()

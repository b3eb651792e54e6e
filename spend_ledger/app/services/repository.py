from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_
from sqlmodel import Session, select

from ..models import (
    AccountModel,
    HistoryFilters,
    LedgerEntryModel,
    MessagePriceModel,
    PlanModel,
    UsageLogModel,
)


class LedgerRepository:
    """Thin data access layer around the SQLModel session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Account operations -------------------------------------------------
    def add_account(self, owner_name: str, plan_name: Optional[str] = None) -> AccountModel:
        account = AccountModel(owner_name=owner_name, plan_name=plan_name)
        self.session.add(account)
        self.session.flush()
        self.session.refresh(account)
        return account

    def get_account(self, account_id: UUID) -> Optional[AccountModel]:
        return self.session.get(AccountModel, account_id)

    def lock_account(self, account_id: UUID) -> Optional[AccountModel]:
        stmt = (
            select(AccountModel)
            .where(AccountModel.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).first()

    # Ledger entries -----------------------------------------------------
    def add_entry(self, **fields: Any) -> LedgerEntryModel:
        entry = LedgerEntryModel(**fields)
        self.session.add(entry)
        self.session.flush()
        self.session.refresh(entry)
        return entry

    def latest_entry(
        self, account_id: UUID, at: Optional[datetime] = None
    ) -> Optional[LedgerEntryModel]:
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.account_id == account_id)
        if at is not None:
            stmt = stmt.where(LedgerEntryModel.processed_at <= at)
        stmt = stmt.order_by(
            LedgerEntryModel.processed_at.desc(), LedgerEntryModel.id.desc()
        )
        return self.session.exec(stmt).first()

    def find_entry_by_key(self, entry_type: str, key: str) -> Optional[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.entry_type == entry_type)
            .where(LedgerEntryModel.idempotency_key == key)
        )
        return self.session.exec(stmt).first()

    def find_entries_by_keys(self, entry_type: str, keys: list[str]) -> list[LedgerEntryModel]:
        if not keys:
            return []
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.entry_type == entry_type)
            .where(LedgerEntryModel.idempotency_key.in_(keys))
            .order_by(LedgerEntryModel.id)
        )
        return list(self.session.exec(stmt))

    def list_entries_page(
        self,
        account_id: UUID,
        *,
        limit: int,
        filters: Optional[HistoryFilters] = None,
        after: Optional[tuple[datetime, int]] = None,
    ) -> list[LedgerEntryModel]:
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.account_id == account_id)
        if filters is not None:
            if filters.entry_type is not None:
                stmt = stmt.where(LedgerEntryModel.entry_type == filters.entry_type.value)
            if filters.direction is not None:
                stmt = stmt.where(LedgerEntryModel.direction == filters.direction.value)
            if filters.since is not None:
                stmt = stmt.where(LedgerEntryModel.processed_at >= filters.since)
            if filters.until is not None:
                stmt = stmt.where(LedgerEntryModel.processed_at <= filters.until)
        if after is not None:
            ts, seq = after
            stmt = stmt.where(
                or_(
                    LedgerEntryModel.processed_at < ts,
                    and_(LedgerEntryModel.processed_at == ts, LedgerEntryModel.id < seq),
                )
            )
        stmt = stmt.order_by(
            LedgerEntryModel.processed_at.desc(), LedgerEntryModel.id.desc()
        ).limit(limit)
        return list(self.session.exec(stmt))

    def list_entries_chronological(self, account_id: UUID) -> list[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.account_id == account_id)
            .order_by(LedgerEntryModel.processed_at, LedgerEntryModel.id)
        )
        return list(self.session.exec(stmt))

    def totals_by_type(self, account_id: UUID) -> list[tuple[str, str, int, int]]:
        stmt = (
            select(
                LedgerEntryModel.entry_type,
                LedgerEntryModel.direction,
                func.sum(LedgerEntryModel.amount),
                func.count(LedgerEntryModel.id),
            )
            .where(LedgerEntryModel.account_id == account_id)
            .group_by(LedgerEntryModel.entry_type, LedgerEntryModel.direction)
        )
        return [
            (entry_type, direction, int(total or 0), int(count))
            for entry_type, direction, total, count in self.session.exec(stmt)
        ]

    # Usage log ----------------------------------------------------------
    def add_usage(self, **fields: Any) -> UsageLogModel:
        usage = UsageLogModel(**fields)
        self.session.add(usage)
        self.session.flush()
        self.session.refresh(usage)
        return usage

    def count_usage(
        self,
        account_id: UUID,
        start: datetime,
        end: datetime,
        status: str = "success",
    ) -> int:
        stmt = (
            select(func.count(UsageLogModel.id))
            .where(UsageLogModel.account_id == account_id)
            .where(UsageLogModel.status == status)
            .where(UsageLogModel.created_at >= start)
            .where(UsageLogModel.created_at < end)
        )
        return int(self.session.exec(stmt).one() or 0)

    def find_usage_by_keys(self, keys: list[str]) -> list[UsageLogModel]:
        if not keys:
            return []
        stmt = (
            select(UsageLogModel)
            .where(UsageLogModel.idempotency_key.in_(keys))
            .order_by(UsageLogModel.id)
        )
        return list(self.session.exec(stmt))

    # Plan catalog -------------------------------------------------------
    def get_plan(self, name: str) -> Optional[PlanModel]:
        return self.session.get(PlanModel, name)

    def add_plan(self, plan: PlanModel) -> PlanModel:
        self.session.add(plan)
        self.session.flush()
        return plan

    def get_price(self, category: str) -> Optional[MessagePriceModel]:
        return self.session.get(MessagePriceModel, category)

    def set_price(self, category: str, unit_price: int) -> MessagePriceModel:
        price = self.session.get(MessagePriceModel, category)
        if price is None:
            price = MessagePriceModel(category=category, unit_price=unit_price)
        else:
            price.unit_price = unit_price
        self.session.add(price)
        self.session.flush()
        return price

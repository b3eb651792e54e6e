from __future__ import annotations
from datetime import datetime, UTC
from typing import Any, Optional
from uuid import UUID, uuid4
from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


def generate_entry_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    return f"LED-{stamp}-{uuid4().hex[:6].upper()}"


class Account(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    owner_name: str
    plan_name: Optional[str] = Field(default=None, foreign_key="plan.name")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    available_balance: int = Field(default=0)
    held_balance: int = Field(default=0, ge=0)
    lifetime_topup: int = Field(default=0, ge=0)
    lifetime_spent: int = Field(default=0, ge=0)
    last_transaction_at: Optional[datetime] = None


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "ledger_entry"
    __table_args__ = (
        UniqueConstraint("entry_type", "idempotency_key", name="uq_ledger_entry_key"),
    )

    # Sequence id doubles as the insertion-order tie-break.
    id: Optional[int] = Field(default=None, primary_key=True)
    entry_id: str = Field(default_factory=generate_entry_id, unique=True, index=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    entry_type: str = Field(index=True)
    direction: str
    amount: int = Field(gt=0)
    balance_before: int
    balance_after: int
    idempotency_key: Optional[str] = Field(default=None, index=True)
    reference_type: Optional[str] = None
    reference_id: Optional[str] = Field(default=None, index=True)
    description: Optional[str] = None
    actor: str = "system"
    meta: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    processed_at: datetime = Field(default_factory=lambda: datetime.now(UTC), index=True)

    @property
    def signed_amount(self) -> int:
        return self.amount if self.direction == "credit" else -self.amount


class UsageLog(SQLModel, table=True):
    __tablename__ = "usage_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    status: str = Field(index=True)
    ledger_entry_id: Optional[str] = None
    # set on success rows only; one billable send is charged once
    idempotency_key: Optional[str] = Field(default=None, unique=True, index=True)
    destination: str = ""
    message_type: str = "text"
    category: str
    unit_price: int = 0
    total_cost: int = 0
    balance_before: int = 0
    balance_after: int = 0
    rejection_code: Optional[str] = None
    provider_message_id: Optional[str] = None
    provider_status: Optional[str] = None
    campaign_id: Optional[str] = None
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), index=True)


class Plan(SQLModel, table=True):
    name: str = Field(primary_key=True)
    display_name: str
    campaign_enabled: bool = True
    broadcast_enabled: bool = False
    inbox_enabled: bool = True
    template_enabled: bool = True
    api_access_enabled: bool = False
    # 0 means unlimited
    max_daily_send: int = Field(default=0, ge=0)
    max_monthly_send: int = Field(default=0, ge=0)


class MessagePrice(SQLModel, table=True):
    __tablename__ = "message_price"

    category: str = Field(primary_key=True)
    unit_price: int = Field(ge=0)

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class EntryType(str, Enum):
    TOPUP = "topup"
    MESSAGE_DEBIT = "message_debit"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class Direction(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class ReasonCode(str, Enum):
    INSUFFICIENT_BALANCE = "insufficient_balance"
    LIMIT_DAILY = "limit_daily"
    LIMIT_MONTHLY = "limit_monthly"
    FEATURE_NOT_INCLUDED = "feature_not_included"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    WALLET_NOT_FOUND = "wallet_not_found"


AccountStatus = Literal["normal", "low", "critical", "zero"]
WarningLevel = Literal["none", "warning", "danger"]


class Reference(BaseModel):
    type: str = Field(..., min_length=1)
    id: str = Field(..., min_length=1)


# Accounts -------------------------------------------------------------------
class AccountCreate(BaseModel):
    owner_name: str = Field(..., min_length=1, description="Name of the tenant")
    plan_name: Optional[str] = Field(default=None, description="Plan; default plan when omitted")


class AccountResponse(BaseModel):
    id: UUID
    owner_name: str
    plan_name: Optional[str] = None
    created_at: datetime
    available_balance: int = Field(..., description="Balance in minor units")
    held_balance: int = 0
    lifetime_topup: int = 0
    lifetime_spent: int = 0
    status: AccountStatus


class BalanceResponse(BaseModel):
    account_id: UUID
    balance: int
    status: AccountStatus


class TypeTotals(BaseModel):
    credits: int = 0
    debits: int = 0
    net: int = 0
    transaction_count: int = 0


class BalanceSummary(BaseModel):
    account_id: UUID
    current_balance: int
    status: AccountStatus
    by_type: dict[str, TypeTotals] = Field(default_factory=dict)


# Ledger entries ---------------------------------------------------------------
class LedgerEntryResponse(BaseModel):
    entry_id: str
    account_id: UUID
    entry_type: EntryType
    direction: Direction
    amount: int
    balance_before: int
    balance_after: int
    idempotency_key: Optional[str] = None
    reference: Optional[Reference] = None
    description: Optional[str] = None
    actor: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    processed_at: datetime


class CreditRequest(BaseModel):
    amount: int = Field(..., ge=1, description="Amount in minor units (must be >= 1)")
    reference: Optional[Reference] = None
    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DebitRequest(CreditRequest):
    pass


class InvoicePaymentRequest(BaseModel):
    invoice_number: str = Field(..., min_length=1)
    amount: int = Field(..., ge=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    original_idempotency_key: str = Field(..., min_length=1)
    reason: str = Field(default="Message send failed", min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AdjustmentRequest(BaseModel):
    amount: int = Field(..., ge=1)
    is_credit: bool
    reason: str = Field(..., min_length=1)
    actor: str = Field(..., min_length=1, description="Admin identity making the change")
    metadata: dict[str, Any] = Field(default_factory=dict)


class HistoryFilters(BaseModel):
    entry_type: Optional[EntryType] = None
    direction: Optional[Direction] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


class StatementResponse(BaseModel):
    items: list[LedgerEntryResponse]
    next_cursor: Optional[str] = None


class Discrepancy(BaseModel):
    entry_id: str
    expected: int
    recorded: int
    difference: int


class IntegrityReport(BaseModel):
    account_id: UUID
    is_valid: bool
    entry_count: int
    replayed_balance: int
    recorded_balance: int
    account_balance: int
    last_entry_id: Optional[str] = None
    discrepancies: list[Discrepancy] = Field(default_factory=list)


# Spend guard --------------------------------------------------------------------
class MessageRecord(BaseModel):
    destination: str = Field(default="", description="Recipient phone number")
    message_type: str = "text"
    idempotency_key: Optional[str] = Field(
        default=None, description="Unique per billable send; generated when omitted"
    )
    provider_message_id: Optional[str] = None
    provider_status: Optional[str] = None
    campaign_id: Optional[str] = None
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None


class QuotaWindow(BaseModel):
    period: Literal["daily", "monthly"]
    allowed: bool = True
    limit: int
    unlimited: bool = False
    used: Optional[int] = None
    remaining: Optional[int] = None
    requested: int = 0
    percentage: float = 0.0
    warning_level: WarningLevel = "none"


class SpendDecision(BaseModel):
    allowed: bool
    code: Optional[ReasonCode] = None
    reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class ChargeResult(BaseModel):
    success: bool
    code: Optional[ReasonCode] = None
    reason: Optional[str] = None
    unit_price: int = 0
    amount_charged: int = 0
    balance_before: int = 0
    balance_after: int = 0
    ledger_entry_id: Optional[str] = None
    usage_log_id: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict)


class BatchChargeResult(BaseModel):
    success: bool
    code: Optional[ReasonCode] = None
    reason: Optional[str] = None
    message_count: int = 0
    unit_price: int = 0
    total_charged: int = 0
    balance_before: int = 0
    balance_after: int = 0
    ledger_entry_id: Optional[str] = None
    usage_log_ids: list[int] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class CostEstimate(BaseModel):
    message_count: int
    category: str
    unit_price: int
    total_cost: int


class UsageSummary(BaseModel):
    account_id: UUID
    plan_name: str
    daily: QuotaWindow
    monthly: QuotaWindow


class PreSendRequest(BaseModel):
    message_count: int = Field(default=1, ge=1)
    category: str = "marketing"
    feature: str = "campaign"


class ChargeRequest(BaseModel):
    category: str = "marketing"
    message: MessageRecord


class BatchChargeRequest(BaseModel):
    category: str = "marketing"
    messages: list[MessageRecord] = Field(..., min_length=1)
    batch_key: Optional[str] = None


class EstimateRequest(BaseModel):
    message_count: int = Field(..., ge=0)
    category: str = "marketing"


class RejectionLogRequest(BaseModel):
    category: str = "marketing"
    code: str = Field(..., min_length=1)
    message: MessageRecord


class FailureLogRequest(BaseModel):
    category: str = "marketing"
    message: MessageRecord

from .db import Account as AccountModel
from .db import LedgerEntry as LedgerEntryModel
from .db import MessagePrice as MessagePriceModel
from .db import Plan as PlanModel
from .db import UsageLog as UsageLogModel
from .schemas import (
    AccountCreate,
    AccountResponse,
    AdjustmentRequest,
    BalanceResponse,
    BalanceSummary,
    BatchChargeRequest,
    BatchChargeResult,
    ChargeRequest,
    ChargeResult,
    CostEstimate,
    CreditRequest,
    DebitRequest,
    Direction,
    Discrepancy,
    EntryType,
    EstimateRequest,
    FailureLogRequest,
    HistoryFilters,
    IntegrityReport,
    InvoicePaymentRequest,
    LedgerEntryResponse,
    MessageRecord,
    PreSendRequest,
    QuotaWindow,
    ReasonCode,
    Reference,
    RefundRequest,
    RejectionLogRequest,
    SpendDecision,
    StatementResponse,
    TypeTotals,
    UsageSummary,
)

__all__ = [
    "AccountCreate",
    "AccountResponse",
    "AdjustmentRequest",
    "BalanceResponse",
    "BalanceSummary",
    "BatchChargeRequest",
    "BatchChargeResult",
    "ChargeRequest",
    "ChargeResult",
    "CostEstimate",
    "CreditRequest",
    "DebitRequest",
    "Direction",
    "Discrepancy",
    "EntryType",
    "EstimateRequest",
    "FailureLogRequest",
    "HistoryFilters",
    "IntegrityReport",
    "InvoicePaymentRequest",
    "LedgerEntryResponse",
    "MessageRecord",
    "PreSendRequest",
    "QuotaWindow",
    "ReasonCode",
    "Reference",
    "RefundRequest",
    "RejectionLogRequest",
    "SpendDecision",
    "StatementResponse",
    "TypeTotals",
    "UsageSummary",
    "AccountModel",
    "LedgerEntryModel",
    "MessagePriceModel",
    "PlanModel",
    "UsageLogModel",
]

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Header, status

from ..core.dependencies import get_ledger_service, get_spend_guard
from ..models import (
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
    EntryType,
    EstimateRequest,
    FailureLogRequest,
    HistoryFilters,
    IntegrityReport,
    InvoicePaymentRequest,
    LedgerEntryResponse,
    PreSendRequest,
    RefundRequest,
    RejectionLogRequest,
    SpendDecision,
    StatementResponse,
    UsageSummary,
)
from ..services import LedgerService, SpendGuard


router = APIRouter(prefix="/accounts", tags=["accounts"])

@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: AccountCreate,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return service.create_account(payload)

@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: UUID,
    service: LedgerService = Depends(get_ledger_service),
) -> AccountResponse:
    return service.get_account(account_id)

@router.get("/{account_id}/balance", response_model=BalanceResponse)
def get_balance(
    account_id: UUID,
    at: datetime | None = None,
    service: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    if at is None:
        balance = service.get_balance(account_id)
    else:
        balance = service.get_balance_at(account_id, at)
    return BalanceResponse(
        account_id=account_id, balance=balance, status=service.account_status(balance)
    )

@router.get("/{account_id}/summary", response_model=BalanceSummary)
def get_balance_summary(
    account_id: UUID,
    service: LedgerService = Depends(get_ledger_service),
) -> BalanceSummary:
    return service.get_balance_summary(account_id)

@router.post(
    "/{account_id}/topups",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
def topup(
    account_id: UUID,
    payload: CreditRequest,
    service: LedgerService = Depends(get_ledger_service),
    idempotency_key: str = Header(..., convert_underscores=False, alias="Idempotency-Key"),
) -> LedgerEntryResponse:
    return service.record_credit(
        account_id,
        EntryType.TOPUP,
        payload.amount,
        idempotency_key=idempotency_key,
        reference=payload.reference,
        metadata=payload.metadata,
        description=payload.description,
    )

@router.post(
    "/{account_id}/invoice-payments",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
def invoice_payment(
    account_id: UUID,
    payload: InvoicePaymentRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> LedgerEntryResponse:
    return service.process_invoice_payment(
        account_id, payload.invoice_number, payload.amount, payload.metadata
    )

@router.post(
    "/{account_id}/debits",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
def debit(
    account_id: UUID,
    payload: DebitRequest,
    service: LedgerService = Depends(get_ledger_service),
    idempotency_key: str = Header(..., convert_underscores=False, alias="Idempotency-Key"),
) -> LedgerEntryResponse:
    return service.record_debit(
        account_id,
        EntryType.MESSAGE_DEBIT,
        payload.amount,
        idempotency_key,
        reference=payload.reference,
        metadata=payload.metadata,
        description=payload.description,
    )

@router.post(
    "/{account_id}/refunds",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
def refund(
    account_id: UUID,
    payload: RefundRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> LedgerEntryResponse:
    return service.record_refund(
        account_id, payload.original_idempotency_key, payload.reason, payload.metadata
    )

@router.post(
    "/{account_id}/adjustments",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
def adjustment(
    account_id: UUID,
    payload: AdjustmentRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> LedgerEntryResponse:
    return service.record_adjustment(
        account_id,
        payload.amount,
        payload.is_credit,
        payload.reason,
        payload.actor,
        payload.metadata,
    )

@router.get("/{account_id}/statement", response_model=StatementResponse)
def get_statement(
    account_id: UUID,
    limit: int = 50,
    cursor: str | None = None,
    entry_type: EntryType | None = None,
    direction: Direction | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    service: LedgerService = Depends(get_ledger_service),
) -> StatementResponse:
    filters = HistoryFilters(
        entry_type=entry_type, direction=direction, since=since, until=until
    )
    return service.get_statement(account_id, limit=limit, cursor=cursor, filters=filters)

@router.get("/{account_id}/integrity", response_model=IntegrityReport)
def validate_integrity(
    account_id: UUID,
    service: LedgerService = Depends(get_ledger_service),
) -> IntegrityReport:
    return service.validate_integrity(account_id)

spend_router = APIRouter(prefix="/spend", tags=["spend"])

@spend_router.post("/estimate", response_model=CostEstimate)
def estimate_cost(
    payload: EstimateRequest,
    guard: SpendGuard = Depends(get_spend_guard),
) -> CostEstimate:
    return guard.estimate_cost(payload.message_count, payload.category)

@spend_router.post("/{account_id}/check", response_model=SpendDecision)
def pre_send_check(
    account_id: UUID,
    payload: PreSendRequest,
    guard: SpendGuard = Depends(get_spend_guard),
) -> SpendDecision:
    return guard.pre_send_check(
        account_id, payload.message_count, payload.category, payload.feature
    )

@spend_router.post("/{account_id}/charge", response_model=ChargeResult)
def charge_one(
    account_id: UUID,
    payload: ChargeRequest,
    guard: SpendGuard = Depends(get_spend_guard),
) -> ChargeResult:
    return guard.charge_one(account_id, payload.message, payload.category)

@spend_router.post("/{account_id}/charge-batch", response_model=BatchChargeResult)
def charge_batch(
    account_id: UUID,
    payload: BatchChargeRequest,
    guard: SpendGuard = Depends(get_spend_guard),
) -> BatchChargeResult:
    return guard.charge_batch(
        account_id, payload.messages, payload.category, payload.batch_key
    )

@spend_router.get("/{account_id}/usage", response_model=UsageSummary)
def usage_summary(
    account_id: UUID,
    guard: SpendGuard = Depends(get_spend_guard),
) -> UsageSummary:
    return guard.usage_summary(account_id)

@spend_router.post("/{account_id}/rejections", status_code=status.HTTP_201_CREATED)
def log_rejection(
    account_id: UUID,
    payload: RejectionLogRequest,
    guard: SpendGuard = Depends(get_spend_guard),
) -> dict:
    usage_log_id = guard.log_rejection(
        account_id, payload.message, payload.code, payload.category
    )
    return {"usage_log_id": usage_log_id}

@spend_router.post("/{account_id}/failures", status_code=status.HTTP_201_CREATED)
def log_failure(
    account_id: UUID,
    payload: FailureLogRequest,
    guard: SpendGuard = Depends(get_spend_guard),
) -> dict:
    usage_log_id = guard.log_failure(account_id, payload.message, payload.category)
    return {"usage_log_id": usage_log_id}

__all__ = ["router", "spend_router"]

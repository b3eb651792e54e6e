"""Admission control and charge-on-success for outbound messages.

``pre_send_check`` is advisory and takes no lock. ``charge_one`` and
``charge_batch`` run after the provider confirmed the send and re-check the
balance inside the account's critical section before debiting.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError

from ..core.errors import AccountNotFoundError, DuplicateTransactionError
from ..models import (
    BatchChargeResult,
    ChargeResult,
    CostEstimate,
    EntryType,
    MessageRecord,
    ReasonCode,
    Reference,
    SpendDecision,
    UsageSummary,
)
from .ledger import LedgerService
from .plans import PlanCatalog
from .quota import DAILY, MONTHLY, QuotaCounter


logger = logging.getLogger(__name__)

USAGE_SUCCESS = "success"
USAGE_REJECTED = "rejected"
USAGE_FAILED = "failed"


class SpendGuard:
    def __init__(
        self,
        ledger: LedgerService,
        quota: QuotaCounter,
        catalog: PlanCatalog,
    ) -> None:
        self.ledger = ledger
        self.quota = quota
        self.catalog = catalog
        self.repository = ledger.repository

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _deny(
        self,
        account_id: UUID,
        code: ReasonCode,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> SpendDecision:
        logger.warning(
            "spend.check.denied",
            extra={"account_id": str(account_id), "code": code.value, "reason": reason},
        )
        return SpendDecision(allowed=False, code=code, reason=reason, details=details or {})

    @staticmethod
    def _message_fields(message: MessageRecord) -> dict[str, Any]:
        return {
            "destination": message.destination,
            "message_type": message.message_type,
            "provider_message_id": message.provider_message_id,
            "provider_status": message.provider_status,
            "campaign_id": message.campaign_id,
            "conversation_id": message.conversation_id,
            "user_id": message.user_id,
        }

    def _find_charged(self, keys: list[str]) -> Optional[tuple[str, Optional[str]]]:
        """Return ``(key, ledger entry id)`` for the first key already billed.

        A key counts as billed when it names a message debit or a successful
        usage row; zero-priced sends only leave the latter.
        """
        entries = self.repository.find_entries_by_keys(EntryType.MESSAGE_DEBIT.value, keys)
        if entries:
            return entries[0].idempotency_key, entries[0].entry_id
        usage = self.repository.find_usage_by_keys(keys)
        if usage:
            return usage[0].idempotency_key, usage[0].ledger_entry_id
        return None

    def _duplicate_result(
        self, account_id: UUID, key: str, existing_entry_id: Optional[str]
    ) -> dict[str, Any]:
        logger.warning(
            "spend.charge.duplicate",
            extra={"account_id": str(account_id), "idempotency_key": key},
        )
        return {
            "success": False,
            "code": ReasonCode.DUPLICATE_TRANSACTION,
            "reason": "Transaction already charged",
            "details": {"idempotency_key": key, "existing_entry_id": existing_entry_id},
        }

    # ------------------------------------------------------------------
    # Admission control
    # ------------------------------------------------------------------
    def estimate_cost(self, message_count: int, category: str = "marketing") -> CostEstimate:
        if message_count < 0:
            raise ValueError("message_count must be >= 0")
        unit_price = self.catalog.unit_price(category)
        return CostEstimate(
            message_count=message_count,
            category=category,
            unit_price=unit_price,
            total_cost=unit_price * message_count,
        )

    def pre_send_check(
        self,
        account_id: UUID,
        message_count: int = 1,
        category: str = "marketing",
        feature: str = "campaign",
    ) -> SpendDecision:
        if message_count < 1:
            raise ValueError("message_count must be >= 1")

        account = self.repository.get_account(account_id)
        if account is None:
            return self._deny(account_id, ReasonCode.WALLET_NOT_FOUND, "Wallet not found")

        plan = self.catalog.plan_for(account)
        if not self.catalog.feature_enabled(plan, feature):
            return self._deny(
                account_id,
                ReasonCode.FEATURE_NOT_INCLUDED,
                f"Feature {feature} is not available on plan {plan.display_name}",
                {"plan": plan.name, "feature": feature},
            )

        daily = self.quota.check_window(account_id, DAILY, plan.max_daily_send, message_count)
        if not daily.allowed:
            return self._deny(
                account_id,
                ReasonCode.LIMIT_DAILY,
                f"Daily limit reached. {daily.remaining} of {daily.limit} messages left.",
                daily.model_dump(),
            )

        monthly = self.quota.check_window(
            account_id, MONTHLY, plan.max_monthly_send, message_count
        )
        if not monthly.allowed:
            return self._deny(
                account_id,
                ReasonCode.LIMIT_MONTHLY,
                f"Monthly limit reached. {monthly.remaining} of {monthly.limit} messages left.",
                monthly.model_dump(),
            )

        estimate = self.estimate_cost(message_count, category)
        balance = self.ledger.get_balance(account_id)
        cost_details = {
            "balance": balance,
            "total_cost": estimate.total_cost,
            "unit_price": estimate.unit_price,
            "message_count": message_count,
        }
        if balance < estimate.total_cost:
            return self._deny(
                account_id,
                ReasonCode.INSUFFICIENT_BALANCE,
                "Insufficient balance",
                {**cost_details, "shortfall": estimate.total_cost - balance},
            )

        return SpendDecision(
            allowed=True,
            details={
                "plan": plan.name,
                "daily": daily.model_dump(),
                "monthly": monthly.model_dump(),
                **cost_details,
                "balance_before": balance,
                "balance_after": balance - estimate.total_cost,
            },
        )

    def usage_summary(self, account_id: UUID) -> UsageSummary:
        account = self.repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        plan = self.catalog.plan_for(account)
        return UsageSummary(
            account_id=account_id,
            plan_name=plan.name,
            daily=self.quota.check_window(account_id, DAILY, plan.max_daily_send),
            monthly=self.quota.check_window(account_id, MONTHLY, plan.max_monthly_send),
        )

    # ------------------------------------------------------------------
    # Charging
    # ------------------------------------------------------------------
    def charge_one(
        self,
        account_id: UUID,
        message: MessageRecord,
        category: str = "marketing",
    ) -> ChargeResult:
        unit_price = self.catalog.unit_price(category)
        key = message.idempotency_key or f"msg:{uuid4()}"

        try:
            with self.ledger.locked(account_id):
                charged = self._find_charged([key])
                if charged is not None:
                    return ChargeResult(
                        unit_price=unit_price, **self._duplicate_result(account_id, *charged)
                    )

                balance_before = self.ledger.get_balance(account_id)
                if balance_before < unit_price:
                    usage = self.repository.add_usage(
                        account_id=account_id,
                        status=USAGE_REJECTED,
                        category=category,
                        unit_price=unit_price,
                        balance_before=balance_before,
                        balance_after=balance_before,
                        rejection_code=ReasonCode.INSUFFICIENT_BALANCE.value,
                        **self._message_fields(message),
                    )
                    logger.warning(
                        "spend.charge.rejected",
                        extra={
                            "account_id": str(account_id),
                            "destination": message.destination,
                            "price": unit_price,
                            "balance": balance_before,
                        },
                    )
                    return ChargeResult(
                        success=False,
                        code=ReasonCode.INSUFFICIENT_BALANCE,
                        reason="Insufficient balance",
                        unit_price=unit_price,
                        balance_before=balance_before,
                        balance_after=balance_before,
                        usage_log_id=usage.id,
                        details={
                            "required": unit_price,
                            "available": balance_before,
                            "shortfall": unit_price - balance_before,
                        },
                    )

                entry_id = None
                balance_after = balance_before
                if unit_price > 0:
                    entry = self.ledger.record_debit(
                        account_id,
                        EntryType.MESSAGE_DEBIT,
                        unit_price,
                        key,
                        reference=Reference(
                            type="message", id=message.provider_message_id or key
                        ),
                        metadata={
                            "message_count": 1,
                            "unit_price": unit_price,
                            "category": category,
                            "destination": message.destination,
                        },
                        description="Debit for 1 WhatsApp message",
                    )
                    entry_id = entry.entry_id
                    balance_after = entry.balance_after

                usage = self.repository.add_usage(
                    account_id=account_id,
                    status=USAGE_SUCCESS,
                    idempotency_key=key,
                    ledger_entry_id=entry_id,
                    category=category,
                    unit_price=unit_price,
                    total_cost=unit_price,
                    balance_before=balance_before,
                    balance_after=balance_after,
                    **self._message_fields(message),
                )
                usage_id = usage.id
        except (IntegrityError, DuplicateTransactionError):
            # The key was billed by a charge on another account after our lookup.
            charged = None if self.ledger.in_critical_section else self._find_charged([key])
            if charged is None:
                raise
            return ChargeResult(
                unit_price=unit_price, **self._duplicate_result(account_id, *charged)
            )

        self.quota.invalidate(account_id)
        logger.info(
            "spend.charge",
            extra={
                "account_id": str(account_id),
                "destination": message.destination,
                "category": category,
                "price": unit_price,
                "balance_before": balance_before,
                "balance_after": balance_after,
                "usage_log_id": usage_id,
            },
        )
        return ChargeResult(
            success=True,
            unit_price=unit_price,
            amount_charged=unit_price,
            balance_before=balance_before,
            balance_after=balance_after,
            ledger_entry_id=entry_id,
            usage_log_id=usage_id,
        )

    def charge_batch(
        self,
        account_id: UUID,
        messages: list[MessageRecord],
        category: str = "marketing",
        batch_key: Optional[str] = None,
    ) -> BatchChargeResult:
        """Charge several confirmed sends with one ledger debit.

        Every message key is checked along with the batch key, so a send that
        was already billed, alone or in another batch, denies the whole batch.
        """
        if not messages:
            raise ValueError("A batch charge needs at least one message")

        unit_price = self.catalog.unit_price(category)
        count = len(messages)
        total_cost = unit_price * count
        key = batch_key or f"batch:{uuid4()}"
        message_keys = [m.idempotency_key for m in messages if m.idempotency_key]
        keys = [key, *message_keys]

        seen: set[str] = set()
        for message_key in message_keys:
            if message_key in seen:
                return BatchChargeResult(
                    message_count=count,
                    unit_price=unit_price,
                    **self._duplicate_result(account_id, message_key, None),
                )
            seen.add(message_key)

        try:
            with self.ledger.locked(account_id):
                charged = self._find_charged(keys)
                if charged is not None:
                    return BatchChargeResult(
                        message_count=count,
                        unit_price=unit_price,
                        **self._duplicate_result(account_id, *charged),
                    )

                balance_before = self.ledger.get_balance(account_id)
                if balance_before < total_cost:
                    logger.warning(
                        "spend.batch.rejected",
                        extra={
                            "account_id": str(account_id),
                            "message_count": count,
                            "total_cost": total_cost,
                            "balance": balance_before,
                        },
                    )
                    return BatchChargeResult(
                        success=False,
                        code=ReasonCode.INSUFFICIENT_BALANCE,
                        reason="Insufficient balance for batch",
                        message_count=count,
                        unit_price=unit_price,
                        balance_before=balance_before,
                        balance_after=balance_before,
                        details={
                            "required": total_cost,
                            "available": balance_before,
                            "shortfall": total_cost - balance_before,
                        },
                    )

                entry_id = None
                balance_after = balance_before
                if total_cost > 0:
                    entry = self.ledger.record_debit(
                        account_id,
                        EntryType.MESSAGE_DEBIT,
                        total_cost,
                        key,
                        reference=Reference(type="message_batch", id=key),
                        metadata={
                            "message_count": count,
                            "unit_price": unit_price,
                            "category": category,
                            "message_keys": message_keys,
                        },
                        description=f"Debit for {count} WhatsApp messages",
                    )
                    entry_id = entry.entry_id
                    balance_after = entry.balance_after

                usage_ids: list[int] = []
                running = balance_before
                for message in messages:
                    item_before = running
                    running -= unit_price
                    usage = self.repository.add_usage(
                        account_id=account_id,
                        status=USAGE_SUCCESS,
                        idempotency_key=message.idempotency_key,
                        ledger_entry_id=entry_id,
                        category=category,
                        unit_price=unit_price,
                        total_cost=unit_price,
                        balance_before=item_before,
                        balance_after=running,
                        **self._message_fields(message),
                    )
                    usage_ids.append(usage.id)
        except (IntegrityError, DuplicateTransactionError):
            charged = None if self.ledger.in_critical_section else self._find_charged(keys)
            if charged is None:
                raise
            return BatchChargeResult(
                message_count=count,
                unit_price=unit_price,
                **self._duplicate_result(account_id, *charged),
            )

        self.quota.invalidate(account_id)
        logger.info(
            "spend.batch",
            extra={
                "account_id": str(account_id),
                "message_count": count,
                "total_cost": total_cost,
                "balance_before": balance_before,
                "balance_after": balance_after,
            },
        )
        return BatchChargeResult(
            success=True,
            message_count=count,
            unit_price=unit_price,
            total_charged=total_cost,
            balance_before=balance_before,
            balance_after=balance_after,
            ledger_entry_id=entry_id,
            usage_log_ids=usage_ids,
        )

    # ------------------------------------------------------------------
    # Record keeping for sends that moved no money
    # ------------------------------------------------------------------
    def _log_unbilled(
        self,
        account_id: UUID,
        message: MessageRecord,
        category: str,
        status: str,
        rejection_code: Optional[str] = None,
    ) -> int:
        unit_price = self.catalog.unit_price(category)
        balance = self.ledger.get_balance(account_id)
        fields = self._message_fields(message)
        if status == USAGE_FAILED and not fields["provider_status"]:
            fields["provider_status"] = "failed"
        usage = self.repository.add_usage(
            account_id=account_id,
            status=status,
            category=category,
            unit_price=unit_price,
            balance_before=balance,
            balance_after=balance,
            rejection_code=rejection_code,
            **fields,
        )
        usage_id = usage.id
        self.ledger.session.commit()
        logger.info(
            f"spend.{status}.logged",
            extra={"account_id": str(account_id), "usage_log_id": usage_id, "code": rejection_code},
        )
        return usage_id

    def log_rejection(
        self,
        account_id: UUID,
        message: MessageRecord,
        code: ReasonCode | str,
        category: str = "marketing",
    ) -> int:
        code_value = code.value if isinstance(code, ReasonCode) else code
        return self._log_unbilled(account_id, message, category, USAGE_REJECTED, code_value)

    def log_failure(
        self,
        account_id: UUID,
        message: MessageRecord,
        category: str = "marketing",
    ) -> int:
        return self._log_unbilled(account_id, message, category, USAGE_FAILED)

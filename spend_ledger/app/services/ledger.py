from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from ..core.config import BalancePolicy
from ..core.errors import (
    AccountNotFoundError,
    DuplicateTransactionError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerEntryNotFoundError,
    MissingReferenceError,
    PlanNotFoundError,
)
from ..core.locking import AccountLockRegistry, account_locks
from ..models import (
    AccountCreate,
    AccountModel,
    AccountResponse,
    BalanceSummary,
    Direction,
    Discrepancy,
    EntryType,
    HistoryFilters,
    IntegrityReport,
    LedgerEntryModel,
    LedgerEntryResponse,
    Reference,
    StatementResponse,
    TypeTotals,
)
from .repository import LedgerRepository


logger = logging.getLogger(__name__)


class LedgerService:
    def __init__(
        self,
        session: Session,
        repository: Optional[LedgerRepository] = None,
        policy: Optional[BalancePolicy] = None,
        locks: Optional[AccountLockRegistry] = None,
        page_size: int = 100,
    ) -> None:
        self.session = session
        self.repository = repository or LedgerRepository(session)
        self.policy = policy or BalancePolicy()
        self.locks = locks or account_locks
        self.page_size = page_size
        self._section_depth = 0

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _get_account(self, account_id: UUID) -> AccountModel:
        account = self.repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def account_status(self, balance: int) -> str:
        if balance <= 0:
            return "zero"
        if balance < self.policy.critical_threshold:
            return "critical"
        if balance < self.policy.low_threshold:
            return "low"
        return "normal"

    def _account_to_response(self, account: AccountModel) -> AccountResponse:
        return AccountResponse(
            id=account.id,
            owner_name=account.owner_name,
            plan_name=account.plan_name,
            created_at=account.created_at,
            available_balance=account.available_balance,
            held_balance=account.held_balance,
            lifetime_topup=account.lifetime_topup,
            lifetime_spent=account.lifetime_spent,
            status=self.account_status(account.available_balance),
        )

    def _entry_to_response(self, entry: LedgerEntryModel) -> LedgerEntryResponse:
        reference = None
        if entry.reference_type and entry.reference_id:
            reference = Reference(type=entry.reference_type, id=entry.reference_id)
        return LedgerEntryResponse(
            entry_id=entry.entry_id,
            account_id=entry.account_id,
            entry_type=entry.entry_type,
            direction=entry.direction,
            amount=entry.amount,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            idempotency_key=entry.idempotency_key,
            reference=reference,
            description=entry.description,
            actor=entry.actor,
            metadata=dict(entry.meta or {}),
            processed_at=entry.processed_at,
        )

    def _encode_cursor(self, processed_at: datetime, seq: int) -> str:
        return f"{processed_at.isoformat()}|{seq}"

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            raw_ts, raw_seq = cursor.rsplit("|", 1)
            return datetime.fromisoformat(raw_ts), int(raw_seq)
        except ValueError as exc:
            raise ValueError("Invalid cursor") from exc

    @property
    def in_critical_section(self) -> bool:
        return self._section_depth > 0

    @contextmanager
    def locked(self, account_id: UUID) -> Iterator[AccountModel]:
        """Exclusive section over one account's balance.

        The outermost section owns the transaction: it commits on a clean exit
        and rolls back on any exception. Nested sections on the same service
        join it.
        """
        with self.locks.hold(account_id):
            outermost = self._section_depth == 0
            self._section_depth += 1
            try:
                account = self.repository.lock_account(account_id)
                if account is None:
                    raise AccountNotFoundError(f"Account {account_id} not found")
                yield account
                if outermost:
                    self.session.commit()
            except BaseException:
                if outermost:
                    self.session.rollback()
                raise
            finally:
                self._section_depth -= 1

    def _append(
        self,
        account: AccountModel,
        *,
        entry_type: EntryType,
        direction: Direction,
        amount: int,
        idempotency_key: Optional[str] = None,
        reference: Optional[Reference] = None,
        description: Optional[str] = None,
        actor: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        allow_negative: bool = False,
    ) -> LedgerEntryModel:
        if self._section_depth == 0:
            raise RuntimeError("Ledger entries must be appended inside locked()")

        latest = self.repository.latest_entry(account.id)
        balance_before = latest.balance_after if latest is not None else 0
        signed = amount if direction == Direction.CREDIT else -amount
        balance_after = balance_before + signed

        if direction == Direction.DEBIT and balance_after < 0 and not allow_negative:
            raise InsufficientBalanceError(balance=balance_before, required=amount)

        entry = self.repository.add_entry(
            account_id=account.id,
            entry_type=entry_type.value,
            direction=direction.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            idempotency_key=idempotency_key,
            reference_type=reference.type if reference else None,
            reference_id=reference.id if reference else None,
            description=description,
            actor=actor or "system",
            meta=dict(metadata or {}),
        )

        account.available_balance = balance_after
        if entry_type == EntryType.TOPUP:
            account.lifetime_topup += amount
        elif entry_type == EntryType.MESSAGE_DEBIT:
            account.lifetime_spent += amount
        elif entry_type == EntryType.REFUND:
            account.lifetime_spent = max(0, account.lifetime_spent - amount)
        account.last_transaction_at = entry.processed_at
        self.session.add(account)
        self.session.flush()
        return entry

    def _replay_credit(
        self, existing: LedgerEntryModel, account_id: UUID, amount: int
    ) -> LedgerEntryResponse:
        if existing.account_id != account_id or existing.amount != amount:
            raise IdempotencyConflictError(
                "Idempotency key was previously used with different parameters"
            )
        logger.info(
            "idempotent.credit.hit",
            extra={"account_id": str(account_id), "idempotency_key": existing.idempotency_key},
        )
        return self._entry_to_response(existing)

    def _duplicate_debit(
        self, account_id: UUID, existing: LedgerEntryModel
    ) -> DuplicateTransactionError:
        logger.warning(
            "ledger.debit.duplicate",
            extra={"account_id": str(account_id), "idempotency_key": existing.idempotency_key},
        )
        return DuplicateTransactionError(
            f"Duplicate transaction: {existing.idempotency_key}",
            existing=self._entry_to_response(existing),
        )

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(f"Ledger amount must be a positive integer, got: {amount!r}")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def create_account(self, payload: AccountCreate) -> AccountResponse:
        if payload.plan_name and self.repository.get_plan(payload.plan_name) is None:
            raise PlanNotFoundError(f"Plan {payload.plan_name} not found")
        account = self.repository.add_account(payload.owner_name, payload.plan_name)
        self.session.commit()
        logger.info(
            "account.created",
            extra={"account_id": str(account.id), "owner_name": account.owner_name},
        )
        return self._account_to_response(account)

    def get_account(self, account_id: UUID) -> AccountResponse:
        account = self._get_account(account_id)
        return self._account_to_response(account)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def record_credit(
        self,
        account_id: UUID,
        entry_type: EntryType | str,
        amount: int,
        idempotency_key: Optional[str] = None,
        reference: Optional[Reference] = None,
        metadata: Optional[dict[str, Any]] = None,
        actor: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntryResponse:
        entry_type = EntryType(entry_type)
        if entry_type != EntryType.TOPUP:
            raise ValueError(
                f"{entry_type.value} credits are recorded through their dedicated operation"
            )
        self._validate_amount(amount)

        try:
            with self.locked(account_id) as account:
                if idempotency_key:
                    existing = self.repository.find_entry_by_key(
                        entry_type.value, idempotency_key
                    )
                    if existing is not None:
                        return self._replay_credit(existing, account_id, amount)

                entry = self._append(
                    account,
                    entry_type=entry_type,
                    direction=Direction.CREDIT,
                    amount=amount,
                    idempotency_key=idempotency_key,
                    reference=reference,
                    description=description or "Topup",
                    actor=actor,
                    metadata=metadata,
                )
                response = self._entry_to_response(entry)
        except IntegrityError:
            # Another account committed the same key after our lookup.
            if not idempotency_key or self.in_critical_section:
                raise
            existing = self.repository.find_entry_by_key(entry_type.value, idempotency_key)
            if existing is None:
                raise
            return self._replay_credit(existing, account_id, amount)

        logger.info(
            "ledger.credit",
            extra={
                "account_id": str(account_id),
                "entry_id": response.entry_id,
                "amount": amount,
                "balance": response.balance_after,
            },
        )
        return response

    def process_invoice_payment(
        self,
        account_id: UUID,
        invoice_number: str,
        amount: int,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerEntryResponse:
        """Credit a paid invoice; replays of the same invoice return the first entry."""
        if not invoice_number:
            raise MissingReferenceError("Invoice number is required")
        return self.record_credit(
            account_id,
            EntryType.TOPUP,
            amount,
            idempotency_key=f"invoice:{invoice_number}",
            reference=Reference(type="invoice", id=invoice_number),
            metadata={"invoice_number": invoice_number, **(metadata or {})},
            description=f"Topup from invoice #{invoice_number}",
        )

    def record_debit(
        self,
        account_id: UUID,
        entry_type: EntryType | str,
        amount: int,
        idempotency_key: str,
        reference: Optional[Reference] = None,
        metadata: Optional[dict[str, Any]] = None,
        actor: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntryResponse:
        entry_type = EntryType(entry_type)
        if entry_type != EntryType.MESSAGE_DEBIT:
            raise ValueError(
                f"{entry_type.value} debits are recorded through their dedicated operation"
            )
        if not idempotency_key:
            raise MissingReferenceError("Idempotency key is required for debits")
        self._validate_amount(amount)

        try:
            with self.locked(account_id) as account:
                existing = self.repository.find_entry_by_key(entry_type.value, idempotency_key)
                if existing is not None:
                    raise self._duplicate_debit(account_id, existing)

                entry = self._append(
                    account,
                    entry_type=entry_type,
                    direction=Direction.DEBIT,
                    amount=amount,
                    idempotency_key=idempotency_key,
                    reference=reference,
                    description=description or "Message debit",
                    actor=actor,
                    metadata=metadata,
                )
                response = self._entry_to_response(entry)
        except IntegrityError:
            if self.in_critical_section:
                raise
            existing = self.repository.find_entry_by_key(entry_type.value, idempotency_key)
            if existing is None:
                raise
            raise self._duplicate_debit(account_id, existing) from None

        logger.info(
            "ledger.debit",
            extra={
                "account_id": str(account_id),
                "entry_id": response.entry_id,
                "amount": amount,
                "balance": response.balance_after,
            },
        )
        return response

    def record_refund(
        self,
        account_id: UUID,
        original_debit_key: str,
        reason: str = "Message send failed",
        metadata: Optional[dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> LedgerEntryResponse:
        if not original_debit_key:
            raise MissingReferenceError("Original debit key is required for refunds")
        refund_key = f"refund:{original_debit_key}"

        with self.locked(account_id) as account:
            original = self.repository.find_entry_by_key(
                EntryType.MESSAGE_DEBIT.value, original_debit_key
            )
            if original is None or original.account_id != account_id:
                raise LedgerEntryNotFoundError(
                    f"Original debit transaction not found: {original_debit_key}"
                )

            existing = self.repository.find_entry_by_key(EntryType.REFUND.value, refund_key)
            if existing is not None:
                logger.warning(
                    "ledger.refund.already_refunded",
                    extra={
                        "account_id": str(account_id),
                        "original_key": original_debit_key,
                        "refund_entry_id": existing.entry_id,
                    },
                )
                return self._entry_to_response(existing)

            entry = self._append(
                account,
                entry_type=EntryType.REFUND,
                direction=Direction.CREDIT,
                amount=original.amount,
                idempotency_key=refund_key,
                reference=Reference(type="ledger_entry", id=original.entry_id),
                description=f"Refund: {reason}",
                actor=actor,
                metadata={
                    "refund_reason": reason,
                    "original_idempotency_key": original_debit_key,
                    "original_amount": original.amount,
                    **(metadata or {}),
                },
            )
            response = self._entry_to_response(entry)

        logger.info(
            "ledger.refund",
            extra={
                "account_id": str(account_id),
                "entry_id": response.entry_id,
                "amount": response.amount,
                "balance": response.balance_after,
            },
        )
        return response

    def record_adjustment(
        self,
        account_id: UUID,
        amount: int,
        is_credit: bool,
        reason: str,
        actor: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerEntryResponse:
        if not reason or not reason.strip():
            raise MissingReferenceError("Adjustments require a reason")
        if not actor or not actor.strip():
            raise MissingReferenceError("Adjustments require an actor")
        self._validate_amount(amount)

        direction = Direction.CREDIT if is_credit else Direction.DEBIT
        stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        with self.locked(account_id) as account:
            entry = self._append(
                account,
                entry_type=EntryType.ADJUSTMENT,
                direction=direction,
                amount=amount,
                reference=Reference(type="manual", id=f"ADJ_{stamp}"),
                description=f"{'Credit' if is_credit else 'Debit'} adjustment: {reason}",
                actor=actor,
                metadata={
                    "adjustment_reason": reason,
                    "admin_override": True,
                    **(metadata or {}),
                },
                allow_negative=True,
            )
            response = self._entry_to_response(entry)

        logger.warning(
            "ledger.adjustment",
            extra={
                "account_id": str(account_id),
                "entry_id": response.entry_id,
                "direction": direction.value,
                "amount": amount,
                "actor": actor,
                "balance": response.balance_after,
            },
        )
        return response

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_balance(self, account_id: UUID) -> int:
        self._get_account(account_id)
        latest = self.repository.latest_entry(account_id)
        return latest.balance_after if latest is not None else 0

    def get_balance_at(self, account_id: UUID, at: datetime) -> int:
        self._get_account(account_id)
        latest = self.repository.latest_entry(account_id, at=at)
        return latest.balance_after if latest is not None else 0

    def has_sufficient_balance(self, account_id: UUID, amount: int) -> bool:
        return self.get_balance(account_id) >= amount

    def get_balance_summary(self, account_id: UUID) -> BalanceSummary:
        balance = self.get_balance(account_id)
        by_type: dict[str, TypeTotals] = {}
        for entry_type, direction, total, count in self.repository.totals_by_type(account_id):
            totals = by_type.setdefault(entry_type, TypeTotals())
            if direction == Direction.CREDIT.value:
                totals.credits += total
            else:
                totals.debits += total
            totals.net = totals.credits - totals.debits
            totals.transaction_count += count
        return BalanceSummary(
            account_id=account_id,
            current_balance=balance,
            status=self.account_status(balance),
            by_type=by_type,
        )

    def iter_history(
        self,
        account_id: UUID,
        filters: Optional[HistoryFilters] = None,
        limit: int = 50,
    ) -> Iterator[LedgerEntryResponse]:
        """Newest-first entries, fetched lazily in pages.

        Each call returns a fresh iterator, so a consumer can restart the walk
        by calling again.
        """
        self._get_account(account_id)
        if limit < 0:
            raise ValueError("limit must be >= 0")
        return self._walk_history(account_id, filters, limit)

    def _walk_history(
        self,
        account_id: UUID,
        filters: Optional[HistoryFilters],
        limit: int,
    ) -> Iterator[LedgerEntryResponse]:
        remaining = limit
        after: Optional[Tuple[datetime, int]] = None
        while remaining > 0:
            page = self.repository.list_entries_page(
                account_id,
                limit=min(remaining, self.page_size),
                filters=filters,
                after=after,
            )
            if not page:
                return
            for entry in page:
                yield self._entry_to_response(entry)
            remaining -= len(page)
            last = page[-1]
            after = (last.processed_at, last.id)

    def get_statement(
        self,
        account_id: UUID,
        limit: int = 50,
        cursor: Optional[str] = None,
        filters: Optional[HistoryFilters] = None,
    ) -> StatementResponse:
        self._get_account(account_id)
        if limit < 1:
            raise ValueError("limit must be >= 1")

        after = self._decode_cursor(cursor) if cursor else None
        entries = self.repository.list_entries_page(
            account_id, limit=limit + 1, filters=filters, after=after
        )

        page = entries[:limit]
        next_cursor = None
        if len(entries) > limit:
            last = page[-1]
            next_cursor = self._encode_cursor(last.processed_at, last.id)

        return StatementResponse(
            items=[self._entry_to_response(entry) for entry in page],
            next_cursor=next_cursor,
        )

    def validate_integrity(self, account_id: UUID) -> IntegrityReport:
        account = self._get_account(account_id)
        entries = self.repository.list_entries_chronological(account_id)

        tolerance = self.policy.integrity_tolerance
        replayed = 0
        previous_recorded = 0
        discrepancies: list[Discrepancy] = []
        for entry in entries:
            expected = previous_recorded + entry.signed_amount
            if abs(expected - entry.balance_after) > tolerance:
                discrepancies.append(
                    Discrepancy(
                        entry_id=entry.entry_id,
                        expected=expected,
                        recorded=entry.balance_after,
                        difference=entry.balance_after - expected,
                    )
                )
            replayed += entry.signed_amount
            previous_recorded = entry.balance_after

        recorded = entries[-1].balance_after if entries else 0
        consistent = (
            abs(replayed - recorded) <= tolerance
            and abs(account.available_balance - recorded) <= tolerance
        )
        report = IntegrityReport(
            account_id=account_id,
            is_valid=not discrepancies and consistent,
            entry_count=len(entries),
            replayed_balance=replayed,
            recorded_balance=recorded,
            account_balance=account.available_balance,
            last_entry_id=entries[-1].entry_id if entries else None,
            discrepancies=discrepancies,
        )
        if not report.is_valid:
            logger.warning(
                "ledger.integrity.mismatch",
                extra={
                    "account_id": str(account_id),
                    "discrepancies": len(discrepancies),
                    "replayed_balance": replayed,
                    "recorded_balance": recorded,
                    "account_balance": account.available_balance,
                },
            )
        return report

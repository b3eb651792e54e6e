import random
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlmodel import Session

from ..core.errors import DuplicateTransactionError, IdempotencyConflictError
from ..models import EntryType, MessageRecord, ReasonCode
from ..services import LedgerService
from .conftest import build_guard


def _charge_in_own_session(engine, cache, account_id, n: int) -> bool:
    with Session(engine) as session:
        guard = build_guard(session, cache)
        result = guard.charge_one(
            account_id,
            MessageRecord(destination=f"62812{n:07d}", idempotency_key=f"wamid-{n}"),
        )
        return result.success


def test_two_charges_cannot_both_spend_the_same_balance(
    engine, cache, make_account, set_price
) -> None:
    set_price("marketing", 600)
    account_id = make_account(balance=1_000)

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(
            pool.map(lambda n: _charge_in_own_session(engine, cache, account_id, n), [1, 2])
        )

    assert sorted(outcomes) == [False, True]
    with Session(engine) as session:
        ledger = LedgerService(session)
        assert ledger.get_balance(account_id) == 400
        assert ledger.validate_integrity(account_id).is_valid


def test_parallel_charges_never_overdraw(engine, cache, make_account, set_price) -> None:
    set_price("marketing", 700)
    account_id = make_account(balance=10_000)
    attempts = list(range(30))
    random.Random(11).shuffle(attempts)

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(
            pool.map(lambda n: _charge_in_own_session(engine, cache, account_id, n), attempts)
        )

    assert outcomes.count(True) == 14
    with Session(engine) as session:
        ledger = LedgerService(session)
        assert ledger.get_balance(account_id) == 200
        report = ledger.validate_integrity(account_id)
        assert report.is_valid
        assert report.entry_count == 15
        assert report.replayed_balance == 200


def _hide_committed_keys_inside_section(monkeypatch, ledger: LedgerService) -> None:
    """Key lookups made inside the critical section miss rows committed elsewhere."""
    repository = ledger.repository
    for name, empty in (
        ("find_entry_by_key", None),
        ("find_entries_by_keys", []),
        ("find_usage_by_keys", []),
    ):
        real = getattr(repository, name)

        def lookup(*args, _real=real, _empty=empty, **kwargs):
            if ledger.in_critical_section:
                return _empty
            return _real(*args, **kwargs)

        monkeypatch.setattr(repository, name, lookup)


def _keyed(key: str) -> MessageRecord:
    return MessageRecord(destination="6281200000001", idempotency_key=key)


def test_key_billed_on_another_account_mid_charge_is_a_duplicate(
    session, cache, make_account, monkeypatch
) -> None:
    first_account = make_account(balance=1_000)
    second_account = make_account(balance=1_000)
    winner = build_guard(session, cache).charge_one(first_account, _keyed("wamid-shared"))
    assert winner.success

    guard = build_guard(session, cache)
    _hide_committed_keys_inside_section(monkeypatch, guard.ledger)
    result = guard.charge_one(second_account, _keyed("wamid-shared"))

    assert not result.success
    assert result.code == ReasonCode.DUPLICATE_TRANSACTION
    assert result.details["existing_entry_id"] == winner.ledger_entry_id
    ledger = LedgerService(session)
    assert ledger.get_balance(second_account) == 1_000
    assert ledger.validate_integrity(second_account).is_valid


def test_batch_rolls_back_when_a_message_key_was_billed_mid_charge(
    session, cache, make_account, monkeypatch
) -> None:
    first_account = make_account(balance=1_000)
    second_account = make_account(balance=5_000)
    winner = build_guard(session, cache).charge_one(first_account, _keyed("wamid-shared"))

    guard = build_guard(session, cache)
    _hide_committed_keys_inside_section(monkeypatch, guard.ledger)
    result = guard.charge_batch(
        second_account, [_keyed("wamid-other"), _keyed("wamid-shared")]
    )

    assert not result.success
    assert result.code == ReasonCode.DUPLICATE_TRANSACTION
    assert result.details["existing_entry_id"] == winner.ledger_entry_id
    ledger = LedgerService(session)
    assert ledger.get_balance(second_account) == 5_000
    assert [entry.entry_type for entry in ledger.iter_history(second_account)] == [
        EntryType.TOPUP
    ]


def test_ledger_debit_key_race_raises_duplicate(session, make_account, monkeypatch) -> None:
    first_account = make_account(balance=1_000)
    second_account = make_account(balance=1_000)
    ledger = LedgerService(session)
    winner = ledger.record_debit(first_account, EntryType.MESSAGE_DEBIT, 300, "debit-shared")

    racing = LedgerService(session)
    _hide_committed_keys_inside_section(monkeypatch, racing)
    with pytest.raises(DuplicateTransactionError) as excinfo:
        racing.record_debit(second_account, EntryType.MESSAGE_DEBIT, 300, "debit-shared")

    assert excinfo.value.existing.entry_id == winner.entry_id
    assert ledger.get_balance(second_account) == 1_000


def test_ledger_credit_key_race_is_a_conflict(session, make_account, monkeypatch) -> None:
    first_account = make_account()
    second_account = make_account()
    ledger = LedgerService(session)
    ledger.record_credit(first_account, EntryType.TOPUP, 500, idempotency_key="topup-shared")

    racing = LedgerService(session)
    _hide_committed_keys_inside_section(monkeypatch, racing)
    with pytest.raises(IdempotencyConflictError):
        racing.record_credit(second_account, EntryType.TOPUP, 500, idempotency_key="topup-shared")

    assert ledger.get_balance(second_account) == 0

from __future__ import annotations

import pytest

from payledger import CreditLedger, OrderStore, build_session_factory, init_db, session_scope
from payledger.exceptions import InsufficientCreditsError, UserNotFoundError, ValidationError
from payledger.models import CreditTransactionType


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_db(engine)
    return engine, session_factory


def _seed_user(session_factory, user_id: str = "alice", credits: int = 0) -> None:
    with session_scope(session_factory) as session:
        OrderStore(session).ensure_user(user_id)
        if credits:
            CreditLedger(session).recharge_credits(user_id, credits, description="seed")


def test_recharge_and_consume_keep_balance_and_ledger_in_step() -> None:
    engine, sf = _make_db()
    _seed_user(sf)

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        first = ledger.recharge_credits("alice", 100, order_id="PL001", description="credit purchase")
        assert first.new_balance == 100
        assert first.transaction.sequence == 1
        assert first.transaction.type == CreditTransactionType.RECHARGE

        second = ledger.consume_credits("alice", 30, description="report export")
        assert second.new_balance == 70
        assert second.transaction.amount == -30
        assert second.transaction.balance == 70
        assert second.transaction.sequence == 2

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        assert ledger.get_user_credits("alice")["credits"] == 70
        assert ledger.verify_ledger("alice") == []
        items, total = ledger.get_credit_transactions("alice")
        assert total == 2
        assert [item.sequence for item in items] == [2, 1]

    engine.dispose()


def test_over_balance_consume_changes_nothing() -> None:
    engine, sf = _make_db()
    _seed_user(sf, credits=20)

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        with pytest.raises(InsufficientCreditsError) as excinfo:
            ledger.consume_credits("alice", 21)
        assert excinfo.value.context["balance"] == 20
        assert excinfo.value.context["required"] == 21

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        assert ledger.get_user_credits("alice")["credits"] == 20
        _, total = ledger.get_credit_transactions("alice")
        assert total == 1
        assert ledger.verify_ledger("alice") == []

    engine.dispose()


def test_failed_consume_does_not_poison_the_outer_transaction() -> None:
    engine, sf = _make_db()
    _seed_user(sf, credits=10)

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        with pytest.raises(InsufficientCreditsError):
            ledger.consume_credits("alice", 50)
        # Same session keeps working after the savepoint rollback.
        entry = ledger.consume_credits("alice", 10)
        assert entry.new_balance == 0

    with session_scope(sf) as session:
        assert CreditLedger(session).verify_ledger("alice") == []

    engine.dispose()


@pytest.mark.parametrize("amount", [0, -5, 1.5, "10", True])
def test_amounts_must_be_positive_integers(amount) -> None:
    engine, sf = _make_db()
    _seed_user(sf, credits=10)
    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        with pytest.raises(ValidationError):
            ledger.recharge_credits("alice", amount)
        with pytest.raises(ValidationError):
            ledger.consume_credits("alice", amount)
    engine.dispose()


def test_unknown_user_is_reported() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        with pytest.raises(UserNotFoundError):
            ledger.consume_credits("ghost", 1)
        with pytest.raises(UserNotFoundError):
            ledger.recharge_credits("ghost", 1)
        with pytest.raises(UserNotFoundError):
            ledger.get_user_credits("ghost")
    engine.dispose()


def test_admin_adjust_records_operator_metadata() -> None:
    engine, sf = _make_db()
    _seed_user(sf, credits=50)

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        up = ledger.adjust_credits("alice", 25, admin_id="ops-1", reason="support compensation")
        assert up.new_balance == 75
        assert up.transaction.type == CreditTransactionType.RECHARGE
        assert up.transaction.description == "admin adjust: support compensation"
        assert up.transaction.metadata_json == {
            "admin_id": "ops-1",
            "adjust_type": "increase",
            "original_balance": 50,
        }

        down = ledger.adjust_credits("alice", -70, admin_id="ops-1", reason="chargeback")
        assert down.new_balance == 5
        assert down.transaction.type == CreditTransactionType.CONSUME
        assert down.transaction.metadata_json["adjust_type"] == "decrease"

        with pytest.raises(InsufficientCreditsError):
            ledger.adjust_credits("alice", -6, admin_id="ops-1", reason="too much")
        with pytest.raises(ValidationError):
            ledger.adjust_credits("alice", 0, admin_id="ops-1", reason="noop")
        with pytest.raises(ValidationError):
            ledger.adjust_credits("alice", 5, admin_id="", reason="anonymous")

    engine.dispose()


def test_refund_and_stats() -> None:
    engine, sf = _make_db()
    _seed_user(sf)

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        ledger.recharge_credits("alice", 100, spent_cents=990)
        ledger.consume_credits("alice", 40)
        refund = ledger.refund_credits("alice", 15, description="failed export")
        assert refund.new_balance == 75
        assert refund.transaction.amount == 15

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        assert ledger.get_credit_stats("alice") == {
            "credits": 75,
            "total_recharged": 100,
            "total_consumed": 40,
            "total_refunded": 15,
        }
        assert ledger.get_user_credits("alice")["total_spent_cents"] == 990
        system = ledger.get_credit_system_stats()
        assert system["total_users"] == 1
        assert system["total_credits_outstanding"] == 75
        assert system["total_transactions"] == 3
        assert ledger.has_enough_credits("alice", 75) is True
        assert ledger.has_enough_credits("alice", 76) is False

    engine.dispose()


def test_transaction_filters() -> None:
    engine, sf = _make_db()
    _seed_user(sf, "alice")
    _seed_user(sf, "bob")

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        ledger.recharge_credits("alice", 10)
        ledger.consume_credits("alice", 5)
        ledger.recharge_credits("bob", 7)

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        consumes, total = ledger.get_credit_transactions("alice", tx_type=CreditTransactionType.CONSUME)
        assert total == 1
        assert consumes[0].amount == -5
        everything, total = ledger.get_all_credit_transactions()
        assert total == 3
        only_bob, total = ledger.get_all_credit_transactions(user_id="bob")
        assert total == 1 and only_bob[0].user_id == "bob"
        page, total = ledger.get_all_credit_transactions(limit=1, offset=1)
        assert total == 3 and len(page) == 1

    engine.dispose()


def test_initial_grant_is_skipped_when_zero() -> None:
    engine, sf = _make_db()
    _seed_user(sf)
    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        assert ledger.grant_initial_credits("alice", 0) is None
        entry = ledger.grant_initial_credits("alice", 5)
        assert entry is not None and entry.new_balance == 5
    engine.dispose()


def test_verify_ledger_detects_out_of_band_balance_edits() -> None:
    engine, sf = _make_db()
    _seed_user(sf, credits=10)
    with session_scope(sf) as session:
        user = OrderStore(session).get_user("alice")
        user.credits = 999
    with session_scope(sf) as session:
        problems = CreditLedger(session).verify_ledger("alice")
        assert problems == ["user credits 999 != last balance 10"]
    engine.dispose()

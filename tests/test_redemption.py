from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from payledger import CreditLedger, OrderStore, RedemptionService, build_session_factory, init_db, session_scope
from payledger.exceptions import InvalidCodeError, ValidationError
from payledger.redemption import CODE_ALPHABET, CODE_LENGTH, generate_code


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_db(engine)
    return engine, session_factory


def _create_code(sf, **kwargs):
    with session_scope(sf) as session:
        row = RedemptionService(session).create_code(created_by="ops", **kwargs)
        return row.id, row.code


def test_redeem_then_consume_then_second_redeem_is_rejected() -> None:
    engine, sf = _make_db()
    _create_code(sf, code="ABC123", credit_amount=100, max_uses=1)

    with session_scope(sf) as session:
        result = RedemptionService(session).redeem_code("ABC123", "alice")
        assert result.credit_amount == 100
        assert result.new_balance == 100

    with session_scope(sf) as session:
        assert CreditLedger(session).consume_credits("alice", 30).new_balance == 70

    with session_scope(sf) as session:
        with pytest.raises(InvalidCodeError) as excinfo:
            RedemptionService(session).redeem_code("ABC123", "alice")
        assert excinfo.value.reason == "exhausted"

    with session_scope(sf) as session:
        ledger = CreditLedger(session)
        assert ledger.get_user_credits("alice")["credits"] == 70
        assert ledger.verify_ledger("alice") == []
        code = RedemptionService(session).get_code_by_value("ABC123")
        assert code.used_count == 1

    engine.dispose()


def test_redemption_is_case_insensitive_and_records_the_user() -> None:
    engine, sf = _make_db()
    code_id, _ = _create_code(sf, code="spring2026", credit_amount=20, max_uses=5)

    with session_scope(sf) as session:
        result = RedemptionService(session).redeem_code("  Spring2026 ", "bob", user_identifier="bob@example.com")
        assert result.record.code == "SPRING2026"
        assert result.record.user_identifier == "bob@example.com"

    with session_scope(sf) as session:
        records, total = RedemptionService(session).get_records(code_id=code_id)
        assert total == 1
        assert records[0].user_id == "bob"
        tx, _ = CreditLedger(session).get_credit_transactions("bob")
        assert tx[0].description == "redemption code: SPRING2026"

    engine.dispose()


def test_same_user_cannot_redeem_a_multi_use_code_twice() -> None:
    engine, sf = _make_db()
    _create_code(sf, code="TEAM10", credit_amount=10, max_uses=3)

    with session_scope(sf) as session:
        RedemptionService(session).redeem_code("TEAM10", "carol")

    with session_scope(sf) as session:
        with pytest.raises(InvalidCodeError) as excinfo:
            RedemptionService(session).redeem_code("TEAM10", "carol")
        assert excinfo.value.reason == "already_redeemed"

    with session_scope(sf) as session:
        RedemptionService(session).redeem_code("TEAM10", "dave")

    with session_scope(sf) as session:
        code = RedemptionService(session).get_code_by_value("TEAM10")
        # The rejected attempt released its claimed use.
        assert code.used_count == 2
        assert CreditLedger(session).get_user_credits("carol")["credits"] == 10

    engine.dispose()


@pytest.mark.parametrize(
    ("setup", "reason"),
    [
        ({"is_active": False}, "inactive"),
        ({"expired": True}, "expired"),
    ],
)
def test_inactive_and_expired_codes_are_rejected(setup, reason) -> None:
    engine, sf = _make_db()
    code_id, _ = _create_code(sf, code="PROMO1", credit_amount=5)

    with session_scope(sf) as session:
        service = RedemptionService(session)
        if setup.get("is_active") is False:
            service.update_code(code_id, is_active=False)
        if setup.get("expired"):
            service.get_code(code_id).expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)

    with session_scope(sf) as session:
        with pytest.raises(InvalidCodeError) as excinfo:
            RedemptionService(session).redeem_code("PROMO1", "erin")
        assert excinfo.value.reason == reason

    with session_scope(sf) as session:
        assert OrderStore(session).get_user("erin").credits == 0

    engine.dispose()


def test_unknown_code_is_rejected() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        with pytest.raises(InvalidCodeError) as excinfo:
            RedemptionService(session).redeem_code("NOPE99", "frank")
        assert excinfo.value.reason == "not_found"
    engine.dispose()


def test_create_code_validation() -> None:
    engine, sf = _make_db()
    _create_code(sf, code="DUP001", credit_amount=1)

    with session_scope(sf) as session:
        service = RedemptionService(session)
        with pytest.raises(ValidationError):
            service.create_code(code="dup001", credit_amount=1, created_by="ops")
        with pytest.raises(ValidationError):
            service.create_code(credit_amount=0, created_by="ops")
        with pytest.raises(ValidationError):
            service.create_code(credit_amount=1, max_uses=0, created_by="ops")
        with pytest.raises(ValidationError):
            service.create_code(
                credit_amount=1,
                created_by="ops",
                expires_at=datetime.now(timezone.utc) - timedelta(days=1),
            )

    engine.dispose()


def test_generated_codes_use_the_unambiguous_alphabet() -> None:
    for _ in range(50):
        value = generate_code()
        assert len(value) == CODE_LENGTH
        assert set(value) <= set(CODE_ALPHABET)
    assert not set("01IOL") & set(CODE_ALPHABET)


def test_batch_create_and_list() -> None:
    engine, sf = _make_db()
    with session_scope(sf) as session:
        batch_id, codes = RedemptionService(session).batch_create_codes(count=5, credit_amount=10, created_by="ops")
        assert len(codes) == 5
        assert len({code.code for code in codes}) == 5
        assert all(code.batch_id == batch_id for code in codes)

    with session_scope(sf) as session:
        service = RedemptionService(session)
        items, total = service.list_codes(batch_id=batch_id)
        assert total == 5
        _, active_total = service.list_codes(is_active=True)
        assert active_total == 5
        page, _ = service.list_codes(limit=2, offset=0)
        assert len(page) == 2

    with session_scope(sf) as session:
        with pytest.raises(ValidationError):
            RedemptionService(session).batch_create_codes(count=1001, credit_amount=10, created_by="ops")

    engine.dispose()


def test_max_uses_cannot_drop_below_used_count() -> None:
    engine, sf = _make_db()
    code_id, _ = _create_code(sf, code="SHARED", credit_amount=3, max_uses=3)
    for user in ("u1", "u2"):
        with session_scope(sf) as session:
            RedemptionService(session).redeem_code("SHARED", user)

    with session_scope(sf) as session:
        with pytest.raises(ValidationError):
            RedemptionService(session).update_code(code_id, max_uses=1)

    with session_scope(sf) as session:
        updated = RedemptionService(session).update_code(code_id, max_uses=2, description="capped")
        assert updated.max_uses == 2
        assert updated.description == "capped"

    with session_scope(sf) as session:
        with pytest.raises(InvalidCodeError) as excinfo:
            RedemptionService(session).redeem_code("SHARED", "u3")
        assert excinfo.value.reason == "exhausted"

    engine.dispose()


def test_redemption_stats() -> None:
    engine, sf = _make_db()
    _create_code(sf, code="ONE111", credit_amount=10)
    code_id, _ = _create_code(sf, code="TWO222", credit_amount=20)
    with session_scope(sf) as session:
        service = RedemptionService(session)
        service.redeem_code("ONE111", "alice")
        service.update_code(code_id, is_active=False)

    with session_scope(sf) as session:
        stats = RedemptionService(session).get_stats()
        assert stats["total_codes"] == 2
        assert stats["active_codes"] == 1
        assert stats["exhausted_codes"] == 1
        assert stats["total_redemptions"] == 1
        assert stats["total_credits_granted"] == 10

    engine.dispose()

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from payledger import (
    CreditLedger,
    InsufficientCreditsError,
    InvalidCodeError,
    MockProvider,
    OrderStore,
    PurchaseRequest,
    RedemptionService,
    build_session_factory,
    create_payment_intent,
    init_db,
    process_callback,
    session_scope,
)


def _file_db(tmp_path: Path, name: str):
    engine, session_factory = build_session_factory(f"sqlite+pysqlite:///{tmp_path / name}")
    init_db(engine)
    return engine, session_factory


def test_simultaneous_credit_consumption_never_goes_negative(tmp_path: Path) -> None:
    engine, session_factory = _file_db(tmp_path, "consume_race.db")

    with session_scope(session_factory) as session:
        OrderStore(session).ensure_user("race-user")
        CreditLedger(session).recharge_credits("race-user", 100, description="seed credits")

    def _consume_once(index: int) -> bool:
        try:
            with session_scope(session_factory) as session:
                CreditLedger(session).consume_credits("race-user", 10, description=f"stress consume {index}")
            return True
        except InsufficientCreditsError:
            return False

    with ThreadPoolExecutor(max_workers=20) as pool:
        results = list(pool.map(_consume_once, range(20)))

    success_count = sum(1 for item in results if item)
    with session_scope(session_factory) as session:
        ledger = CreditLedger(session)
        final_balance = ledger.get_user_credits("race-user")["credits"]
        problems = ledger.verify_ledger("race-user")
        _, tx_total = ledger.get_credit_transactions("race-user")

    assert success_count == 10
    assert final_balance == 0
    assert tx_total == 1 + success_count
    assert problems == []

    engine.dispose()


def test_concurrent_redemptions_respect_max_uses(tmp_path: Path) -> None:
    engine, session_factory = _file_db(tmp_path, "redeem_race.db")
    users = [f"user-{index}" for index in range(12)]

    with session_scope(session_factory) as session:
        store = OrderStore(session)
        for user_id in users:
            store.ensure_user(user_id)
        RedemptionService(session).create_code(code="RACE42", credit_amount=10, max_uses=5, created_by="ops")

    def _redeem(user_id: str) -> bool:
        try:
            with session_scope(session_factory) as session:
                RedemptionService(session).redeem_code("RACE42", user_id)
            return True
        except InvalidCodeError:
            return False

    with ThreadPoolExecutor(max_workers=12) as pool:
        results = list(pool.map(_redeem, users))

    with session_scope(session_factory) as session:
        service = RedemptionService(session)
        code = service.get_code_by_value("RACE42")
        _, record_total = service.get_records(code_id=code.id)
        granted = sum(CreditLedger(session).get_user_credits(user_id)["credits"] for user_id in users)

    assert sum(1 for item in results if item) == 5
    assert code.used_count == 5
    assert record_total == 5
    assert granted == 50

    engine.dispose()


def test_same_user_racing_one_code_is_credited_once(tmp_path: Path) -> None:
    engine, session_factory = _file_db(tmp_path, "redeem_same_user.db")

    with session_scope(session_factory) as session:
        OrderStore(session).ensure_user("solo")
        RedemptionService(session).create_code(code="SOLO99", credit_amount=7, max_uses=10, created_by="ops")

    def _redeem(_index: int) -> bool:
        try:
            with session_scope(session_factory) as session:
                RedemptionService(session).redeem_code("SOLO99", "solo")
            return True
        except InvalidCodeError:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(_redeem, range(8)))

    with session_scope(session_factory) as session:
        credits = CreditLedger(session).get_user_credits("solo")["credits"]
        code = RedemptionService(session).get_code_by_value("SOLO99")

    assert sum(1 for item in results if item) == 1
    assert credits == 7
    assert code.used_count == 1

    engine.dispose()


def test_duplicate_callbacks_in_parallel_fulfil_once(tmp_path: Path) -> None:
    engine, session_factory = _file_db(tmp_path, "callback_race.db")
    provider = MockProvider(webhook_secret="whsec_race")
    create_payment_intent(
        provider,
        PurchaseRequest(
            user_id="payer",
            amount_cents=1990,
            description="200 credits",
            out_trade_no="PL_RACE_0001",
            credit_amount=200,
        ),
        session_factory=session_factory,
    )
    body = json.dumps(
        {"out_trade_no": "PL_RACE_0001", "transaction_id": "wx_race_1", "amount_cents": 1990}
    ).encode("utf-8")
    headers = {"X-Signature": provider.sign_callback(body)}

    def _deliver(_index: int) -> str:
        return process_callback(provider, headers, body, session_factory=session_factory).status

    with ThreadPoolExecutor(max_workers=10) as pool:
        statuses = list(pool.map(_deliver, range(10)))

    with session_scope(session_factory) as session:
        orders, order_total = OrderStore(session).get_orders(user_id="payer")
        ledger = CreditLedger(session)
        _, tx_total = ledger.get_credit_transactions("payer")
        credits = ledger.get_user_credits("payer")["credits"]

    assert statuses.count("confirmed") == 1
    assert statuses.count("duplicate") == 9
    assert order_total == 1
    assert orders[0].transaction_id == "wx_race_1"
    assert tx_total == 1
    assert credits == 200

    engine.dispose()

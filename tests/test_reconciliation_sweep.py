from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import update

import payledger.reconciliation as reconciliation
from payledger import CreditLedger, MockProvider, OrderStore, build_session_factory, init_db, session_scope
from payledger.exceptions import GatewayError, ValidationError
from payledger.models import PayOrder, PayOrderStatus
from payledger.provider import TRADE_STATE_NOTPAY, TRADE_STATE_SUCCESS, AggregatorCredentials, AggregatorProvider, ProviderOrderStatus
from payledger.tasks import run_reconciliation_sweep


class _ScriptedProvider(MockProvider):
    """Mock provider whose query answers come from a table."""

    def __init__(self, states: dict[str, str]) -> None:
        super().__init__(webhook_secret="whsec")
        self.states = states

    def query_order(self, out_trade_no: str) -> ProviderOrderStatus:
        state = self.states.get(out_trade_no, TRADE_STATE_NOTPAY)
        if state == "ERROR":
            raise GatewayError("provider timeout")
        return ProviderOrderStatus(
            out_trade_no=out_trade_no,
            trade_state=state,
            transaction_id=f"wx_{out_trade_no}" if state == TRADE_STATE_SUCCESS else None,
            amount_cents=500 if state == TRADE_STATE_SUCCESS else None,
        )


def _make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_db(engine)
    return engine, session_factory


def _seed_intent(sf, out_trade_no: str, *, provider: str = "mock", age_seconds: int = 3600) -> None:
    with session_scope(sf) as session:
        store = OrderStore(session)
        store.ensure_user("alice")
        store.create_pay_order(
            out_trade_no=out_trade_no,
            user_id="alice",
            provider=provider,
            amount_cents=500,
            description="50 credits",
            credit_amount=50,
            sign="SIGNED" if provider == "aggregator" else None,
        )
        session.execute(
            update(PayOrder)
            .where(PayOrder.identifier == out_trade_no)
            .values(created_at=datetime.now(timezone.utc) - timedelta(seconds=age_seconds))
        )


def test_sweep_confirms_paid_intents_and_reports_the_rest(monkeypatch) -> None:
    engine, sf = _make_db()
    for out_trade_no in ("PL_SWEEP_PAID", "PL_SWEEP_WAIT", "PL_SWEEP_ERR", "PL_SWEEP_PF"):
        _seed_intent(sf, out_trade_no)
    _seed_intent(sf, "PL_SWEEP_AGG", provider="aggregator")
    _seed_intent(sf, "PL_SWEEP_FRESH", age_seconds=0)

    scripted = _ScriptedProvider(
        {
            "PL_SWEEP_PAID": TRADE_STATE_SUCCESS,
            "PL_SWEEP_ERR": "ERROR",
            "PL_SWEEP_PF": TRADE_STATE_SUCCESS,
            "PL_SWEEP_FRESH": TRADE_STATE_SUCCESS,
        }
    )
    aggregator = AggregatorProvider(AggregatorCredentials(mch_id="1600000001", api_key="agg-secret"))
    providers = {"mock": scripted, "aggregator": aggregator}

    real_fulfil = reconciliation.fulfil_intent

    def _fulfil(session, intent):
        if intent.identifier == "PL_SWEEP_PF":
            raise ValidationError("ledger unavailable")
        return real_fulfil(session, intent)

    monkeypatch.setattr(reconciliation, "fulfil_intent", _fulfil)

    report = run_reconciliation_sweep(
        older_than_seconds=600,
        limit=50,
        provider_factory=lambda name: providers[name],
        session_factory=sf,
    )
    assert report.checked == 5
    assert report.confirmed == 1
    assert report.still_pending == 1
    assert report.skipped == 1
    assert report.partial_failures == 1
    assert len(report.errors) == 1 and report.errors[0].startswith("PL_SWEEP_ERR")

    with session_scope(sf) as session:
        store = OrderStore(session)
        assert store.get_pay_order("PL_SWEEP_PAID").status == PayOrderStatus.SUCCESS
        assert store.get_pay_order("PL_SWEEP_FRESH").status == PayOrderStatus.PENDING
        assert store.get_pay_order("PL_SWEEP_PF").status == PayOrderStatus.SUCCESS
        assert store.get_order("PL_SWEEP_PF") is None
        assert len(store.list_reconciliation_issues()) == 1
        assert CreditLedger(session).get_user_credits("alice")["credits"] == 50

    # Confirmed intents drop out of the next sweep.
    second = run_reconciliation_sweep(
        older_than_seconds=600,
        provider_factory=lambda name: providers[name],
        session_factory=sf,
    )
    assert second.checked == 3
    assert second.confirmed == 0

    engine.dispose()


def test_sweep_respects_the_batch_limit() -> None:
    engine, sf = _make_db()
    for index in range(3):
        _seed_intent(sf, f"PL_SWEEP_{index}", age_seconds=3600 + index)
    scripted = _ScriptedProvider({f"PL_SWEEP_{index}": TRADE_STATE_SUCCESS for index in range(3)})

    report = run_reconciliation_sweep(
        older_than_seconds=600,
        limit=2,
        provider_factory=lambda _name: scripted,
        session_factory=sf,
    )
    assert report.checked == 2
    assert report.confirmed == 2

    with session_scope(sf) as session:
        # Oldest first.
        assert OrderStore(session).get_pay_order("PL_SWEEP_0").status == PayOrderStatus.PENDING

    engine.dispose()

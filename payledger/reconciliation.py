from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal, Mapping, Optional
from urllib.parse import parse_qsl, urlencode

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from observability import get_logger, log_event, redact_mapping

from .aggregator import signatures_match
from .db import SessionFactory, session_scope
from .exceptions import (
    InvalidSignatureError,
    PayLedgerError,
    PaymentIntentNotFoundError,
    ReconciliationPartialFailure,
    ValidationError,
)
from .ledger import CreditLedger, LedgerEntry
from .models import CREDIT_ORDER_TYPE, Order, PayOrder, PayOrderStatus
from .provider import TRADE_STATE_NOTPAY, TRADE_STATE_SUCCESS, PaymentEvidence, PaymentProvider, get_payment_provider
from .repository import OrderStore

_LOGGER = get_logger("payledger.reconciliation")

OutcomeStatus = Literal["confirmed", "duplicate", "ignored", "partial_failure"]
ProviderFactory = Callable[[str], PaymentProvider]

# Same message for unknown intents and bad signatures: a forged callback
# must not learn whether a trade number exists.
_REJECTED_CALLBACK = "callback does not match any payment intent"


@dataclass(frozen=True)
class ReconciliationOutcome:
    status: OutcomeStatus
    out_trade_no: str
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    credit_transaction_id: Optional[str] = None
    new_balance: Optional[int] = None
    issue_id: Optional[str] = None
    error: Optional[str] = None

    def raise_for_partial_failure(self) -> None:
        if self.status == "partial_failure":
            raise ReconciliationPartialFailure(
                out_trade_no=self.out_trade_no,
                issue_id=self.issue_id,
                error=self.error or "unknown error",
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "outTradeNo": self.out_trade_no,
            "orderId": self.order_id,
            "transactionId": self.transaction_id,
            "newBalance": self.new_balance,
            "issueId": self.issue_id,
        }


@dataclass(frozen=True)
class OrderQueryResult:
    out_trade_no: str
    trade_state: str
    status: str
    transaction_id: Optional[str] = None
    success_time: Optional[datetime] = None
    outcome: Optional[ReconciliationOutcome] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outTradeNo": self.out_trade_no,
            "tradeState": self.trade_state,
            "status": self.status,
            "transactionId": self.transaction_id,
            "successTime": self.success_time.isoformat() if self.success_time else None,
        }


@dataclass
class SweepReport:
    checked: int = 0
    confirmed: int = 0
    already_confirmed: int = 0
    still_pending: int = 0
    skipped: int = 0
    partial_failures: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "confirmed": self.confirmed,
            "already_confirmed": self.already_confirmed,
            "still_pending": self.still_pending,
            "skipped": self.skipped,
            "partial_failures": self.partial_failures,
            "errors": list(self.errors),
        }


def fallback_transaction_id(intent: PayOrder) -> str:
    return f"{intent.provider.upper()}_{intent.identifier}"


def fulfil_intent(session: Session, intent: PayOrder) -> tuple[Order, Optional[LedgerEntry]]:
    """Create the Order for a confirmed intent and grant its credits."""

    store = OrderStore(session)
    ledger = CreditLedger(session)
    order = store.create_order(
        order_id=intent.identifier,
        identifier=intent.user_id,
        name=intent.name or intent.description,
        order_type=intent.order_type,
        price_cents=int(intent.amount_cents),
        promotion_price_cents=int(intent.promotion_price_cents or 0),
        transaction_id=intent.transaction_id or fallback_transaction_id(intent),
        provider=intent.provider,
        promoter=intent.promoter,
        credit_amount=intent.credit_amount,
    )
    entry: Optional[LedgerEntry] = None
    if intent.order_type == CREDIT_ORDER_TYPE and intent.credit_amount:
        entry = ledger.recharge_credits(
            intent.user_id,
            int(intent.credit_amount),
            order_id=order.order_id,
            description=f"credit purchase: {order.name}",
            metadata={"out_trade_no": intent.identifier, "provider": intent.provider},
            spent_cents=int(intent.amount_cents),
        )
    else:
        ledger.record_spend(intent.user_id, int(intent.amount_cents))
    return order, entry


def _classify_unconfirmed(store: OrderStore, evidence: PaymentEvidence) -> ReconciliationOutcome:
    intent = store.refresh_pay_order(evidence.out_trade_no)
    if intent is None:
        if evidence.sign is not None:
            raise InvalidSignatureError(_REJECTED_CALLBACK)
        raise PaymentIntentNotFoundError(f"payment intent not found: {evidence.out_trade_no}")
    if intent.provider != evidence.provider:
        raise ValidationError(f"payment intent belongs to provider {intent.provider}")
    if evidence.sign is not None and not signatures_match(intent.sign, evidence.sign):
        raise InvalidSignatureError(_REJECTED_CALLBACK)
    if evidence.amount_cents is not None and int(evidence.amount_cents) != int(intent.amount_cents):
        raise ValidationError(
            f"amount mismatch for {intent.identifier}: paid={evidence.amount_cents} expected={intent.amount_cents}"
        )
    if intent.status != PayOrderStatus.SUCCESS:
        raise ValidationError(f"payment intent {intent.identifier} could not be confirmed")

    if evidence.transaction_id and intent.transaction_id and evidence.transaction_id != intent.transaction_id:
        log_event(
            _LOGGER,
            logging.WARNING,
            "payment.reconcile.conflicting_duplicate",
            out_trade_no=intent.identifier,
            recorded_transaction_id=intent.transaction_id,
            reported_transaction_id=evidence.transaction_id,
        )
    order = store.get_order(intent.identifier)
    log_event(
        _LOGGER,
        logging.INFO,
        "payment.reconcile.duplicate",
        out_trade_no=intent.identifier,
        source=evidence.source,
    )
    return ReconciliationOutcome(
        status="duplicate",
        out_trade_no=intent.identifier,
        order_id=order.order_id if order else None,
        transaction_id=intent.transaction_id,
    )


def apply_payment_evidence(session: Session, evidence: PaymentEvidence) -> ReconciliationOutcome:
    """
    Turn authenticated payment evidence into at most one Order and credit grant.

    The pending -> success flip is a single conditional UPDATE; only the
    caller that changes the row creates the Order and credits. That work runs
    in a savepoint: if it fails, the confirmed status is still committed
    together with an open ReconciliationIssue and the outcome reports a
    partial failure. Callers commit, then call `raise_for_partial_failure`.
    """

    store = OrderStore(session)
    if not evidence.paid:
        log_event(
            _LOGGER,
            logging.INFO,
            "payment.reconcile.ignored",
            out_trade_no=evidence.out_trade_no,
            provider=evidence.provider,
        )
        return ReconciliationOutcome(status="ignored", out_trade_no=evidence.out_trade_no)

    won = store.confirm_pay_order(
        evidence.out_trade_no,
        provider=evidence.provider,
        transaction_id=evidence.transaction_id,
        amount_cents=evidence.amount_cents,
        sign=evidence.sign,
        paid_at=evidence.paid_at,
    )
    if not won:
        return _classify_unconfirmed(store, evidence)

    intent = store.refresh_pay_order(evidence.out_trade_no)
    try:
        with session.begin_nested():
            order, entry = fulfil_intent(session, intent)
    except (SQLAlchemyError, PayLedgerError) as exc:
        error = f"{type(exc).__name__}: {exc}"
        issue = store.record_reconciliation_issue(intent, error=error)
        log_event(
            _LOGGER,
            logging.ERROR,
            "payment.reconcile.partial_failure",
            out_trade_no=intent.identifier,
            user_id=intent.user_id,
            amount_cents=intent.amount_cents,
            credit_amount=intent.credit_amount,
            transaction_id=intent.transaction_id,
            issue_id=issue.id,
            error=error,
        )
        return ReconciliationOutcome(
            status="partial_failure",
            out_trade_no=intent.identifier,
            transaction_id=intent.transaction_id,
            issue_id=issue.id,
            error=error,
        )

    log_event(
        _LOGGER,
        logging.INFO,
        "payment.reconcile.confirmed",
        out_trade_no=intent.identifier,
        user_id=intent.user_id,
        amount_cents=intent.amount_cents,
        order_type=intent.order_type,
        credit_amount=intent.credit_amount,
        transaction_id=order.transaction_id,
        source=evidence.source,
    )
    return ReconciliationOutcome(
        status="confirmed",
        out_trade_no=intent.identifier,
        order_id=order.order_id,
        transaction_id=order.transaction_id,
        credit_transaction_id=entry.transaction.id if entry else None,
        new_balance=entry.new_balance if entry else None,
    )


def _payload_for_audit(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        # Aggregator callbacks may be form-encoded.
        fields = parse_qsl(text, keep_blank_values=True)
        if not fields:
            return text
        return urlencode(list(redact_mapping(dict(fields)).items()))
    if isinstance(parsed, Mapping):
        return json.dumps(redact_mapping(parsed), ensure_ascii=False)
    return text


def _record_rejection(
    session_factory: Optional[SessionFactory],
    *,
    provider: str,
    payload: str,
    outcome: str,
    detail: str,
    out_trade_no: Optional[str] = None,
    signature_valid: bool = False,
) -> None:
    with session_scope(session_factory) as session:
        OrderStore(session).record_audit_log(
            provider=provider,
            raw_payload=payload,
            outcome=outcome,
            signature_valid=signature_valid,
            out_trade_no=out_trade_no,
            detail=detail,
        )


def process_callback(
    provider: PaymentProvider,
    headers: Mapping[str, str],
    body: bytes,
    *,
    session_factory: Optional[SessionFactory] = None,
) -> ReconciliationOutcome:
    """
    Handle one provider callback end to end.

    Authentication happens before any database read. Every attempt leaves an
    audit row. Raises InvalidSignatureError / ValidationError for rejected
    callbacks and ReconciliationPartialFailure after committing a confirmed
    but uncredited intent.
    """

    payload = _payload_for_audit(body)
    try:
        evidence = provider.parse_callback(headers, body)
    except (InvalidSignatureError, ValidationError) as exc:
        outcome = "rejected_signature" if isinstance(exc, InvalidSignatureError) else "invalid_payload"
        log_event(
            _LOGGER,
            logging.WARNING,
            f"payment.callback.{outcome}",
            provider=provider.name,
            error=str(exc),
            payload=payload[:2000],
        )
        _record_rejection(session_factory, provider=provider.name, payload=payload, outcome=outcome, detail=str(exc))
        raise

    log_event(
        _LOGGER,
        logging.INFO,
        "payment.callback.received",
        provider=provider.name,
        out_trade_no=evidence.out_trade_no,
        transaction_id=evidence.transaction_id,
        paid=evidence.paid,
    )
    try:
        with session_scope(session_factory) as session:
            result = apply_payment_evidence(session, evidence)
            OrderStore(session).record_audit_log(
                provider=provider.name,
                raw_payload=payload,
                outcome=result.status,
                signature_valid=True,
                out_trade_no=evidence.out_trade_no,
                transaction_id=evidence.transaction_id,
                detail=result.error,
            )
    except (InvalidSignatureError, ValidationError) as exc:
        outcome = "rejected_signature" if isinstance(exc, InvalidSignatureError) else "invalid_payload"
        log_event(
            _LOGGER,
            logging.WARNING,
            f"payment.callback.{outcome}",
            provider=provider.name,
            out_trade_no=evidence.out_trade_no,
            error=str(exc),
            payload=payload[:2000],
        )
        _record_rejection(
            session_factory,
            provider=provider.name,
            payload=payload,
            outcome=outcome,
            detail=str(exc),
            out_trade_no=evidence.out_trade_no,
            signature_valid=not isinstance(exc, InvalidSignatureError),
        )
        raise

    result.raise_for_partial_failure()
    return result


def confirm_by_query(
    out_trade_no: str,
    *,
    provider_factory: ProviderFactory = get_payment_provider,
    session_factory: Optional[SessionFactory] = None,
) -> OrderQueryResult:
    """
    Poll path: report an intent's state, asking the provider while it is pending.

    A provider-reported SUCCESS goes through the same exactly-once transition
    as a callback, so a poll racing the callback cannot double-credit.
    """

    with session_scope(session_factory) as session:
        intent = OrderStore(session).require_pay_order(out_trade_no)
        identifier = intent.identifier
        provider_name = intent.provider
        status = intent.status
        transaction_id = intent.transaction_id
        paid_at = intent.paid_at

    if status == PayOrderStatus.SUCCESS:
        return OrderQueryResult(
            out_trade_no=identifier,
            trade_state=TRADE_STATE_SUCCESS,
            status=status.value,
            transaction_id=transaction_id,
            success_time=paid_at,
        )

    provider = provider_factory(provider_name)
    if not provider.supports_query:
        return OrderQueryResult(out_trade_no=identifier, trade_state=TRADE_STATE_NOTPAY, status=status.value)

    provider_status = provider.query_order(identifier)
    if not provider_status.is_paid:
        return OrderQueryResult(
            out_trade_no=identifier,
            trade_state=provider_status.trade_state,
            status=status.value,
        )

    evidence = PaymentEvidence(
        provider=provider.name,
        out_trade_no=identifier,
        paid=True,
        transaction_id=provider_status.transaction_id,
        amount_cents=provider_status.amount_cents,
        paid_at=provider_status.success_time,
        source="poll",
        raw=provider_status.raw,
    )
    with session_scope(session_factory) as session:
        outcome = apply_payment_evidence(session, evidence)
        OrderStore(session).record_audit_log(
            provider=provider.name,
            source="poll",
            raw_payload=json.dumps(provider_status.raw, ensure_ascii=False, default=str),
            outcome=outcome.status,
            signature_valid=True,
            out_trade_no=identifier,
            transaction_id=provider_status.transaction_id,
            detail=outcome.error,
        )
    outcome.raise_for_partial_failure()
    return OrderQueryResult(
        out_trade_no=identifier,
        trade_state=TRADE_STATE_SUCCESS,
        status=PayOrderStatus.SUCCESS.value,
        transaction_id=outcome.transaction_id,
        success_time=provider_status.success_time,
        outcome=outcome,
    )


def resolve_reconciliation_issue(session: Session, issue_id: str, *, admin_id: str) -> ReconciliationOutcome:
    """
    Operator replay of a partial failure.

    Claiming the issue and creating the Order/credit share one transaction,
    so the replay itself happens at most once; a failure leaves the issue open.
    """

    admin = str(admin_id or "").strip()
    if not admin:
        raise ValidationError("admin_id is required")
    store = OrderStore(session)
    issue = store.get_reconciliation_issue(issue_id)
    if issue is None:
        raise ValidationError(f"reconciliation issue not found: {issue_id}")
    if not store.claim_reconciliation_issue(issue.id, admin_id=admin):
        raise ValidationError(f"reconciliation issue already resolved: {issue_id}")

    intent = store.refresh_pay_order(issue.out_trade_no)
    if intent is None or intent.status != PayOrderStatus.SUCCESS:
        raise ValidationError(f"payment intent {issue.out_trade_no} is not confirmed")

    existing = store.get_order(intent.identifier)
    if existing is not None:
        log_event(
            _LOGGER,
            logging.WARNING,
            "payment.reconcile.issue_already_fulfilled",
            issue_id=issue.id,
            out_trade_no=intent.identifier,
            admin_id=admin,
        )
        return ReconciliationOutcome(
            status="duplicate",
            out_trade_no=intent.identifier,
            order_id=existing.order_id,
            transaction_id=existing.transaction_id,
            issue_id=issue.id,
        )

    order, entry = fulfil_intent(session, intent)
    log_event(
        _LOGGER,
        logging.INFO,
        "payment.reconcile.issue_resolved",
        issue_id=issue.id,
        out_trade_no=intent.identifier,
        user_id=intent.user_id,
        credit_amount=intent.credit_amount,
        admin_id=admin,
    )
    return ReconciliationOutcome(
        status="confirmed",
        out_trade_no=intent.identifier,
        order_id=order.order_id,
        transaction_id=order.transaction_id,
        credit_transaction_id=entry.transaction.id if entry else None,
        new_balance=entry.new_balance if entry else None,
        issue_id=issue.id,
    )


def sweep_stale_intents(
    *,
    older_than_seconds: int,
    limit: int = 100,
    provider_factory: ProviderFactory = get_payment_provider,
    session_factory: Optional[SessionFactory] = None,
) -> SweepReport:
    """Poll the provider for intents left pending past `older_than_seconds`."""

    with session_scope(session_factory) as session:
        stale = [
            (intent.identifier, intent.provider)
            for intent in OrderStore(session).list_stale_pay_orders(older_than_seconds=older_than_seconds, limit=limit)
        ]

    report = SweepReport()
    for out_trade_no, provider_name in stale:
        report.checked += 1
        try:
            if not provider_factory(provider_name).supports_query:
                report.skipped += 1
                continue
            result = confirm_by_query(
                out_trade_no,
                provider_factory=provider_factory,
                session_factory=session_factory,
            )
        except ReconciliationPartialFailure:
            report.partial_failures += 1
            continue
        except PayLedgerError as exc:
            report.errors.append(f"{out_trade_no}: {exc}")
            log_event(
                _LOGGER,
                logging.WARNING,
                "reconcile.sweep.intent_failed",
                out_trade_no=out_trade_no,
                provider=provider_name,
                error=str(exc),
            )
            continue
        if result.outcome is not None and result.outcome.status == "confirmed":
            report.confirmed += 1
        elif result.trade_state == TRADE_STATE_SUCCESS:
            report.already_confirmed += 1
        else:
            report.still_pending += 1

    log_event(_LOGGER, logging.INFO, "reconcile.sweep.completed", **report.to_dict())
    return report

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .exceptions import PaymentIntentNotFoundError, ValidationError
from .models import (
    CREDIT_ORDER_TYPE,
    Order,
    PaymentAuditLog,
    PayOrder,
    PayOrderStatus,
    ReconciliationIssue,
    ReconciliationIssueStatus,
    User,
)

MAX_PAGE_SIZE = 200


def _as_utc_aware(value: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite returns offset-naive datetimes even for DateTime(timezone=True)
    columns; treat them as UTC so comparisons with aware values work.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(int(limit), MAX_PAGE_SIZE)), max(0, int(offset))


@dataclass(frozen=True)
class OrderStats:
    total_orders: int
    total_revenue_cents: int
    today_orders: int
    today_revenue_cents: int
    month_orders: int
    month_revenue_cents: int

    def to_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


class OrderStore:
    """Persistence for users, payment intents, confirmed orders and their audit trail."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # users

    def get_user(self, user_id: str) -> Optional[User]:
        key = str(user_id or "").strip()
        if not key:
            return None
        return self.session.get(User, key)

    def ensure_user(self, user_id: str, *, nickname: Optional[str] = None) -> tuple[User, bool]:
        """Return (user, created). Concurrent creators converge on one row."""
        key = str(user_id or "").strip()
        if not key:
            raise ValidationError("user_id is required")
        existing = self.session.get(User, key)
        if existing is not None:
            return existing, False
        user = User(id=key, nickname=(nickname or "").strip() or None, credits=0, total_spent_cents=0, ledger_seq=0)
        try:
            with self.session.begin_nested():
                self.session.add(user)
                self.session.flush()
        except IntegrityError:
            existing = self.session.get(User, key)
            if existing is not None:
                return existing, False
            raise
        return user, True

    # payment intents

    def create_pay_order(
        self,
        *,
        out_trade_no: str,
        user_id: str,
        provider: str,
        amount_cents: int,
        description: str,
        order_type: str = CREDIT_ORDER_TYPE,
        name: str = "",
        credit_amount: Optional[int] = None,
        promoter: Optional[str] = None,
        promotion_price_cents: int = 0,
        sign: Optional[str] = None,
    ) -> tuple[PayOrder, bool]:
        """
        Insert a pending intent, or return the existing one for a retried request.

        Returns (intent, created). Reusing an out_trade_no for another user,
        amount, order type or credit amount is rejected. A retry keeps the
        stored description.
        """

        identifier = str(out_trade_no or "").strip()
        if not identifier:
            raise ValidationError("outTradeNo is required")
        existing = self.get_pay_order(identifier)
        if existing is not None:
            self._check_reuse(
                existing,
                user_id=user_id,
                amount_cents=amount_cents,
                order_type=order_type,
                credit_amount=credit_amount,
            )
            return existing, False

        intent = PayOrder(
            identifier=identifier,
            user_id=user_id,
            provider=provider,
            amount_cents=int(amount_cents),
            description=description,
            order_type=order_type or CREDIT_ORDER_TYPE,
            name=name or description,
            credit_amount=credit_amount,
            promoter=(promoter or "").strip() or None,
            promotion_price_cents=int(promotion_price_cents or 0),
            sign=sign,
            status=PayOrderStatus.PENDING,
        )
        try:
            with self.session.begin_nested():
                self.session.add(intent)
                self.session.flush()
        except IntegrityError:
            existing = self.get_pay_order(identifier)
            if existing is None:
                raise
            self._check_reuse(
                existing,
                user_id=user_id,
                amount_cents=amount_cents,
                order_type=order_type,
                credit_amount=credit_amount,
            )
            return existing, False
        return intent, True

    @staticmethod
    def _check_reuse(
        existing: PayOrder,
        *,
        user_id: str,
        amount_cents: int,
        order_type: str,
        credit_amount: Optional[int],
    ) -> None:
        if (
            existing.user_id != user_id
            or int(existing.amount_cents) != int(amount_cents)
            or existing.order_type != (order_type or CREDIT_ORDER_TYPE)
            or existing.credit_amount != credit_amount
        ):
            raise ValidationError(f"outTradeNo already used: {existing.identifier}")

    def get_pay_order(self, out_trade_no: str) -> Optional[PayOrder]:
        identifier = str(out_trade_no or "").strip()
        if not identifier:
            return None
        return self.session.scalar(select(PayOrder).where(PayOrder.identifier == identifier))

    def require_pay_order(self, out_trade_no: str) -> PayOrder:
        intent = self.get_pay_order(out_trade_no)
        if intent is None:
            raise PaymentIntentNotFoundError(f"payment intent not found: {out_trade_no}")
        return intent

    def refresh_pay_order(self, out_trade_no: str) -> Optional[PayOrder]:
        query = (
            select(PayOrder)
            .where(PayOrder.identifier == str(out_trade_no or "").strip())
            .execution_options(populate_existing=True)
        )
        return self.session.scalar(query)

    def attach_checkout_url(self, out_trade_no: str, checkout_url: Optional[str]) -> None:
        if not checkout_url:
            return
        self.session.execute(
            update(PayOrder)
            .where(PayOrder.identifier == out_trade_no)
            .values(checkout_url=checkout_url, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    def confirm_pay_order(
        self,
        out_trade_no: str,
        *,
        provider: str,
        transaction_id: Optional[str],
        amount_cents: Optional[int] = None,
        sign: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """
        Flip one intent pending -> success in a single conditional UPDATE.

        `provider`, `sign` and `amount_cents` are part of the guard, so a
        mismatching callback affects zero rows. Returns True only for the
        caller whose statement changed the row.
        """

        now = datetime.now(timezone.utc)
        guard = [
            PayOrder.identifier == str(out_trade_no or "").strip(),
            PayOrder.status == PayOrderStatus.PENDING,
            PayOrder.provider == provider,
        ]
        if sign is not None:
            guard.append(PayOrder.sign == sign)
        if amount_cents is not None:
            guard.append(PayOrder.amount_cents == int(amount_cents))
        result = self.session.execute(
            update(PayOrder)
            .where(*guard)
            .values(
                status=PayOrderStatus.SUCCESS,
                transaction_id=transaction_id,
                paid_at=_as_utc_aware(paid_at) if paid_at else now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def list_stale_pay_orders(self, *, older_than_seconds: int, limit: int = 100) -> list[PayOrder]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max(0, int(older_than_seconds)))
        query = (
            select(PayOrder)
            .where(PayOrder.status == PayOrderStatus.PENDING, PayOrder.created_at <= cutoff)
            .order_by(PayOrder.created_at.asc())
            .limit(max(1, int(limit)))
        )
        return list(self.session.scalars(query).all())

    # confirmed orders

    def create_order(
        self,
        *,
        order_id: str,
        identifier: str,
        name: str,
        order_type: str,
        price_cents: int,
        transaction_id: str,
        provider: str,
        promotion_price_cents: int = 0,
        promoter: Optional[str] = None,
        credit_amount: Optional[int] = None,
    ) -> Order:
        if not str(transaction_id or "").strip():
            raise ValidationError("transaction_id is required")
        order = Order(
            order_id=order_id,
            identifier=identifier,
            name=name,
            order_type=order_type,
            price_cents=int(price_cents),
            promotion_price_cents=int(promotion_price_cents or 0),
            transaction_id=transaction_id,
            promoter=promoter,
            credit_amount=credit_amount,
            provider=provider,
        )
        self.session.add(order)
        self.session.flush()
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.session.scalar(select(Order).where(Order.order_id == str(order_id or "").strip()))

    def get_orders(
        self,
        *,
        user_id: Optional[str] = None,
        order_type: Optional[str] = None,
        search: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        conditions: list[Any] = []
        if user_id:
            conditions.append(Order.identifier == user_id)
        if order_type:
            conditions.append(Order.order_type == order_type)
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(
                or_(Order.order_id.ilike(pattern), Order.name.ilike(pattern), Order.transaction_id.ilike(pattern))
            )
        if start:
            conditions.append(Order.created_at >= _as_utc_aware(start))
        if end:
            conditions.append(Order.created_at < _as_utc_aware(end))

        total = self.session.scalar(select(func.count()).select_from(Order).where(*conditions))
        page_size, page_offset = _page(limit, offset)
        query = select(Order).where(*conditions).order_by(Order.created_at.desc()).limit(page_size).offset(page_offset)
        return list(self.session.scalars(query).all()), int(total or 0)

    def delete_order(self, order_id: str) -> bool:
        order = self.get_order(order_id)
        if order is None:
            return False
        self.session.delete(order)
        self.session.flush()
        return True

    def _count_and_revenue(self, since: Optional[datetime] = None) -> tuple[int, int]:
        query = select(func.count(), func.coalesce(func.sum(Order.price_cents), 0)).select_from(Order)
        if since is not None:
            query = query.where(Order.created_at >= since)
        count, revenue = self.session.execute(query).one()
        return int(count or 0), int(revenue or 0)

    def get_order_stats(self, now: Optional[datetime] = None) -> OrderStats:
        current = _as_utc_aware(now) if now else datetime.now(timezone.utc)
        day_start = current.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)
        total_orders, total_revenue = self._count_and_revenue()
        today_orders, today_revenue = self._count_and_revenue(day_start)
        month_orders, month_revenue = self._count_and_revenue(month_start)
        return OrderStats(
            total_orders=total_orders,
            total_revenue_cents=total_revenue,
            today_orders=today_orders,
            today_revenue_cents=today_revenue,
            month_orders=month_orders,
            month_revenue_cents=month_revenue,
        )

    # audit log

    def record_audit_log(
        self,
        *,
        provider: str,
        raw_payload: str,
        outcome: str,
        source: str = "callback",
        signature_valid: bool = False,
        out_trade_no: Optional[str] = None,
        transaction_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> PaymentAuditLog:
        log = PaymentAuditLog(
            provider=str(provider or "unknown")[:32],
            source=str(source or "callback")[:16],
            out_trade_no=str(out_trade_no)[:128] if out_trade_no else None,
            transaction_id=str(transaction_id)[:128] if transaction_id else None,
            signature_valid=bool(signature_valid),
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "")[:32] or "unknown",
            detail=str(detail) if detail else None,
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_audit_logs(
        self,
        *,
        provider: Optional[str] = None,
        out_trade_no: Optional[str] = None,
        outcome: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PaymentAuditLog]:
        query = select(PaymentAuditLog).order_by(PaymentAuditLog.occurred_at.desc())
        if provider:
            query = query.where(PaymentAuditLog.provider == provider)
        if out_trade_no:
            query = query.where(PaymentAuditLog.out_trade_no == out_trade_no)
        if outcome:
            query = query.where(PaymentAuditLog.outcome == outcome)
        page_size, page_offset = _page(limit, offset)
        return list(self.session.scalars(query.limit(page_size).offset(page_offset)).all())

    # reconciliation issues

    def record_reconciliation_issue(self, intent: PayOrder, *, error: str) -> ReconciliationIssue:
        issue = ReconciliationIssue(
            pay_order_id=intent.id,
            out_trade_no=intent.identifier,
            user_id=intent.user_id,
            amount_cents=int(intent.amount_cents),
            credit_amount=intent.credit_amount,
            transaction_id=intent.transaction_id,
            status=ReconciliationIssueStatus.OPEN,
            error=str(error or "unknown error"),
        )
        self.session.add(issue)
        self.session.flush()
        return issue

    def get_reconciliation_issue(self, issue_id: str) -> Optional[ReconciliationIssue]:
        return self.session.get(ReconciliationIssue, str(issue_id or "").strip())

    def list_reconciliation_issues(
        self,
        *,
        status: Optional[ReconciliationIssueStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ReconciliationIssue]:
        query = select(ReconciliationIssue).order_by(ReconciliationIssue.created_at.desc())
        if status is not None:
            query = query.where(ReconciliationIssue.status == status)
        page_size, page_offset = _page(limit, offset)
        return list(self.session.scalars(query.limit(page_size).offset(page_offset)).all())

    def claim_reconciliation_issue(self, issue_id: str, *, admin_id: str) -> bool:
        """Move an issue open -> resolved; only one caller can win."""
        now = datetime.now(timezone.utc)
        result = self.session.execute(
            update(ReconciliationIssue)
            .where(
                ReconciliationIssue.id == issue_id,
                ReconciliationIssue.status == ReconciliationIssueStatus.OPEN,
            )
            .values(status=ReconciliationIssueStatus.RESOLVED, resolved_by=admin_id, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

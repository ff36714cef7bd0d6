from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from config import INITIAL_CREDITS_AMOUNT
from observability import get_logger, log_event

from .exceptions import InsufficientCreditsError, UserNotFoundError, ValidationError
from .models import CreditTransaction, CreditTransactionType, User
from .repository import _as_utc_aware, _page

_LOGGER = get_logger("payledger.ledger")


def _require_int(value: Any, *, name: str) -> int:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


def _require_positive(value: Any, *, name: str = "amount") -> int:
    amount = _require_int(value, name=name)
    if amount <= 0:
        raise ValidationError(f"{name} must be positive")
    return amount


@dataclass(frozen=True)
class LedgerEntry:
    new_balance: int
    transaction: CreditTransaction

    def to_dict(self) -> dict[str, Any]:
        return {"newBalance": self.new_balance, "transactionId": self.transaction.id}


class CreditLedger:
    """
    Sole writer of `User.credits` and `CreditTransaction`.

    Each mutation is one savepoint holding a single guarded UPDATE of the user
    row (balance, sequence and, for consumes, the sufficiency check) followed
    by the ledger insert carrying the resulting balance. Concurrent writers
    serialize on that row, so no balance is ever read and written back.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _load_user(self, user_id: str) -> Optional[User]:
        query = select(User).where(User.id == user_id).execution_options(populate_existing=True)
        return self.session.scalar(query)

    def _apply(
        self,
        *,
        user_id: str,
        delta: int,
        tx_type: CreditTransactionType,
        require_funds: bool,
        description: str,
        order_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        spent_cents: int = 0,
    ) -> LedgerEntry:
        key = str(user_id or "").strip()
        if not key:
            raise ValidationError("user_id is required")

        guard = [User.id == key]
        if require_funds and delta < 0:
            guard.append(User.credits >= -delta)
        now = datetime.now(timezone.utc)
        with self.session.begin_nested():
            result = self.session.execute(
                update(User)
                .where(*guard)
                .values(
                    credits=User.credits + delta,
                    ledger_seq=User.ledger_seq + 1,
                    total_spent_cents=User.total_spent_cents + int(spent_cents),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) != 1:
                user = self._load_user(key)
                if user is None:
                    raise UserNotFoundError(f"user not found: {key}")
                log_event(
                    _LOGGER,
                    logging.INFO,
                    "ledger.insufficient_credits",
                    user_id=key,
                    balance=int(user.credits),
                    required=-delta,
                )
                raise InsufficientCreditsError(balance=int(user.credits), required=-delta)

            user = self._load_user(key)
            entry = CreditTransaction(
                user_id=key,
                sequence=int(user.ledger_seq),
                type=tx_type,
                amount=delta,
                balance=int(user.credits),
                order_id=order_id,
                description=description or "",
                metadata_json=dict(metadata) if metadata else None,
                created_at=now,
            )
            self.session.add(entry)
            self.session.flush()

        log_event(
            _LOGGER,
            logging.INFO,
            f"ledger.{tx_type.value}",
            user_id=key,
            amount=delta,
            balance=entry.balance,
            sequence=entry.sequence,
            order_id=order_id,
        )
        return LedgerEntry(new_balance=entry.balance, transaction=entry)

    def recharge_credits(
        self,
        user_id: str,
        amount: int,
        *,
        order_id: Optional[str] = None,
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
        spent_cents: int = 0,
    ) -> LedgerEntry:
        return self._apply(
            user_id=user_id,
            delta=_require_positive(amount),
            tx_type=CreditTransactionType.RECHARGE,
            require_funds=False,
            description=description,
            order_id=order_id,
            metadata=metadata,
            spent_cents=max(0, int(spent_cents)),
        )

    def consume_credits(
        self,
        user_id: str,
        amount: int,
        *,
        description: str = "",
        order_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerEntry:
        return self._apply(
            user_id=user_id,
            delta=-_require_positive(amount),
            tx_type=CreditTransactionType.CONSUME,
            require_funds=True,
            description=description,
            order_id=order_id,
            metadata=metadata,
        )

    def refund_credits(
        self,
        user_id: str,
        amount: int,
        *,
        order_id: Optional[str] = None,
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerEntry:
        return self._apply(
            user_id=user_id,
            delta=_require_positive(amount),
            tx_type=CreditTransactionType.REFUND,
            require_funds=False,
            description=description,
            order_id=order_id,
            metadata=metadata,
        )

    def adjust_credits(self, user_id: str, amount: int, *, admin_id: str, reason: str) -> LedgerEntry:
        delta = _require_int(amount, name="amount")
        if delta == 0:
            raise ValidationError("amount must not be zero")
        admin = str(admin_id or "").strip()
        note = str(reason or "").strip()
        if not admin:
            raise ValidationError("admin_id is required")
        if not note:
            raise ValidationError("reason is required")
        user = self._load_user(str(user_id or "").strip())
        if user is None:
            raise UserNotFoundError(f"user not found: {user_id}")
        return self._apply(
            user_id=user.id,
            delta=delta,
            tx_type=CreditTransactionType.RECHARGE if delta > 0 else CreditTransactionType.CONSUME,
            require_funds=True,
            description=f"admin adjust: {note}",
            metadata={
                "admin_id": admin,
                "adjust_type": "increase" if delta > 0 else "decrease",
                "original_balance": int(user.credits),
            },
        )

    def record_spend(self, user_id: str, amount_cents: int) -> None:
        """Count a paid purchase that grants no credits towards the lifetime spend."""
        cents = _require_int(amount_cents, name="amount_cents")
        if cents <= 0:
            return
        result = self.session.execute(
            update(User)
            .where(User.id == str(user_id or "").strip())
            .values(total_spent_cents=User.total_spent_cents + cents, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise UserNotFoundError(f"user not found: {user_id}")

    def grant_initial_credits(self, user_id: str, amount: Optional[int] = None) -> Optional[LedgerEntry]:
        grant = INITIAL_CREDITS_AMOUNT if amount is None else amount
        if not grant:
            return None
        return self.recharge_credits(
            user_id,
            grant,
            description="initial credits",
            metadata={"source": "initial_grant"},
        )

    def get_user_credits(self, user_id: str) -> dict[str, int]:
        user = self._load_user(str(user_id or "").strip())
        if user is None:
            raise UserNotFoundError(f"user not found: {user_id}")
        return {"credits": int(user.credits), "total_spent_cents": int(user.total_spent_cents)}

    def has_enough_credits(self, user_id: str, amount: int) -> bool:
        return self.get_user_credits(user_id)["credits"] >= _require_positive(amount)

    def get_credit_transactions(
        self,
        user_id: str,
        *,
        tx_type: Optional[CreditTransactionType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[CreditTransaction], int]:
        return self.get_all_credit_transactions(user_id=user_id, tx_type=tx_type, limit=limit, offset=offset)

    def get_all_credit_transactions(
        self,
        *,
        user_id: Optional[str] = None,
        tx_type: Optional[CreditTransactionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[CreditTransaction], int]:
        conditions: list[Any] = []
        if user_id:
            conditions.append(CreditTransaction.user_id == str(user_id).strip())
        if tx_type is not None:
            conditions.append(CreditTransaction.type == tx_type)
        if start:
            conditions.append(CreditTransaction.created_at >= _as_utc_aware(start))
        if end:
            conditions.append(CreditTransaction.created_at < _as_utc_aware(end))
        total = self.session.scalar(select(func.count()).select_from(CreditTransaction).where(*conditions))
        page_size, page_offset = _page(limit, offset)
        query = (
            select(CreditTransaction)
            .where(*conditions)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.sequence.desc())
            .limit(page_size)
            .offset(page_offset)
        )
        return list(self.session.scalars(query).all()), int(total or 0)

    def _sums_by_type(self, user_id: Optional[str] = None) -> dict[str, int]:
        query = select(CreditTransaction.type, func.coalesce(func.sum(CreditTransaction.amount), 0)).group_by(
            CreditTransaction.type
        )
        if user_id:
            query = query.where(CreditTransaction.user_id == user_id)
        sums = {item.value: 0 for item in CreditTransactionType}
        for tx_type, total in self.session.execute(query).all():
            sums[tx_type.value] = int(total or 0)
        return sums

    def get_credit_stats(self, user_id: str) -> dict[str, int]:
        info = self.get_user_credits(user_id)
        sums = self._sums_by_type(str(user_id).strip())
        return {
            "credits": info["credits"],
            "total_recharged": sums["recharge"],
            "total_consumed": -sums["consume"],
            "total_refunded": sums["refund"],
        }

    def get_credit_system_stats(self) -> dict[str, int]:
        users, outstanding = self.session.execute(
            select(func.count(), func.coalesce(func.sum(User.credits), 0)).select_from(User)
        ).one()
        transactions = self.session.scalar(select(func.count()).select_from(CreditTransaction))
        sums = self._sums_by_type()
        return {
            "total_users": int(users or 0),
            "total_credits_outstanding": int(outstanding or 0),
            "total_transactions": int(transactions or 0),
            "total_recharged": sums["recharge"],
            "total_consumed": -sums["consume"],
            "total_refunded": sums["refund"],
        }

    def verify_ledger(self, user_id: str) -> list[str]:
        """Walk a user's entries in sequence order; returns the broken links (empty when consistent)."""
        user = self._load_user(str(user_id or "").strip())
        if user is None:
            raise UserNotFoundError(f"user not found: {user_id}")
        entries = self.session.scalars(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user.id)
            .order_by(CreditTransaction.sequence.asc())
        ).all()
        problems: list[str] = []
        running = 0
        for expected_seq, entry in enumerate(entries, start=1):
            if entry.sequence != expected_seq:
                problems.append(f"sequence gap: expected {expected_seq}, found {entry.sequence}")
            if entry.balance != running + entry.amount:
                problems.append(
                    f"entry {entry.sequence}: balance {entry.balance} != {running} + {entry.amount}"
                )
            running = entry.balance
        if int(user.credits) != running:
            problems.append(f"user credits {user.credits} != last balance {running}")
        return problems

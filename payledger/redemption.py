from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from observability import get_logger, log_event

from .exceptions import InvalidCodeError, ValidationError
from .ledger import CreditLedger, _require_positive
from .models import RedemptionCode, RedemptionRecord
from .repository import OrderStore, _as_utc_aware, _page

_LOGGER = get_logger("payledger.redemption")

# No 0/O, 1/I/L: codes are typed in by hand.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
MAX_BATCH_SIZE = 1000
_GENERATE_ATTEMPTS = 5
_UNSET: Any = object()


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(int(length)))


def normalize_code(code: str) -> str:
    return str(code or "").strip().upper()


@dataclass(frozen=True)
class RedemptionResult:
    credit_amount: int
    new_balance: int
    record: RedemptionRecord

    def to_dict(self) -> dict[str, Any]:
        return {"creditAmount": self.credit_amount, "newBalance": self.new_balance, "recordId": self.record.id}


class RedemptionService:
    def __init__(self, session: Session, ledger: Optional[CreditLedger] = None) -> None:
        self.session = session
        self.ledger = ledger or CreditLedger(session)

    # admin side

    def _validate_terms(self, *, credit_amount: int, max_uses: int, expires_at: Optional[datetime]) -> None:
        _require_positive(credit_amount, name="credit_amount")
        _require_positive(max_uses, name="max_uses")
        if expires_at is not None and _as_utc_aware(expires_at) <= datetime.now(timezone.utc):
            raise ValidationError("expires_at must be in the future")

    def _insert_code(self, code: RedemptionCode) -> bool:
        try:
            with self.session.begin_nested():
                self.session.add(code)
                self.session.flush()
        except IntegrityError:
            return False
        return True

    def create_code(
        self,
        *,
        credit_amount: int,
        created_by: str,
        max_uses: int = 1,
        expires_at: Optional[datetime] = None,
        description: Optional[str] = None,
        code: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> RedemptionCode:
        self._validate_terms(credit_amount=credit_amount, max_uses=max_uses, expires_at=expires_at)
        custom = normalize_code(code or "")
        candidates = [custom] if custom else [generate_code() for _ in range(_GENERATE_ATTEMPTS)]
        for candidate in candidates:
            row = RedemptionCode(
                code=candidate,
                credit_amount=credit_amount,
                max_uses=max_uses,
                used_count=0,
                is_active=True,
                expires_at=_as_utc_aware(expires_at) if expires_at else None,
                description=description,
                created_by=str(created_by or "").strip() or "admin",
                batch_id=batch_id,
            )
            if self._insert_code(row):
                log_event(
                    _LOGGER,
                    logging.INFO,
                    "redemption.code.created",
                    code_id=row.id,
                    credit_amount=credit_amount,
                    max_uses=max_uses,
                    batch_id=batch_id,
                )
                return row
        if custom:
            raise ValidationError(f"redemption code already exists: {custom}")
        raise ValidationError("could not generate a unique redemption code")

    def batch_create_codes(
        self,
        *,
        count: int,
        credit_amount: int,
        created_by: str,
        max_uses: int = 1,
        expires_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> tuple[str, list[RedemptionCode]]:
        total = _require_positive(count, name="count")
        if total > MAX_BATCH_SIZE:
            raise ValidationError(f"count must be at most {MAX_BATCH_SIZE}")
        self._validate_terms(credit_amount=credit_amount, max_uses=max_uses, expires_at=expires_at)
        batch_id = str(uuid.uuid4())
        codes = [
            self.create_code(
                credit_amount=credit_amount,
                created_by=created_by,
                max_uses=max_uses,
                expires_at=expires_at,
                description=description,
                batch_id=batch_id,
            )
            for _ in range(total)
        ]
        return batch_id, codes

    def list_codes(
        self,
        *,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        batch_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[RedemptionCode], int]:
        conditions: list[Any] = []
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(or_(RedemptionCode.code.ilike(pattern), RedemptionCode.description.ilike(pattern)))
        if is_active is not None:
            conditions.append(RedemptionCode.is_active.is_(bool(is_active)))
        if batch_id:
            conditions.append(RedemptionCode.batch_id == batch_id)
        total = self.session.scalar(select(func.count()).select_from(RedemptionCode).where(*conditions))
        page_size, page_offset = _page(limit, offset)
        query = (
            select(RedemptionCode)
            .where(*conditions)
            .order_by(RedemptionCode.created_at.desc())
            .limit(page_size)
            .offset(page_offset)
        )
        return list(self.session.scalars(query).all()), int(total or 0)

    def get_code(self, code_id: str) -> Optional[RedemptionCode]:
        query = (
            select(RedemptionCode)
            .options(selectinload(RedemptionCode.records))
            .where(RedemptionCode.id == str(code_id or "").strip())
        )
        return self.session.scalar(query)

    def get_code_by_value(self, code: str) -> Optional[RedemptionCode]:
        query = (
            select(RedemptionCode)
            .where(RedemptionCode.code == normalize_code(code))
            .execution_options(populate_existing=True)
        )
        return self.session.scalar(query)

    def update_code(
        self,
        code_id: str,
        *,
        is_active: Optional[bool] = None,
        description: Any = _UNSET,
        max_uses: Optional[int] = None,
        expires_at: Any = _UNSET,
    ) -> RedemptionCode:
        row = self.get_code(code_id)
        if row is None:
            raise ValidationError(f"redemption code not found: {code_id}")
        values: dict[str, Any] = {}
        if is_active is not None:
            values["is_active"] = bool(is_active)
        if description is not _UNSET:
            values["description"] = description
        if expires_at is not _UNSET:
            values["expires_at"] = _as_utc_aware(expires_at) if expires_at else None
        guard = [RedemptionCode.id == row.id]
        if max_uses is not None:
            values["max_uses"] = _require_positive(max_uses, name="max_uses")
            # Checked in the statement so a concurrent redemption cannot slip under it.
            guard.append(RedemptionCode.used_count <= values["max_uses"])
        if not values:
            return row
        values["updated_at"] = datetime.now(timezone.utc)
        result = self.session.execute(
            update(RedemptionCode).where(*guard).values(**values).execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise ValidationError("max_uses cannot be lower than used_count")
        self.session.refresh(row)
        log_event(_LOGGER, logging.INFO, "redemption.code.updated", code_id=row.id, fields=sorted(values))
        return row

    def get_records(
        self,
        *,
        code_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[RedemptionRecord], int]:
        conditions: list[Any] = []
        if code_id:
            conditions.append(RedemptionRecord.code_id == code_id)
        if user_id:
            conditions.append(RedemptionRecord.user_id == user_id)
        total = self.session.scalar(select(func.count()).select_from(RedemptionRecord).where(*conditions))
        page_size, page_offset = _page(limit, offset)
        query = (
            select(RedemptionRecord)
            .where(*conditions)
            .order_by(RedemptionRecord.created_at.desc())
            .limit(page_size)
            .offset(page_offset)
        )
        return list(self.session.scalars(query).all()), int(total or 0)

    def get_stats(self) -> dict[str, int]:
        now = datetime.now(timezone.utc)
        total_codes, active_codes, total_uses = self.session.execute(
            select(
                func.count(),
                func.coalesce(func.sum(case((RedemptionCode.is_active.is_(True), 1), else_=0)), 0),
                func.coalesce(func.sum(RedemptionCode.used_count), 0),
            ).select_from(RedemptionCode)
        ).one()
        exhausted = self.session.scalar(
            select(func.count()).select_from(RedemptionCode).where(RedemptionCode.used_count >= RedemptionCode.max_uses)
        )
        expired = self.session.scalar(
            select(func.count()).select_from(RedemptionCode).where(RedemptionCode.expires_at <= now)
        )
        credits_granted = self.session.scalar(select(func.coalesce(func.sum(RedemptionRecord.credit_amount), 0)))
        return {
            "total_codes": int(total_codes or 0),
            "active_codes": int(active_codes or 0),
            "exhausted_codes": int(exhausted or 0),
            "expired_codes": int(expired or 0),
            "total_redemptions": int(total_uses or 0),
            "total_credits_granted": int(credits_granted or 0),
        }

    # user side

    def _diagnose(self, code: str, now: datetime) -> InvalidCodeError:
        row = self.get_code_by_value(code)
        if row is None:
            reason = "not_found"
        elif not row.is_active:
            reason = "inactive"
        elif row.expires_at is not None and _as_utc_aware(row.expires_at) <= now:
            reason = "expired"
        else:
            reason = "exhausted"
        return InvalidCodeError(reason, redemption_code=code)

    def redeem_code(self, code: str, user_id: str, *, user_identifier: str = "") -> RedemptionResult:
        """
        Exchange a code for credits.

        The use is claimed by one conditional UPDATE guarded on activity,
        expiry and remaining uses; the per-user record and the recharge follow
        in the same savepoint, so any failure releases the claimed use.
        """

        value = normalize_code(code)
        key = str(user_id or "").strip()
        if not key:
            raise ValidationError("user_id is required")
        if not value:
            raise InvalidCodeError("not_found")
        OrderStore(self.session).ensure_user(key)

        now = datetime.now(timezone.utc)
        try:
            with self.session.begin_nested():
                claimed = self.session.execute(
                    update(RedemptionCode)
                    .where(
                        RedemptionCode.code == value,
                        RedemptionCode.is_active.is_(True),
                        RedemptionCode.used_count < RedemptionCode.max_uses,
                        or_(RedemptionCode.expires_at.is_(None), RedemptionCode.expires_at > now),
                    )
                    .values(used_count=RedemptionCode.used_count + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if int(claimed.rowcount or 0) != 1:
                    raise self._diagnose(value, now)

                row = self.get_code_by_value(value)
                record = RedemptionRecord(
                    code_id=row.id,
                    code=row.code,
                    user_id=key,
                    user_identifier=str(user_identifier or key)[:128],
                    credit_amount=int(row.credit_amount),
                )
                self.session.add(record)
                self.session.flush()
                entry = self.ledger.recharge_credits(
                    key,
                    int(row.credit_amount),
                    description=f"redemption code: {row.code}",
                    metadata={"redemption_code_id": row.id, "redemption_code": row.code},
                )
        except IntegrityError as exc:
            # uq_redemption_records_code_user: this user already used the code.
            log_event(_LOGGER, logging.INFO, "redemption.rejected", code=value, user_id=key, reason="already_redeemed")
            raise InvalidCodeError("already_redeemed", redemption_code=value) from exc
        except InvalidCodeError as exc:
            log_event(_LOGGER, logging.INFO, "redemption.rejected", code=value, user_id=key, reason=exc.reason)
            raise

        log_event(
            _LOGGER,
            logging.INFO,
            "redemption.redeemed",
            code_id=row.id,
            user_id=key,
            credit_amount=int(row.credit_amount),
            balance=entry.new_balance,
        )
        return RedemptionResult(credit_amount=int(row.credit_amount), new_balance=entry.new_balance, record=record)

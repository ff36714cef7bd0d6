from __future__ import annotations

import hmac
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import (
    ADMIN_API_TOKEN,
    APP_VERSION,
    LOG_LEVEL,
    REDEEM_RATE_LIMIT_PER_MINUTE,
    STARTUP_INIT_DB,
)
from errors import explain_error
from observability import configure_json_logging, get_logger, log_event
from payledger.checkout import PurchaseRequest, create_payment_intent, purchase_with_credits
from payledger.db import SessionFactory, init_db, session_scope
from payledger.exceptions import (
    ConfigurationError,
    InvalidSignatureError,
    PayLedgerError,
    RateLimitedError,
    ReconciliationPartialFailure,
    ValidationError,
)
from payledger.ledger import CreditLedger
from payledger.models import (
    CREDIT_ORDER_TYPE,
    CreditTransaction,
    CreditTransactionType,
    Order,
    PaymentAuditLog,
    ReconciliationIssue,
    ReconciliationIssueStatus,
    RedemptionCode,
    RedemptionRecord,
)
from payledger.provider import PaymentProvider, get_payment_provider
from payledger.ratelimit import AttemptRateLimiter
from payledger.reconciliation import confirm_by_query, process_callback, resolve_reconciliation_issue
from payledger.redemption import RedemptionService
from payledger.repository import OrderStore

configure_json_logging(level=LOG_LEVEL)
APP_LOGGER = get_logger("payledger.api")

# None means the default engine from payledger.db; tests point this at their own database.
SESSION_FACTORY: Optional[SessionFactory] = None

REDEEM_LIMITER = AttemptRateLimiter(scope="redeem", limit_per_minute=REDEEM_RATE_LIMIT_PER_MINUTE)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if STARTUP_INIT_DB:
        init_db()
    yield


app = FastAPI(title="PayLedger", version=APP_VERSION, lifespan=lifespan)


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    response = await call_next(request)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=int((time.perf_counter() - started) * 1000),
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(PayLedgerError)
async def payledger_error_handler(request: Request, exc: PayLedgerError) -> JSONResponse:
    trace_id = _request_trace_id(request)
    explained = explain_error(exc.code) or {}
    log_event(
        APP_LOGGER,
        logging.ERROR if exc.status_code >= 500 else logging.INFO,
        "request.rejected",
        trace_id=trace_id,
        path=request.url.path,
        error_code=exc.code,
        error=exc.message,
    )
    headers = {"X-Trace-Id": trace_id}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    content = exc.to_dict()
    content["message"] = explained.get("message") or exc.message
    content["hint"] = explained.get("hint")
    content["trace_id"] = trace_id
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "UNEXPECTED_ERROR",
            "message": (explain_error("UNEXPECTED_ERROR") or {}).get("message", "internal server error"),
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def require_admin(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    x_admin_id: Optional[str] = Header(default=None, alias="X-Admin-Id"),
) -> str:
    """Returns the acting admin id; the shared token is compared in constant time."""
    expected = str(ADMIN_API_TOKEN or "")
    provided = str(x_admin_token or "")
    if not expected or not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=403, detail={"error_code": "NOT_ADMIN", "message": "admin token required"})
    return str(x_admin_id or "").strip() or "admin"


def _provider_for(name: Optional[str] = None) -> PaymentProvider:
    return get_payment_provider(name)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _page_payload(items: List[Dict[str, Any]], total: int, skip: int, take: int) -> Dict[str, Any]:
    return {"items": items, "total": total, "skip": skip, "take": take}


def _transaction_to_dict(tx: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "userId": tx.user_id,
        "sequence": tx.sequence,
        "type": tx.type.value,
        "amount": tx.amount,
        "balance": tx.balance,
        "orderId": tx.order_id,
        "description": tx.description,
        "metadata": tx.metadata_json,
        "createdAt": _iso(tx.created_at),
    }


def _order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "orderId": order.order_id,
        "identifier": order.identifier,
        "name": order.name,
        "orderType": order.order_type,
        "price": order.price_cents,
        "promotionPrice": order.promotion_price_cents,
        "transactionId": order.transaction_id,
        "promoter": order.promoter,
        "creditAmount": order.credit_amount,
        "provider": order.provider,
        "createdAt": _iso(order.created_at),
    }


def _code_to_dict(code: RedemptionCode) -> Dict[str, Any]:
    return {
        "id": code.id,
        "code": code.code,
        "creditAmount": code.credit_amount,
        "maxUses": code.max_uses,
        "usedCount": code.used_count,
        "isActive": code.is_active,
        "expiresAt": _iso(code.expires_at),
        "description": code.description,
        "createdBy": code.created_by,
        "batchId": code.batch_id,
        "createdAt": _iso(code.created_at),
    }


def _record_to_dict(record: RedemptionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "codeId": record.code_id,
        "code": record.code,
        "userId": record.user_id,
        "userIdentifier": record.user_identifier,
        "creditAmount": record.credit_amount,
        "createdAt": _iso(record.created_at),
    }


def _issue_to_dict(issue: ReconciliationIssue) -> Dict[str, Any]:
    return {
        "id": issue.id,
        "outTradeNo": issue.out_trade_no,
        "userId": issue.user_id,
        "amount": issue.amount_cents,
        "creditAmount": issue.credit_amount,
        "transactionId": issue.transaction_id,
        "status": issue.status.value,
        "error": issue.error,
        "resolvedBy": issue.resolved_by,
        "resolvedAt": _iso(issue.resolved_at),
        "createdAt": _iso(issue.created_at),
    }


def _audit_to_dict(log: PaymentAuditLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "occurredAt": _iso(log.occurred_at),
        "provider": log.provider,
        "source": log.source,
        "outTradeNo": log.out_trade_no,
        "transactionId": log.transaction_id,
        "signatureValid": log.signature_valid,
        "outcome": log.outcome,
        "detail": log.detail,
        "rawPayload": log.raw_payload,
    }


def _parse_tx_type(value: Optional[str]) -> Optional[CreditTransactionType]:
    normalized = str(value or "").strip().lower()
    if not normalized:
        return None
    try:
        return CreditTransactionType(normalized)
    except ValueError as exc:
        raise ValidationError(f"unknown transaction type: {value}") from exc


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateOrderRequest(_CamelModel):
    user_id: str = Field(..., alias="userId", min_length=1, max_length=64)
    amount: int = Field(..., gt=0, description="Amount in cents.")
    description: str = Field(..., min_length=1, max_length=127)
    out_trade_no: Optional[str] = Field(
        default=None,
        alias="outTradeNo",
        pattern=r"^[A-Za-z0-9_\-|*]{6,32}$",
        description="Merchant trade number; generated when omitted.",
    )
    order_type: str = Field(default=CREDIT_ORDER_TYPE, alias="orderType", max_length=64)
    name: Optional[str] = Field(default=None, max_length=120)
    credit_amount: Optional[int] = Field(default=None, alias="creditAmount", gt=0)
    promoter: Optional[str] = Field(default=None, max_length=64)
    promotion_price: int = Field(default=0, alias="promotionPrice", ge=0)
    payment_method: Literal["native", "jsapi"] = Field(default="native", alias="paymentMethod")
    openid: Optional[str] = None


class EnsureUserRequest(_CamelModel):
    user_id: str = Field(..., alias="userId", min_length=1, max_length=64)
    nickname: Optional[str] = Field(default=None, max_length=120)


class ConsumeRequest(_CamelModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    amount: int = Field(..., gt=0)
    description: str = Field(default="", max_length=255)
    order_id: Optional[str] = Field(default=None, alias="orderId")
    metadata: Optional[Dict[str, Any]] = None


class RedeemRequest(_CamelModel):
    code: str = Field(..., min_length=1, max_length=32)
    user_id: str = Field(..., alias="userId", min_length=1)
    user_identifier: Optional[str] = Field(default=None, alias="userIdentifier", max_length=128)


class CreditPurchaseRequest(_CamelModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    product_key: str = Field(..., alias="productKey", min_length=1, max_length=64)
    product_name: str = Field(default="", alias="productName", max_length=120)
    credit_cost: int = Field(..., alias="creditCost", gt=0)
    promoter: Optional[str] = Field(default=None, max_length=64)


class AdjustCreditsRequest(_CamelModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    amount: int = Field(..., description="Signed credit delta; must not be zero.")
    reason: str = Field(..., min_length=1, max_length=255)

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("amount must not be zero")
        return value


class CreateCodeRequest(_CamelModel):
    credit_amount: int = Field(..., alias="creditAmount", gt=0)
    max_uses: int = Field(default=1, alias="maxUses", ge=1)
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    description: Optional[str] = Field(default=None, max_length=255)
    code: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9]{4,32}$")


class BatchCreateCodesRequest(_CamelModel):
    count: int = Field(..., gt=0, le=1000)
    credit_amount: int = Field(..., alias="creditAmount", gt=0)
    max_uses: int = Field(default=1, alias="maxUses", ge=1)
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    description: Optional[str] = Field(default=None, max_length=255)


class UpdateCodeRequest(_CamelModel):
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    description: Optional[str] = Field(default=None, max_length=255)
    max_uses: Optional[int] = Field(default=None, alias="maxUses", ge=1)
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok", "version": APP_VERSION}


# payments


@app.post("/pay/create-order")
def create_order(payload: CreateOrderRequest) -> Dict[str, Any]:
    request = PurchaseRequest(
        user_id=payload.user_id,
        amount_cents=payload.amount,
        description=payload.description,
        out_trade_no=payload.out_trade_no,
        order_type=payload.order_type,
        name=payload.name or "",
        credit_amount=payload.credit_amount,
        promoter=payload.promoter,
        promotion_price_cents=payload.promotion_price,
        payment_method=payload.payment_method,
        payer_openid=payload.openid,
    )
    result = create_payment_intent(_provider_for(), request, session_factory=SESSION_FACTORY)
    return result.to_dict()


@app.get("/pay/query-order")
def query_order(out_trade_no: str = Query(..., alias="outTradeNo", min_length=1)) -> Dict[str, Any]:
    result = confirm_by_query(out_trade_no, provider_factory=_provider_for, session_factory=SESSION_FACTORY)
    return result.to_dict()


def _handle_callback(provider: PaymentProvider, headers: Dict[str, str], body: bytes) -> Response:
    try:
        process_callback(provider, headers, body, session_factory=SESSION_FACTORY)
    except InvalidSignatureError:
        ack = provider.acknowledge(success=False, message="invalid signature", status_code=403)
    except ValidationError as exc:
        ack = provider.acknowledge(success=False, message=exc.message, status_code=400)
    except ConfigurationError as exc:
        ack = provider.acknowledge(success=False, message=exc.message, status_code=503)
    except ReconciliationPartialFailure as exc:
        log_event(
            APP_LOGGER,
            logging.ERROR,
            "payment.callback.partial_failure",
            provider=provider.name,
            out_trade_no=exc.out_trade_no,
            issue_id=exc.issue_id,
            error=exc.error,
        )
        ack = provider.acknowledge(success=False, message="reconciliation required", status_code=500)
    else:
        ack = provider.acknowledge(success=True)
    return Response(content=ack.body, status_code=ack.status_code, media_type=ack.media_type)


@app.post("/pay/callback")
async def payment_callback(request: Request) -> Response:
    provider = _provider_for()
    body = await request.body()
    return await run_in_threadpool(_handle_callback, provider, dict(request.headers), body)


@app.post("/pay/aggregator-notify")
async def aggregator_notify(request: Request) -> Response:
    provider = _provider_for("aggregator")
    body = await request.body()
    return await run_in_threadpool(_handle_callback, provider, dict(request.headers), body)


# users and credits


@app.post("/users")
def ensure_user(payload: EnsureUserRequest) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        user, created = OrderStore(session).ensure_user(payload.user_id, nickname=payload.nickname)
        if created:
            CreditLedger(session).grant_initial_credits(user.id)
        info = CreditLedger(session).get_user_credits(user.id)
        return {"userId": user.id, "credits": info["credits"], "created": created}


@app.get("/credits/{user_id}")
def get_credits(user_id: str) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        ledger = CreditLedger(session)
        stats = ledger.get_credit_stats(user_id)
        info = ledger.get_user_credits(user_id)
    return {
        "userId": user_id,
        "credits": stats["credits"],
        "totalSpent": info["total_spent_cents"],
        "totalRecharged": stats["total_recharged"],
        "totalConsumed": stats["total_consumed"],
        "totalRefunded": stats["total_refunded"],
    }


@app.get("/credits/{user_id}/transactions")
def get_credit_transactions(
    user_id: str,
    tx_type: Optional[str] = Query(default=None, alias="type"),
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=20, ge=1, le=200),
) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        items, total = CreditLedger(session).get_credit_transactions(
            user_id,
            tx_type=_parse_tx_type(tx_type),
            limit=take,
            offset=skip,
        )
        return _page_payload([_transaction_to_dict(tx) for tx in items], total, skip, take)


@app.post("/credits/consume")
def consume_credits(payload: ConsumeRequest) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        entry = CreditLedger(session).consume_credits(
            payload.user_id,
            payload.amount,
            description=payload.description,
            order_id=payload.order_id,
            metadata=payload.metadata,
        )
        return entry.to_dict()


@app.post("/credits/redeem")
def redeem_code(payload: RedeemRequest) -> Dict[str, Any]:
    REDEEM_LIMITER.check(f"user:{payload.user_id.strip()}")
    with session_scope(SESSION_FACTORY) as session:
        result = RedemptionService(session).redeem_code(
            payload.code,
            payload.user_id,
            user_identifier=payload.user_identifier or "",
        )
        return result.to_dict()


@app.post("/credits/purchase")
def purchase_with_credit_balance(payload: CreditPurchaseRequest) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        order, entry = purchase_with_credits(
            session,
            user_id=payload.user_id,
            product_key=payload.product_key,
            product_name=payload.product_name,
            credit_cost=payload.credit_cost,
            promoter=payload.promoter,
        )
        return {"order": _order_to_dict(order), **entry.to_dict()}


@app.get("/orders")
def list_orders(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    order_type: Optional[str] = Query(default=None, alias="orderType"),
    search: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=50, ge=1, le=200),
) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        items, total = OrderStore(session).get_orders(
            user_id=user_id,
            order_type=order_type,
            search=search,
            start=start,
            end=end,
            limit=take,
            offset=skip,
        )
        return _page_payload([_order_to_dict(order) for order in items], total, skip, take)


# admin


@app.post("/admin/credits/adjust")
def admin_adjust_credits(payload: AdjustCreditsRequest, admin_id: str = Depends(require_admin)) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        entry = CreditLedger(session).adjust_credits(
            payload.user_id,
            payload.amount,
            admin_id=admin_id,
            reason=payload.reason,
        )
        return entry.to_dict()


@app.get("/admin/credit-transactions")
def admin_credit_transactions(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    tx_type: Optional[str] = Query(default=None, alias="type"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=50, ge=1, le=200),
    _: str = Depends(require_admin),
) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        items, total = CreditLedger(session).get_all_credit_transactions(
            user_id=user_id,
            tx_type=_parse_tx_type(tx_type),
            start=start,
            end=end,
            limit=take,
            offset=skip,
        )
        return _page_payload([_transaction_to_dict(tx) for tx in items], total, skip, take)


@app.get("/admin/stats")
def admin_stats(_: str = Depends(require_admin)) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        return {
            "orders": OrderStore(session).get_order_stats().to_dict(),
            "credits": CreditLedger(session).get_credit_system_stats(),
            "redemption": RedemptionService(session).get_stats(),
        }


@app.post("/admin/redemption-codes")
def admin_create_code(payload: CreateCodeRequest, admin_id: str = Depends(require_admin)) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        code = RedemptionService(session).create_code(
            credit_amount=payload.credit_amount,
            created_by=admin_id,
            max_uses=payload.max_uses,
            expires_at=payload.expires_at,
            description=payload.description,
            code=payload.code,
        )
        return _code_to_dict(code)


@app.post("/admin/redemption-codes/batch")
def admin_batch_create_codes(
    payload: BatchCreateCodesRequest,
    admin_id: str = Depends(require_admin),
) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        batch_id, codes = RedemptionService(session).batch_create_codes(
            count=payload.count,
            credit_amount=payload.credit_amount,
            created_by=admin_id,
            max_uses=payload.max_uses,
            expires_at=payload.expires_at,
            description=payload.description,
        )
        return {"batchId": batch_id, "codes": [_code_to_dict(code) for code in codes]}


@app.get("/admin/redemption-codes")
def admin_list_codes(
    search: Optional[str] = None,
    is_active: Optional[bool] = Query(default=None, alias="isActive"),
    batch_id: Optional[str] = Query(default=None, alias="batchId"),
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=50, ge=1, le=200),
    _: str = Depends(require_admin),
) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        items, total = RedemptionService(session).list_codes(
            search=search,
            is_active=is_active,
            batch_id=batch_id,
            limit=take,
            offset=skip,
        )
        return _page_payload([_code_to_dict(code) for code in items], total, skip, take)


@app.get("/admin/redemption-codes/{code_id}")
def admin_get_code(code_id: str, _: str = Depends(require_admin)) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        code = RedemptionService(session).get_code(code_id)
        if code is None:
            raise ValidationError(f"redemption code not found: {code_id}")
        payload = _code_to_dict(code)
        payload["records"] = [_record_to_dict(record) for record in code.records]
        return payload


@app.patch("/admin/redemption-codes/{code_id}")
def admin_update_code(
    code_id: str,
    payload: UpdateCodeRequest,
    _: str = Depends(require_admin),
) -> Dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    with session_scope(SESSION_FACTORY) as session:
        kwargs: Dict[str, Any] = {
            "is_active": changes.get("is_active"),
            "max_uses": changes.get("max_uses"),
        }
        if "description" in changes:
            kwargs["description"] = changes["description"]
        if "expires_at" in changes:
            kwargs["expires_at"] = changes["expires_at"]
        code = RedemptionService(session).update_code(code_id, **kwargs)
        return _code_to_dict(code)


@app.delete("/admin/orders/{order_id}")
def admin_delete_order(order_id: str, admin_id: str = Depends(require_admin)) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        deleted = OrderStore(session).delete_order(order_id)
    if not deleted:
        raise ValidationError(f"order not found: {order_id}")
    log_event(APP_LOGGER, logging.WARNING, "admin.order_deleted", order_id=order_id, admin_id=admin_id)
    return {"deleted": True, "orderId": order_id}


@app.get("/admin/reconciliation-issues")
def admin_list_issues(
    status: Optional[ReconciliationIssueStatus] = None,
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=50, ge=1, le=200),
    _: str = Depends(require_admin),
) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        issues = OrderStore(session).list_reconciliation_issues(status=status, limit=take, offset=skip)
        return {"items": [_issue_to_dict(issue) for issue in issues], "skip": skip, "take": take}


@app.post("/admin/reconciliation-issues/{issue_id}/resolve")
def admin_resolve_issue(issue_id: str, admin_id: str = Depends(require_admin)) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        outcome = resolve_reconciliation_issue(session, issue_id, admin_id=admin_id)
    return outcome.to_dict()


@app.get("/admin/audit-logs")
def admin_audit_logs(
    provider: Optional[str] = None,
    out_trade_no: Optional[str] = Query(default=None, alias="outTradeNo"),
    outcome: Optional[str] = None,
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=50, ge=1, le=200),
    _: str = Depends(require_admin),
) -> Dict[str, Any]:
    with session_scope(SESSION_FACTORY) as session:
        logs = OrderStore(session).list_audit_logs(
            provider=provider,
            out_trade_no=out_trade_no,
            outcome=outcome,
            limit=take,
            offset=skip,
        )
        return {"items": [_audit_to_dict(log) for log in logs], "skip": skip, "take": take}

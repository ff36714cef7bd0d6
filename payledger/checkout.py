from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from sqlalchemy.orm import Session

from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .exceptions import GatewayError, ValidationError
from .ledger import CreditLedger, LedgerEntry, _require_positive
from .models import CREDIT_ORDER_TYPE, Order, PayOrderStatus
from .provider import CheckoutSession, PaymentProvider
from .repository import OrderStore

_LOGGER = get_logger("payledger.checkout")

# WeChat Pay limits `description` to 127 characters.
MAX_DESCRIPTION_LENGTH = 127
CREDITS_PROVIDER = "credits"
PaymentMethod = Literal["native", "jsapi"]


def new_out_trade_no(prefix: str = "PL") -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{prefix}{stamp}{secrets.token_hex(4).upper()}"


@dataclass(frozen=True)
class PurchaseRequest:
    user_id: str
    amount_cents: int
    description: str
    out_trade_no: Optional[str] = None
    order_type: str = CREDIT_ORDER_TYPE
    name: str = ""
    credit_amount: Optional[int] = None
    promoter: Optional[str] = None
    promotion_price_cents: int = 0
    payment_method: PaymentMethod = "native"
    payer_openid: Optional[str] = None

    def validated(self) -> "PurchaseRequest":
        user_id = str(self.user_id or "").strip()
        if not user_id:
            raise ValidationError("userId is required")
        _require_positive(self.amount_cents, name="amount")
        description = str(self.description or "").strip()
        if not description:
            raise ValidationError("description is required")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"description must be at most {MAX_DESCRIPTION_LENGTH} characters")
        order_type = str(self.order_type or "").strip() or CREDIT_ORDER_TYPE
        if order_type == CREDIT_ORDER_TYPE:
            _require_positive(self.credit_amount, name="creditAmount")
        if self.payment_method not in ("native", "jsapi"):
            raise ValidationError(f"unsupported payment method: {self.payment_method}")
        if self.payment_method == "jsapi" and not str(self.payer_openid or "").strip():
            raise ValidationError("openid is required for JSAPI payment")
        return PurchaseRequest(
            user_id=user_id,
            amount_cents=self.amount_cents,
            description=description,
            out_trade_no=str(self.out_trade_no or "").strip() or new_out_trade_no(),
            order_type=order_type,
            name=str(self.name or "").strip() or description,
            credit_amount=self.credit_amount,
            promoter=str(self.promoter or "").strip() or None,
            promotion_price_cents=max(0, int(self.promotion_price_cents or 0)),
            payment_method=self.payment_method,
            payer_openid=str(self.payer_openid or "").strip() or None,
        )


@dataclass(frozen=True)
class CheckoutResult:
    out_trade_no: str
    provider: str
    status: str
    qr_code_url: Optional[str] = None
    redirect_url: Optional[str] = None
    jsapi_params: Optional[Dict[str, str]] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"outTradeNo": self.out_trade_no, "provider": self.provider, "status": self.status}
        if self.qr_code_url:
            payload["qrCodeUrl"] = self.qr_code_url
        if self.redirect_url:
            payload["redirectUrl"] = self.redirect_url
        if self.jsapi_params:
            payload["jsapiParams"] = dict(self.jsapi_params)
        return payload


def create_payment_intent(
    provider: PaymentProvider,
    request: PurchaseRequest,
    *,
    session_factory: Optional[SessionFactory] = None,
) -> CheckoutResult:
    """
    Record a pending intent, then ask the provider for a QR code / JSAPI params.

    The provider call runs outside any database transaction. A retried
    request with the same outTradeNo returns the stored checkout instead of
    creating a second provider order.
    """

    purchase = request.validated()
    with session_scope(session_factory) as session:
        store = OrderStore(session)
        store.ensure_user(purchase.user_id)
        sign = None
        if provider.signs_intents:
            sign = provider.intent_sign(
                out_trade_no=purchase.out_trade_no,
                amount_cents=purchase.amount_cents,
                description=purchase.description,
            )
        intent, created = store.create_pay_order(
            out_trade_no=purchase.out_trade_no,
            user_id=purchase.user_id,
            provider=provider.name,
            amount_cents=purchase.amount_cents,
            description=purchase.description,
            order_type=purchase.order_type,
            name=purchase.name,
            credit_amount=purchase.credit_amount,
            promoter=purchase.promoter,
            promotion_price_cents=purchase.promotion_price_cents,
            sign=sign,
        )
        if intent.provider != provider.name:
            raise ValidationError(f"outTradeNo already used with provider {intent.provider}")
        existing_status = intent.status
        existing_url = intent.checkout_url
        # The gateway must see the stored terms; a signed intent only matches those.
        description = intent.description

    if not created and (existing_status == PayOrderStatus.SUCCESS or (existing_url and purchase.payment_method == "native")):
        return CheckoutResult(
            out_trade_no=purchase.out_trade_no,
            provider=provider.name,
            status=existing_status.value,
            qr_code_url=existing_url,
        )

    try:
        if purchase.payment_method == "jsapi":
            checkout: CheckoutSession = provider.create_jsapi_order(
                description=description,
                out_trade_no=purchase.out_trade_no,
                amount_cents=purchase.amount_cents,
                payer_openid=purchase.payer_openid or "",
            )
        else:
            checkout = provider.create_native_order(
                description=description,
                out_trade_no=purchase.out_trade_no,
                amount_cents=purchase.amount_cents,
            )
    except GatewayError as exc:
        log_event(
            _LOGGER,
            logging.WARNING,
            "payment.intent.gateway_failed",
            out_trade_no=purchase.out_trade_no,
            provider=provider.name,
            provider_code=exc.provider_code,
            provider_message=exc.provider_message,
        )
        raise

    with session_scope(session_factory) as session:
        OrderStore(session).attach_checkout_url(purchase.out_trade_no, checkout.qr_code_url or checkout.redirect_url)

    log_event(
        _LOGGER,
        logging.INFO,
        "payment.intent.created",
        out_trade_no=purchase.out_trade_no,
        provider=provider.name,
        user_id=purchase.user_id,
        amount_cents=purchase.amount_cents,
        order_type=purchase.order_type,
        payment_method=purchase.payment_method,
    )
    return CheckoutResult(
        out_trade_no=purchase.out_trade_no,
        provider=provider.name,
        status=PayOrderStatus.PENDING.value,
        qr_code_url=checkout.qr_code_url,
        redirect_url=checkout.redirect_url,
        jsapi_params=checkout.jsapi_params,
    )


def purchase_with_credits(
    session: Session,
    *,
    user_id: str,
    product_key: str,
    product_name: str,
    credit_cost: int,
    promoter: Optional[str] = None,
) -> tuple[Order, LedgerEntry]:
    """Spend credits on a product: one consume entry and one Order, committed together."""

    key = str(product_key or "").strip()
    if not key or key == CREDIT_ORDER_TYPE:
        raise ValidationError("product_key must name a product")
    cost = _require_positive(credit_cost, name="credit_cost")
    order_id = new_out_trade_no("CR")
    store = OrderStore(session)
    with session.begin_nested():
        entry = CreditLedger(session).consume_credits(
            user_id,
            cost,
            description=f"purchase: {product_name or key}",
            order_id=order_id,
            metadata={"product_key": key},
        )
        order = store.create_order(
            order_id=order_id,
            identifier=str(user_id).strip(),
            name=str(product_name or key).strip(),
            order_type=key,
            price_cents=0,
            transaction_id=f"CREDITS_{order_id}",
            provider=CREDITS_PROVIDER,
            promoter=str(promoter or "").strip() or None,
            credit_amount=cost,
        )
    log_event(
        _LOGGER,
        logging.INFO,
        "ledger.purchase_with_credits",
        user_id=order.identifier,
        order_id=order_id,
        product_key=key,
        credit_cost=cost,
        balance=entry.new_balance,
    )
    return order, entry

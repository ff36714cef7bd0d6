from __future__ import annotations

import abc
import datetime as dt
import hashlib
import hmac
import json
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Literal, Mapping, Optional
from urllib.parse import parse_qsl, quote

import httpx

from config import (
    AGGREGATOR_API_BASE_URL,
    AGGREGATOR_API_KEY,
    AGGREGATOR_MCH_ID,
    AGGREGATOR_NOTIFY_URL,
    PAYMENT_HTTP_TIMEOUT_SECONDS,
    PAYMENT_PROVIDER,
    PAYMENT_WEBHOOK_SECRET,
    WECHATPAY_API_BASE_URL,
    WECHATPAY_APIV3_KEY,
    WECHATPAY_APPID,
    WECHATPAY_CERT_SERIAL,
    WECHATPAY_MCHID,
    WECHATPAY_NOTIFY_MAX_SKEW_SECONDS,
    WECHATPAY_NOTIFY_URL,
    WECHATPAY_PLATFORM_CERT_PATH,
    WECHATPAY_PLATFORM_CERT_PEM,
    WECHATPAY_PLATFORM_CERT_SERIAL,
    WECHATPAY_PLATFORM_CERTS_JSON,
    WECHATPAY_PRIVATE_KEY_PATH,
    WECHATPAY_PRIVATE_KEY_PEM,
)

from .aggregator import format_yuan, parse_yuan, pay_sign
from .exceptions import ConfigurationError, GatewayError, InvalidSignatureError, ValidationError
from .wechatpay import (
    build_authorization,
    build_jsapi_pay_params,
    decrypt_notification,
    load_pem,
    parse_platform_certs,
    verify_notify_signature,
)

ProviderName = Literal["mock", "wechatpay", "aggregator"]

TRADE_STATE_SUCCESS = "SUCCESS"
TRADE_STATE_NOTPAY = "NOTPAY"
CURRENCY = "CNY"


def _parse_time(value: Any) -> Optional[dt.datetime]:
    if value in {None, ""}:
        return None
    if isinstance(value, (int, float)):
        return dt.datetime.fromtimestamp(float(value), tz=dt.timezone.utc)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def _strict_int(value: Any, *, name: str) -> int:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer") from exc


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(key).lower(): str(value) for key, value in headers.items()}


@dataclass(frozen=True)
class CheckoutSession:
    """What the client needs to pay: a QR payload, a redirect, or JSAPI params."""

    provider: ProviderName
    out_trade_no: str
    qr_code_url: Optional[str] = None
    redirect_url: Optional[str] = None
    jsapi_params: Optional[Dict[str, str]] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderOrderStatus:
    out_trade_no: str
    trade_state: str
    transaction_id: Optional[str] = None
    success_time: Optional[dt.datetime] = None
    amount_cents: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.trade_state == TRADE_STATE_SUCCESS


@dataclass(frozen=True)
class PaymentEvidence:
    """
    Provider-neutral claim that an intent was paid.

    Built only after the provider's own authentication (RSA signature, HMAC)
    has been checked. `sign` carries the aggregator's per-intent signature,
    which can only be checked against the stored intent.
    """

    provider: ProviderName
    out_trade_no: str
    paid: bool
    transaction_id: Optional[str] = None
    amount_cents: Optional[int] = None
    paid_at: Optional[dt.datetime] = None
    sign: Optional[str] = None
    source: Literal["callback", "poll"] = "callback"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackAck:
    status_code: int
    body: str
    media_type: str


class PaymentProvider(abc.ABC):
    #: Intents carry a precomputed signature that callbacks must echo.
    signs_intents: bool = False
    #: The provider can be asked for an order's status.
    supports_query: bool = True

    @property
    @abc.abstractmethod
    def name(self) -> ProviderName:
        raise NotImplementedError

    def intent_sign(self, *, out_trade_no: str, amount_cents: int, description: str) -> Optional[str]:
        return None

    @abc.abstractmethod
    def create_native_order(self, *, description: str, out_trade_no: str, amount_cents: int) -> CheckoutSession:
        """Create a scan-to-pay order and return its QR payload."""

    @abc.abstractmethod
    def create_jsapi_order(
        self,
        *,
        description: str,
        out_trade_no: str,
        amount_cents: int,
        payer_openid: str,
    ) -> CheckoutSession:
        """Create an in-app order bound to `payer_openid`."""

    @abc.abstractmethod
    def query_order(self, out_trade_no: str) -> ProviderOrderStatus:
        raise NotImplementedError

    @abc.abstractmethod
    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> PaymentEvidence:
        """Authenticate a callback and normalize it. Raises InvalidSignatureError."""

    def acknowledge(self, *, success: bool, message: str = "", status_code: int = 200) -> CallbackAck:
        if success:
            return CallbackAck(200, json.dumps({"code": "SUCCESS", "message": "OK"}), "application/json")
        payload = {"code": "FAIL", "message": message or "FAIL"}
        return CallbackAck(status_code, json.dumps(payload, ensure_ascii=False), "application/json")


class _HttpProviderMixin:
    _client: Optional[httpx.Client]

    @contextmanager
    def _http_client(self) -> Iterator[httpx.Client]:
        if self._client is not None:
            yield self._client
            return
        with httpx.Client(timeout=PAYMENT_HTTP_TIMEOUT_SECONDS, trust_env=False) as client:
            yield client


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    HMAC-SHA256 hex digest of the raw body; accepts "<hex>" or "sha256=<hex>".
    """

    secret_key = str(secret or "").encode("utf-8")
    if not secret_key:
        return False
    provided = str(signature or "").strip()
    if provided.lower().startswith("sha256="):
        provided = provided.split("=", 1)[1].strip()
    if not provided:
        return False
    expected = hmac.new(secret_key, payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided)


class MockProvider(PaymentProvider):
    """Development provider: fake QR payloads and HMAC-signed JSON callbacks."""

    SIGNATURE_HEADER = "x-signature"

    def __init__(self, *, webhook_secret: Optional[str] = None) -> None:
        self.webhook_secret = PAYMENT_WEBHOOK_SECRET if webhook_secret is None else webhook_secret

    @property
    def name(self) -> ProviderName:
        return "mock"

    def create_native_order(self, *, description: str, out_trade_no: str, amount_cents: int) -> CheckoutSession:
        # Never a real payment URL.
        url = f"weixin://mock/pay?id={quote(out_trade_no, safe='')}"
        return CheckoutSession(provider="mock", out_trade_no=out_trade_no, qr_code_url=url)

    def create_jsapi_order(
        self,
        *,
        description: str,
        out_trade_no: str,
        amount_cents: int,
        payer_openid: str,
    ) -> CheckoutSession:
        params = {"appId": "mock", "package": f"prepay_id=mock_{out_trade_no}", "signType": "RSA", "paySign": "mock"}
        return CheckoutSession(provider="mock", out_trade_no=out_trade_no, jsapi_params=params)

    def query_order(self, out_trade_no: str) -> ProviderOrderStatus:
        return ProviderOrderStatus(out_trade_no=out_trade_no, trade_state=TRADE_STATE_NOTPAY)

    def sign_callback(self, body: bytes) -> str:
        if not self.webhook_secret:
            raise ConfigurationError("PAYMENT_WEBHOOK_SECRET is not configured")
        return hmac.new(self.webhook_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> PaymentEvidence:
        if not self.webhook_secret:
            raise ConfigurationError("PAYMENT_WEBHOOK_SECRET is not configured")
        signature = _lower_headers(headers).get(self.SIGNATURE_HEADER, "")
        if not verify_webhook_signature(body, signature, self.webhook_secret):
            raise InvalidSignatureError("mock callback signature mismatch")
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("callback body must be JSON") from exc
        if not isinstance(data, dict):
            raise ValidationError("callback body must be a JSON object")
        out_trade_no = str(data.get("out_trade_no") or "").strip()
        if not out_trade_no:
            raise ValidationError("out_trade_no is required")
        trade_state = str(data.get("trade_state") or TRADE_STATE_SUCCESS).strip().upper()
        return PaymentEvidence(
            provider="mock",
            out_trade_no=out_trade_no,
            paid=trade_state == TRADE_STATE_SUCCESS,
            transaction_id=str(data.get("transaction_id") or "").strip() or None,
            amount_cents=_strict_int(data.get("amount_cents"), name="amount_cents"),
            paid_at=_parse_time(data.get("paid_at")),
            raw=data,
        )


@dataclass(frozen=True)
class WechatPayCredentials:
    mchid: str
    appid: str
    serial_no: str
    private_key_pem: str
    notify_url: str
    api_v3_key: str
    platform_certs: Dict[str, str]
    api_base_url: str = "https://api.mch.weixin.qq.com"

    @classmethod
    def from_config(cls) -> "WechatPayCredentials":
        return cls(
            mchid=WECHATPAY_MCHID,
            appid=WECHATPAY_APPID,
            serial_no=WECHATPAY_CERT_SERIAL,
            private_key_pem=load_pem(pem_value=WECHATPAY_PRIVATE_KEY_PEM, pem_path=WECHATPAY_PRIVATE_KEY_PATH),
            notify_url=WECHATPAY_NOTIFY_URL,
            api_v3_key=WECHATPAY_APIV3_KEY,
            platform_certs=parse_platform_certs(
                certs_json=WECHATPAY_PLATFORM_CERTS_JSON,
                cert_serial=WECHATPAY_PLATFORM_CERT_SERIAL,
                cert_pem=WECHATPAY_PLATFORM_CERT_PEM,
                cert_path=WECHATPAY_PLATFORM_CERT_PATH,
            ),
            api_base_url=WECHATPAY_API_BASE_URL,
        )

    def require(self, *names: str) -> None:
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"wechatpay credentials missing: {', '.join(missing)}")


class WechatPayProvider(_HttpProviderMixin, PaymentProvider):
    NATIVE_PATH = "/v3/pay/transactions/native"
    JSAPI_PATH = "/v3/pay/transactions/jsapi"
    QUERY_PATH = "/v3/pay/transactions/out-trade-no/{out_trade_no}"

    def __init__(
        self,
        credentials: Optional[WechatPayCredentials] = None,
        *,
        client: Optional[httpx.Client] = None,
        max_clock_skew_seconds: int = WECHATPAY_NOTIFY_MAX_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credentials = credentials or WechatPayCredentials.from_config()
        self._client = client
        self.max_clock_skew_seconds = max_clock_skew_seconds
        self._clock = clock

    @property
    def name(self) -> ProviderName:
        return "wechatpay"

    def _request(self, method: str, path_with_query: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        creds = self.credentials
        creds.require("mchid", "serial_no", "private_key_pem")
        body = "" if payload is None else json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        headers = {
            "Authorization": build_authorization(
                mchid=creds.mchid,
                serial_no=creds.serial_no,
                private_key_pem=creds.private_key_pem,
                method=method,
                path_with_query=path_with_query,
                body=body,
            ),
            "Accept": "application/json",
        }
        if body:
            headers["Content-Type"] = "application/json"

        url = f"{creds.api_base_url.rstrip('/')}{path_with_query}"
        with self._http_client() as client:
            try:
                resp = client.request(method, url, content=body.encode("utf-8") if body else None, headers=headers)
            except httpx.HTTPError as exc:
                raise GatewayError(f"wechatpay request failed: {exc}") from exc

        data: Dict[str, Any] = {}
        if resp.content:
            try:
                parsed = resp.json()
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                data = parsed
        if resp.is_error:
            raise GatewayError(
                f"wechatpay rejected {method} {path_with_query.split('?', 1)[0]}: status={resp.status_code}",
                provider_code=str(data.get("code") or "") or None,
                provider_message=str(data.get("message") or "") or (resp.text or "")[:200] or None,
                http_status=resp.status_code,
            )
        return data

    def _order_payload(self, *, description: str, out_trade_no: str, amount_cents: int) -> Dict[str, Any]:
        self.credentials.require("appid", "notify_url")
        return {
            "appid": self.credentials.appid,
            "mchid": self.credentials.mchid,
            "description": description,
            "out_trade_no": out_trade_no,
            "notify_url": self.credentials.notify_url,
            "amount": {"total": int(amount_cents), "currency": CURRENCY},
        }

    def create_native_order(self, *, description: str, out_trade_no: str, amount_cents: int) -> CheckoutSession:
        payload = self._order_payload(description=description, out_trade_no=out_trade_no, amount_cents=amount_cents)
        data = self._request("POST", self.NATIVE_PATH, payload)
        code_url = str(data.get("code_url") or "").strip()
        if not code_url:
            raise GatewayError("wechatpay response is missing code_url")
        return CheckoutSession(provider="wechatpay", out_trade_no=out_trade_no, qr_code_url=code_url, raw=data)

    def create_jsapi_order(
        self,
        *,
        description: str,
        out_trade_no: str,
        amount_cents: int,
        payer_openid: str,
    ) -> CheckoutSession:
        openid = str(payer_openid or "").strip()
        if not openid:
            raise ValidationError("payer openid is required for JSAPI payment")
        payload = self._order_payload(description=description, out_trade_no=out_trade_no, amount_cents=amount_cents)
        payload["payer"] = {"openid": openid}
        data = self._request("POST", self.JSAPI_PATH, payload)
        prepay_id = str(data.get("prepay_id") or "").strip()
        if not prepay_id:
            raise GatewayError("wechatpay response is missing prepay_id")
        params = build_jsapi_pay_params(
            appid=self.credentials.appid,
            prepay_id=prepay_id,
            private_key_pem=self.credentials.private_key_pem,
        )
        return CheckoutSession(provider="wechatpay", out_trade_no=out_trade_no, jsapi_params=params, raw=data)

    def query_order(self, out_trade_no: str) -> ProviderOrderStatus:
        path = self.QUERY_PATH.format(out_trade_no=quote(out_trade_no, safe=""))
        data = self._request("GET", f"{path}?mchid={quote(self.credentials.mchid, safe='')}")
        amount = data.get("amount") if isinstance(data.get("amount"), dict) else {}
        total = amount.get("total")
        return ProviderOrderStatus(
            out_trade_no=str(data.get("out_trade_no") or out_trade_no),
            trade_state=str(data.get("trade_state") or "").strip().upper() or TRADE_STATE_NOTPAY,
            transaction_id=str(data.get("transaction_id") or "").strip() or None,
            success_time=_parse_time(data.get("success_time")),
            amount_cents=None if total is None else _strict_int(total, name="amount.total"),
            raw=data,
        )

    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> PaymentEvidence:
        creds = self.credentials
        creds.require("api_v3_key", "platform_certs")
        lowered = _lower_headers(headers)
        timestamp = lowered.get("wechatpay-timestamp", "")
        if not verify_notify_signature(
            timestamp=timestamp,
            nonce=lowered.get("wechatpay-nonce", ""),
            signature_b64=lowered.get("wechatpay-signature", ""),
            serial=lowered.get("wechatpay-serial", ""),
            body=body,
            platform_certs=creds.platform_certs,
        ):
            raise InvalidSignatureError("wechatpay callback signature mismatch")
        if self.max_clock_skew_seconds > 0:
            try:
                skew = abs(self._clock() - int(timestamp))
            except ValueError as exc:
                raise InvalidSignatureError("wechatpay callback timestamp is invalid") from exc
            if skew > self.max_clock_skew_seconds:
                raise InvalidSignatureError("wechatpay callback timestamp outside allowed window")

        try:
            envelope = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("callback body must be JSON") from exc
        resource = envelope.get("resource") if isinstance(envelope, dict) else None
        if not isinstance(resource, dict):
            raise ValidationError("callback resource is missing")

        transaction = decrypt_notification(api_v3_key=creds.api_v3_key, resource=resource)
        if str(transaction.get("mchid") or "") != creds.mchid:
            raise ValidationError("callback merchant id does not match")
        out_trade_no = str(transaction.get("out_trade_no") or "").strip()
        if not out_trade_no:
            raise ValidationError("out_trade_no is missing")
        amount = transaction.get("amount") if isinstance(transaction.get("amount"), dict) else {}
        total = amount.get("total")
        return PaymentEvidence(
            provider="wechatpay",
            out_trade_no=out_trade_no,
            paid=str(transaction.get("trade_state") or "").upper() == TRADE_STATE_SUCCESS,
            transaction_id=str(transaction.get("transaction_id") or "").strip() or None,
            amount_cents=None if total is None else _strict_int(total, name="amount.total"),
            paid_at=_parse_time(transaction.get("success_time")),
            raw={"event_type": envelope.get("event_type"), "id": envelope.get("id"), "transaction": transaction},
        )


@dataclass(frozen=True)
class AggregatorCredentials:
    mch_id: str
    api_key: str
    notify_url: str = ""
    api_base_url: str = "https://api.pay.yungouos.com"

    @classmethod
    def from_config(cls) -> "AggregatorCredentials":
        return cls(
            mch_id=AGGREGATOR_MCH_ID,
            api_key=AGGREGATOR_API_KEY,
            notify_url=AGGREGATOR_NOTIFY_URL,
            api_base_url=AGGREGATOR_API_BASE_URL,
        )

    def require(self) -> None:
        missing = [name for name in ("mch_id", "api_key") if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"aggregator credentials missing: {', '.join(missing)}")


class AggregatorProvider(_HttpProviderMixin, PaymentProvider):
    """
    Third-party WeChat aggregator using MD5 `pay_sign` form posts.

    Intents are signed at creation time and the callback echoes that
    signature; the aggregator offers no status query, so polling reads the
    local intent only.
    """

    NATIVE_PAY_PATH = "/api/pay/wxpay/nativePay"
    PAID_CODES = frozenset({"1", "SUCCESS"})

    signs_intents = True
    supports_query = False

    def __init__(self, credentials: Optional[AggregatorCredentials] = None, *, client: Optional[httpx.Client] = None):
        self.credentials = credentials or AggregatorCredentials.from_config()
        self._client = client

    @property
    def name(self) -> ProviderName:
        return "aggregator"

    def _signed_params(self, *, out_trade_no: str, amount_cents: int, description: str) -> Dict[str, str]:
        return {
            "out_trade_no": out_trade_no,
            "total_fee": format_yuan(amount_cents),
            "mch_id": self.credentials.mch_id,
            "body": description,
        }

    def intent_sign(self, *, out_trade_no: str, amount_cents: int, description: str) -> Optional[str]:
        self.credentials.require()
        params = self._signed_params(out_trade_no=out_trade_no, amount_cents=amount_cents, description=description)
        return pay_sign(params, self.credentials.api_key)

    def create_native_order(self, *, description: str, out_trade_no: str, amount_cents: int) -> CheckoutSession:
        self.credentials.require()
        params = self._signed_params(out_trade_no=out_trade_no, amount_cents=amount_cents, description=description)
        form = {**params, "auto": "0", "sign": pay_sign(params, self.credentials.api_key)}
        if self.credentials.notify_url:
            form["notify_url"] = self.credentials.notify_url

        url = f"{self.credentials.api_base_url.rstrip('/')}{self.NATIVE_PAY_PATH}"
        with self._http_client() as client:
            try:
                resp = client.post(url, data=form)
            except httpx.HTTPError as exc:
                raise GatewayError(f"aggregator request failed: {exc}") from exc
        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.is_error or not isinstance(data, dict):
            raise GatewayError(
                f"aggregator rejected native order: status={resp.status_code}",
                provider_message=(resp.text or "")[:200] or None,
                http_status=resp.status_code,
            )
        if str(data.get("code")) != "0":
            raise GatewayError(
                "aggregator rejected native order",
                provider_code=str(data.get("code")),
                provider_message=str(data.get("msg") or data.get("message") or "") or None,
                http_status=resp.status_code,
            )
        qr_code_url = str(data.get("data") or "").strip()
        if not qr_code_url:
            raise GatewayError("aggregator response is missing data")
        return CheckoutSession(provider="aggregator", out_trade_no=out_trade_no, qr_code_url=qr_code_url, raw=data)

    def create_jsapi_order(
        self,
        *,
        description: str,
        out_trade_no: str,
        amount_cents: int,
        payer_openid: str,
    ) -> CheckoutSession:
        raise ValidationError("aggregator does not support JSAPI payment")

    def query_order(self, out_trade_no: str) -> ProviderOrderStatus:
        raise ValidationError("aggregator does not support order queries")

    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> PaymentEvidence:
        content_type = _lower_headers(headers).get("content-type", "")
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("callback body must be UTF-8") from exc
        if "json" in content_type or text.lstrip().startswith("{"):
            try:
                data = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ValidationError("callback body must be JSON") from exc
            if not isinstance(data, dict):
                raise ValidationError("callback body must be a JSON object")
        else:
            data = dict(parse_qsl(text, keep_blank_values=True))

        out_trade_no = str(data.get("outTradeNo") or "").strip()
        sign = str(data.get("sign") or "").strip().upper()
        if not out_trade_no or not sign:
            # Without the echoed signature nothing about the intent can be trusted.
            raise InvalidSignatureError("aggregator callback is missing outTradeNo or sign")
        money = data.get("money")
        return PaymentEvidence(
            provider="aggregator",
            out_trade_no=out_trade_no,
            paid=str(data.get("code") or "").strip().upper() in self.PAID_CODES,
            transaction_id=str(data.get("payNo") or "").strip() or None,
            amount_cents=None if money in {None, ""} else parse_yuan(money),
            sign=sign,
            raw=data,
        )

    def acknowledge(self, *, success: bool, message: str = "", status_code: int = 200) -> CallbackAck:
        if success:
            return CallbackAck(200, "SUCCESS", "text/plain")
        return CallbackAck(status_code, "FAIL", "text/plain")


def get_payment_provider(name: Optional[str] = None) -> PaymentProvider:
    """Provider factory; defaults to config.PAYMENT_PROVIDER."""

    selected = (name or PAYMENT_PROVIDER or "mock").strip().lower()
    if selected == "wechatpay":
        return WechatPayProvider()
    if selected == "aggregator":
        return AggregatorProvider()
    if selected == "mock":
        return MockProvider()
    raise ConfigurationError(f"unknown payment provider: {selected}")

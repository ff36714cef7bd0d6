from __future__ import annotations

import base64
import json
from urllib.parse import parse_qsl

import httpx
import pytest

from payledger.aggregator import pay_sign
from payledger.exceptions import ConfigurationError, GatewayError, InvalidSignatureError, ValidationError
from payledger.provider import (
    AggregatorCredentials,
    AggregatorProvider,
    MockProvider,
    WechatPayCredentials,
    WechatPayProvider,
    get_payment_provider,
)
from payledger.wechatpay import build_message, sign_message, verify_with_certificate

API_V3_KEY = "0123456789abcdef0123456789abcdef"
MCHID = "1900000001"
NOW = 1_700_000_000


def _make_key_and_cert() -> tuple[str, str]:
    from datetime import datetime, timedelta, timezone

    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.x509.oid import NameOID

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "wechatpay-platform")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(private_key, hashes.SHA256())
    )
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    return key_pem, cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="module")
def keypair() -> tuple[str, str]:
    return _make_key_and_cert()


def _credentials(keypair, **overrides) -> WechatPayCredentials:
    key_pem, cert_pem = keypair
    values = dict(
        mchid=MCHID,
        appid="wx_app_1",
        serial_no="MERCHANT_SERIAL",
        private_key_pem=key_pem,
        notify_url="https://pay.example.com/pay/callback",
        api_v3_key=API_V3_KEY,
        platform_certs={"PLATFORM_SERIAL": cert_pem},
        api_base_url="https://api.mch.example.com",
    )
    values.update(overrides)
    return WechatPayCredentials(**values)


def _wechat_provider(keypair, handler, **overrides) -> WechatPayProvider:
    return WechatPayProvider(
        _credentials(keypair, **overrides),
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        clock=lambda: float(NOW),
    )


def _encrypted_notification(transaction: dict) -> bytes:
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    nonce = "abcdefghijkl"
    ciphertext = AESGCM(API_V3_KEY.encode("utf-8")).encrypt(
        nonce.encode("utf-8"),
        json.dumps(transaction).encode("utf-8"),
        b"transaction",
    )
    envelope = {
        "id": "evt_1",
        "event_type": "TRANSACTION.SUCCESS",
        "resource": {
            "algorithm": "AEAD_AES_256_GCM",
            "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
            "nonce": nonce,
            "associated_data": "transaction",
        },
    }
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def _signed_headers(key_pem: str, body: bytes, *, timestamp: int = NOW) -> dict[str, str]:
    message = build_message(str(timestamp), "cb-nonce", body.decode("utf-8"))
    return {
        "Wechatpay-Timestamp": str(timestamp),
        "Wechatpay-Nonce": "cb-nonce",
        "Wechatpay-Signature": sign_message(private_key_pem=key_pem, message=message),
        "Wechatpay-Serial": "PLATFORM_SERIAL",
    }


def _transaction(**fields) -> dict:
    payload = {
        "mchid": MCHID,
        "appid": "wx_app_1",
        "out_trade_no": "PL_WX_0001",
        "transaction_id": "4200000001",
        "trade_state": "SUCCESS",
        "success_time": "2026-10-19T10:00:00+08:00",
        "amount": {"total": 990, "payer_total": 990, "currency": "CNY"},
    }
    payload.update(fields)
    return payload


def test_wechat_native_order_sends_signed_request(keypair) -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"code_url": "weixin://wxpay/bizpayurl?pr=abc"})

    provider = _wechat_provider(keypair, _handler)
    checkout = provider.create_native_order(description="100 credits", out_trade_no="PL_WX_0001", amount_cents=990)
    assert checkout.qr_code_url == "weixin://wxpay/bizpayurl?pr=abc"

    request = seen[0]
    assert request.url.path == "/v3/pay/transactions/native"
    assert request.headers["Authorization"].startswith("WECHATPAY2-SHA256-RSA2048 ")
    payload = json.loads(request.content)
    assert payload["amount"] == {"total": 990, "currency": "CNY"}
    assert payload["mchid"] == MCHID
    assert payload["notify_url"] == "https://pay.example.com/pay/callback"


def test_wechat_jsapi_order_returns_signed_client_params(keypair) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["payer"] == {"openid": "o_user_1"}
        return httpx.Response(200, json={"prepay_id": "wx_prepay_1"})

    provider = _wechat_provider(keypair, _handler)
    checkout = provider.create_jsapi_order(
        description="100 credits",
        out_trade_no="PL_WX_0001",
        amount_cents=990,
        payer_openid="o_user_1",
    )
    params = checkout.jsapi_params
    assert params["package"] == "prepay_id=wx_prepay_1"
    message = build_message("wx_app_1", params["timeStamp"], params["nonceStr"], params["package"])
    assert verify_with_certificate(cert_pem=keypair[1], message=message, signature_b64=params["paySign"]) is True

    with pytest.raises(ValidationError):
        provider.create_jsapi_order(description="x", out_trade_no="PL_WX_0002", amount_cents=1, payer_openid=" ")


def test_wechat_query_order_normalizes_status(keypair) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/v3/pay/transactions/out-trade-no/PL_WX_0001"
        assert request.url.params["mchid"] == MCHID
        return httpx.Response(200, json=_transaction())

    status = _wechat_provider(keypair, _handler).query_order("PL_WX_0001")
    assert status.is_paid is True
    assert status.transaction_id == "4200000001"
    assert status.amount_cents == 990
    assert status.success_time is not None


def test_wechat_error_response_becomes_gateway_error(keypair) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": "PARAM_ERROR", "message": "description too long"})

    with pytest.raises(GatewayError) as excinfo:
        _wechat_provider(keypair, _handler).create_native_order(
            description="x", out_trade_no="PL_WX_0001", amount_cents=1
        )
    assert excinfo.value.provider_code == "PARAM_ERROR"
    assert excinfo.value.provider_message == "description too long"
    assert excinfo.value.http_status == 400


def test_wechat_transport_failure_becomes_gateway_error(keypair) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        _wechat_provider(keypair, _handler).query_order("PL_WX_0001")


def test_wechat_missing_credentials_is_configuration_error(keypair) -> None:
    provider = _wechat_provider(keypair, lambda request: httpx.Response(200, json={}), appid="")
    with pytest.raises(ConfigurationError):
        provider.create_native_order(description="x", out_trade_no="PL_WX_0001", amount_cents=1)


def test_wechat_callback_is_verified_and_decrypted(keypair) -> None:
    provider = _wechat_provider(keypair, lambda request: httpx.Response(500))
    body = _encrypted_notification(_transaction())
    evidence = provider.parse_callback(_signed_headers(keypair[0], body), body)
    assert evidence.provider == "wechatpay"
    assert evidence.out_trade_no == "PL_WX_0001"
    assert evidence.paid is True
    assert evidence.amount_cents == 990
    assert evidence.transaction_id == "4200000001"


def test_wechat_callback_rejections(keypair) -> None:
    provider = _wechat_provider(keypair, lambda request: httpx.Response(500))
    body = _encrypted_notification(_transaction())

    tampered = body.replace(b"evt_1", b"evt_2")
    with pytest.raises(InvalidSignatureError):
        provider.parse_callback(_signed_headers(keypair[0], body), tampered)

    stale = _signed_headers(keypair[0], body, timestamp=NOW - 3600)
    with pytest.raises(InvalidSignatureError):
        provider.parse_callback(stale, body)

    other_merchant = _encrypted_notification(_transaction(mchid="1900000099"))
    with pytest.raises(ValidationError):
        provider.parse_callback(_signed_headers(keypair[0], other_merchant), other_merchant)

    unconfigured = _wechat_provider(keypair, lambda request: httpx.Response(500), platform_certs={})
    with pytest.raises(ConfigurationError):
        unconfigured.parse_callback(_signed_headers(keypair[0], body), body)


def _aggregator(handler) -> AggregatorProvider:
    return AggregatorProvider(
        AggregatorCredentials(
            mch_id="1600000001",
            api_key="agg-secret",
            notify_url="https://pay.example.com/pay/aggregator-notify",
            api_base_url="https://agg.example.com",
        ),
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_aggregator_native_order_posts_signed_form() -> None:
    forms: list[dict[str, str]] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/pay/wxpay/nativePay"
        forms.append(dict(parse_qsl(request.content.decode("utf-8"))))
        return httpx.Response(200, json={"code": 0, "data": "https://qr.example.com/abc", "msg": "ok"})

    provider = _aggregator(_handler)
    checkout = provider.create_native_order(description="100 credits", out_trade_no="PL_AG_0001", amount_cents=990)
    assert checkout.qr_code_url == "https://qr.example.com/abc"

    form = forms[0]
    assert form["total_fee"] == "9.90"
    assert form["notify_url"] == "https://pay.example.com/pay/aggregator-notify"
    signed = {key: form[key] for key in ("out_trade_no", "total_fee", "mch_id", "body")}
    assert form["sign"] == pay_sign(signed, "agg-secret")
    assert form["sign"] == provider.intent_sign(out_trade_no="PL_AG_0001", amount_cents=990, description="100 credits")


def test_aggregator_rejection_becomes_gateway_error() -> None:
    provider = _aggregator(lambda request: httpx.Response(200, json={"code": 1, "msg": "sign error"}))
    with pytest.raises(GatewayError) as excinfo:
        provider.create_native_order(description="x", out_trade_no="PL_AG_0001", amount_cents=1)
    assert excinfo.value.provider_code == "1"
    assert excinfo.value.provider_message == "sign error"

    broken = _aggregator(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(GatewayError):
        broken.create_native_order(description="x", out_trade_no="PL_AG_0001", amount_cents=1)


def test_aggregator_callback_accepts_json_and_form() -> None:
    provider = _aggregator(lambda request: httpx.Response(500))
    fields = {"code": "1", "outTradeNo": "PL_AG_0001", "payNo": "P123", "money": "9.90", "sign": "abcdef"}

    from_json = provider.parse_callback({"Content-Type": "application/json"}, json.dumps(fields).encode("utf-8"))
    from_form = provider.parse_callback(
        {"Content-Type": "application/x-www-form-urlencoded"},
        "&".join(f"{key}={value}" for key, value in fields.items()).encode("utf-8"),
    )
    for evidence in (from_json, from_form):
        assert evidence.paid is True
        assert evidence.amount_cents == 990
        assert evidence.transaction_id == "P123"
        assert evidence.sign == "ABCDEF"

    unpaid = provider.parse_callback({}, json.dumps({**fields, "code": "0"}).encode("utf-8"))
    assert unpaid.paid is False

    with pytest.raises(InvalidSignatureError):
        provider.parse_callback({}, json.dumps({**fields, "sign": ""}).encode("utf-8"))
    with pytest.raises(ValidationError):
        provider.query_order("PL_AG_0001")
    assert provider.acknowledge(success=True).body == "SUCCESS"
    assert provider.acknowledge(success=False, status_code=403).body == "FAIL"


def test_mock_provider_checks_hmac_signature() -> None:
    provider = MockProvider(webhook_secret="whsec")
    body = json.dumps({"out_trade_no": "PL_MOCK_1", "amount_cents": 990}).encode("utf-8")
    signature = provider.sign_callback(body)

    evidence = provider.parse_callback({"X-Signature": f"sha256={signature}"}, body)
    assert evidence.paid is True
    assert evidence.amount_cents == 990

    with pytest.raises(InvalidSignatureError):
        provider.parse_callback({"X-Signature": signature}, body + b" ")
    with pytest.raises(InvalidSignatureError):
        provider.parse_callback({}, body)

    not_json = b"out_trade_no=PL_MOCK_1"
    with pytest.raises(ValidationError):
        provider.parse_callback({"X-Signature": provider.sign_callback(not_json)}, not_json)

    float_amount = json.dumps({"out_trade_no": "PL_MOCK_1", "amount_cents": 9.9}).encode("utf-8")
    with pytest.raises(ValidationError):
        provider.parse_callback({"X-Signature": provider.sign_callback(float_amount)}, float_amount)

    with pytest.raises(ConfigurationError):
        MockProvider(webhook_secret="").parse_callback({"X-Signature": signature}, body)


def test_provider_factory() -> None:
    assert isinstance(get_payment_provider("mock"), MockProvider)
    assert isinstance(get_payment_provider(" Aggregator "), AggregatorProvider)
    with pytest.raises(ConfigurationError):
        get_payment_provider("paypal")

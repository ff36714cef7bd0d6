from __future__ import annotations

import base64
import json

import pytest

from payledger.exceptions import ConfigurationError, InvalidSignatureError, ValidationError
from payledger.wechatpay import (
    build_authorization,
    build_jsapi_pay_params,
    build_message,
    decrypt_notification,
    parse_platform_certs,
    sign_message,
    verify_notify_signature,
    verify_with_certificate,
)

API_V3_KEY = "0123456789abcdef0123456789abcdef"  # 32 bytes


def _extract_token_field(token: str, field: str) -> str:
    marker = f'{field}="'
    start = token.find(marker)
    assert start >= 0, token
    start += len(marker)
    end = token.find('"', start)
    assert end > start, token
    return token[start:end]


def _make_self_signed_cert_pem() -> tuple[str, str]:
    """
    Returns (private_key_pem, cert_pem).
    """

    from datetime import datetime, timedelta, timezone

    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.x509.oid import NameOID

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "CN"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "PayLedger Test"),
            x509.NameAttribute(NameOID.COMMON_NAME, "wechatpay-platform"),
        ]
    )
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(private_key, hashes.SHA256())
    )
    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    return private_key_pem, cert_pem


def _encrypt_resource(plaintext: dict, *, key: str = API_V3_KEY, aad: str = "transaction") -> dict:
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    nonce = "0123456789ab"  # 12 bytes recommended by AESGCM
    ciphertext = AESGCM(key.encode("utf-8")).encrypt(
        nonce.encode("utf-8"),
        json.dumps(plaintext).encode("utf-8"),
        aad.encode("utf-8"),
    )
    return {
        "algorithm": "AEAD_AES_256_GCM",
        "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        "nonce": nonce,
        "associated_data": aad,
    }


def test_build_message_terminates_every_part_with_newline() -> None:
    assert build_message("GET", "/v3/x", "1", "n", "") == b"GET\n/v3/x\n1\nn\n\n"


def test_decrypt_notification_roundtrip() -> None:
    plaintext = {"out_trade_no": "ord_001", "trade_state": "SUCCESS", "amount": {"total": 9900, "currency": "CNY"}}
    decrypted = decrypt_notification(api_v3_key=API_V3_KEY, resource=_encrypt_resource(plaintext))
    assert decrypted == plaintext


def test_decrypt_notification_with_wrong_key_is_rejected() -> None:
    resource = _encrypt_resource({"out_trade_no": "ord_001"})
    with pytest.raises(InvalidSignatureError):
        decrypt_notification(api_v3_key="f" * 32, resource=resource)


def test_decrypt_notification_requires_32_byte_key() -> None:
    resource = _encrypt_resource({"out_trade_no": "ord_001"})
    with pytest.raises(ConfigurationError):
        decrypt_notification(api_v3_key="short", resource=resource)


def test_decrypt_notification_rejects_unknown_algorithm() -> None:
    resource = _encrypt_resource({"out_trade_no": "ord_001"})
    resource["algorithm"] = "AEAD_AES_128_GCM"
    with pytest.raises(ValidationError):
        decrypt_notification(api_v3_key=API_V3_KEY, resource=resource)


def test_verify_wechatpay_notify_signature() -> None:
    private_key_pem, cert_pem = _make_self_signed_cert_pem()
    body = json.dumps({"id": "evt_1"}, separators=(",", ":")).encode("utf-8")
    timestamp = "1700000000"
    nonce = "nonce"
    msg = f"{timestamp}\n{nonce}\n{body.decode('utf-8')}\n".encode("utf-8")
    signature = sign_message(private_key_pem=private_key_pem, message=msg)

    platform_certs = {"serial_1": cert_pem}
    assert (
        verify_notify_signature(
            timestamp=timestamp,
            nonce=nonce,
            signature_b64=signature,
            serial="serial_1",
            body=body,
            platform_certs=platform_certs,
        )
        is True
    )
    assert (
        verify_notify_signature(
            timestamp=timestamp,
            nonce=nonce,
            signature_b64="invalid",
            serial="serial_1",
            body=body,
            platform_certs=platform_certs,
        )
        is False
    )
    # Unknown platform serial: no certificate to verify against.
    assert (
        verify_notify_signature(
            timestamp=timestamp,
            nonce=nonce,
            signature_b64=signature,
            serial="serial_2",
            body=body,
            platform_certs=platform_certs,
        )
        is False
    )


def test_tampered_body_fails_verification() -> None:
    private_key_pem, cert_pem = _make_self_signed_cert_pem()
    body = b'{"id":"evt_1"}'
    signature = sign_message(private_key_pem=private_key_pem, message=build_message("1700000000", "n", body.decode()))
    assert verify_with_certificate(
        cert_pem=cert_pem,
        message=build_message("1700000000", "n", '{"id":"evt_2"}'),
        signature_b64=signature,
    ) is False


def test_build_v3_authorization_header_signature_matches() -> None:
    private_key_pem, _ = _make_self_signed_cert_pem()
    body = json.dumps({"a": 1}, separators=(",", ":"))
    token = build_authorization(
        mchid="1900000001",
        serial_no="serial_merchant",
        private_key_pem=private_key_pem,
        method="POST",
        path_with_query="/v3/pay/transactions/jsapi",
        body=body,
        timestamp="1700000000",
        nonce_str="nonce",
    )
    assert token.startswith("WECHATPAY2-SHA256-RSA2048 ")
    assert _extract_token_field(token, "mchid") == "1900000001"
    assert _extract_token_field(token, "serial_no") == "serial_merchant"
    signature = _extract_token_field(token, "signature")
    msg = f"POST\n/v3/pay/transactions/jsapi\n1700000000\nnonce\n{body}\n".encode("utf-8")
    expected = sign_message(private_key_pem=private_key_pem, message=msg)
    assert signature == expected


def test_build_authorization_requires_merchant_identity() -> None:
    private_key_pem, _ = _make_self_signed_cert_pem()
    with pytest.raises(ConfigurationError):
        build_authorization(
            mchid="",
            serial_no="serial_merchant",
            private_key_pem=private_key_pem,
            method="GET",
            path_with_query="/v3/certificates",
            body="",
        )


def test_jsapi_pay_params_are_signed_over_prepay_package() -> None:
    private_key_pem, cert_pem = _make_self_signed_cert_pem()
    params = build_jsapi_pay_params(
        appid="wx123",
        prepay_id="wx201410272009395522657a690389285100",
        private_key_pem=private_key_pem,
        timestamp="1700000000",
        nonce_str="nonce",
    )
    assert params["package"] == "prepay_id=wx201410272009395522657a690389285100"
    assert params["signType"] == "RSA"
    message = build_message("wx123", "1700000000", "nonce", params["package"])
    assert verify_with_certificate(cert_pem=cert_pem, message=message, signature_b64=params["paySign"]) is True


def test_parse_platform_certs_merges_json_and_single_serial() -> None:
    _, cert_pem = _make_self_signed_cert_pem()
    certs = parse_platform_certs(
        certs_json=json.dumps({"SERIAL_A": cert_pem}),
        cert_serial="SERIAL_B",
        cert_pem=cert_pem.replace("\n", "\\n"),
    )
    assert set(certs) == {"SERIAL_A", "SERIAL_B"}
    assert certs["SERIAL_B"].strip() == cert_pem.strip()

    with pytest.raises(ConfigurationError):
        parse_platform_certs(certs_json="{not json")

"""
WeChat Pay v3 signing primitives.

Requests are signed with the merchant RSA key (SHA256 + PKCS#1 v1.5) over
newline-terminated canonical messages; callbacks are verified against the
platform certificate named by `Wechatpay-Serial` and carry an AES-256-GCM
encrypted resource.
"""

from __future__ import annotations

import base64
import binascii
import json
import secrets
import time
from typing import Any, Mapping

from cryptography import x509
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import ConfigurationError, InvalidSignatureError, ValidationError

AUTH_SCHEMA = "WECHATPAY2-SHA256-RSA2048"
NOTIFY_ALGORITHM = "AEAD_AES_256_GCM"


def _normalize_pem(value: str) -> str:
    pem = str(value or "").strip()
    if not pem:
        return ""
    # PEM stored in env vars may use literal "\n" separators.
    if "\\n" in pem and "BEGIN" in pem:
        pem = pem.replace("\\n", "\n")
    return pem


def load_pem(*, pem_value: str = "", pem_path: str = "") -> str:
    pem = _normalize_pem(pem_value)
    if pem:
        return pem
    if pem_path:
        with open(pem_path, "r", encoding="utf-8") as handle:
            return _normalize_pem(handle.read())
    return ""


def parse_platform_certs(
    *,
    certs_json: str = "",
    cert_serial: str = "",
    cert_pem: str = "",
    cert_path: str = "",
) -> dict[str, str]:
    """
    Build a serial_no -> certificate PEM mapping.

    Accepts a JSON object `{"SERIAL": "-----BEGIN CERTIFICATE-----..."}` and/or
    a single serial with its PEM (inline or by path).
    """

    out: dict[str, str] = {}
    raw_json = str(certs_json or "").strip()
    if raw_json:
        try:
            parsed = json.loads(raw_json)
        except json.JSONDecodeError as exc:
            raise ConfigurationError("WECHATPAY_PLATFORM_CERTS_JSON must be valid JSON") from exc
        if not isinstance(parsed, dict):
            raise ConfigurationError("WECHATPAY_PLATFORM_CERTS_JSON must be a JSON object")
        for key, value in parsed.items():
            if not isinstance(key, str) or not isinstance(value, str):
                continue
            pem = _normalize_pem(value)
            if key.strip() and pem:
                out[key.strip()] = pem

    serial = str(cert_serial or "").strip()
    pem = load_pem(pem_value=cert_pem, pem_path=cert_path)
    if serial and pem:
        out[serial] = pem
    return out


def generate_nonce() -> str:
    return secrets.token_hex(16)


def generate_timestamp() -> str:
    return str(int(time.time()))


def build_message(*parts: str) -> bytes:
    """Join parts with '\\n' and terminate with '\\n', the shape every v3 signature uses."""
    return "".join(f"{part}\n" for part in parts).encode("utf-8")


def _load_private_key(private_key_pem: str) -> rsa.RSAPrivateKey:
    pem = _normalize_pem(private_key_pem)
    if not pem:
        raise ConfigurationError("merchant private key is missing")
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except ValueError as exc:
        raise ConfigurationError("merchant private key is not a valid PEM") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ConfigurationError("merchant private key must be RSA")
    return key


def sign_message(*, private_key_pem: str, message: bytes) -> str:
    key = _load_private_key(private_key_pem)
    signature = key.sign(message, padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def verify_with_certificate(*, cert_pem: str, message: bytes, signature_b64: str) -> bool:
    pem = _normalize_pem(cert_pem)
    if not pem:
        return False
    try:
        cert = x509.load_pem_x509_certificate(pem.encode("utf-8"))
        public_key = cert.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            return False
        signature = base64.b64decode(signature_b64.encode("ascii"), validate=True)
        public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
    except (ValueError, binascii.Error, InvalidSignature):
        return False
    return True


def build_authorization(
    *,
    mchid: str,
    serial_no: str,
    private_key_pem: str,
    method: str,
    path_with_query: str,
    body: str,
    timestamp: str | None = None,
    nonce_str: str | None = None,
) -> str:
    """
    Build the `Authorization` header value for a v3 API call.

    Signed message: METHOD\\nPATH\\nTIMESTAMP\\nNONCE\\nBODY\\n (BODY is empty for GET).
    """

    mchid_value = str(mchid or "").strip()
    serial_value = str(serial_no or "").strip()
    if not mchid_value:
        raise ConfigurationError("WECHATPAY_MCHID is missing")
    if not serial_value:
        raise ConfigurationError("WECHATPAY_CERT_SERIAL is missing")

    ts = str(timestamp or generate_timestamp()).strip()
    nonce = str(nonce_str or generate_nonce()).strip()
    message = build_message(method.upper(), path_with_query, ts, nonce, body)
    signature = sign_message(private_key_pem=private_key_pem, message=message)
    return (
        f"{AUTH_SCHEMA} "
        f'mchid="{mchid_value}",nonce_str="{nonce}",signature="{signature}",'
        f'timestamp="{ts}",serial_no="{serial_value}"'
    )


def build_jsapi_pay_params(
    *,
    appid: str,
    prepay_id: str,
    private_key_pem: str,
    timestamp: str | None = None,
    nonce_str: str | None = None,
) -> dict[str, str]:
    """Parameters for the in-app `wx.requestPayment` call, signed over appId\\nts\\nnonce\\npackage\\n."""

    appid_value = str(appid or "").strip()
    prepay_value = str(prepay_id or "").strip()
    if not appid_value:
        raise ConfigurationError("WECHATPAY_APPID is missing")
    if not prepay_value:
        raise ValidationError("prepay_id is missing")

    ts = str(timestamp or generate_timestamp()).strip()
    nonce = str(nonce_str or generate_nonce()).strip()
    package = f"prepay_id={prepay_value}"
    pay_sign = sign_message(private_key_pem=private_key_pem, message=build_message(appid_value, ts, nonce, package))
    return {
        "appId": appid_value,
        "timeStamp": ts,
        "nonceStr": nonce,
        "package": package,
        "signType": "RSA",
        "paySign": pay_sign,
    }


def verify_notify_signature(
    *,
    timestamp: str,
    nonce: str,
    signature_b64: str,
    serial: str,
    body: bytes,
    platform_certs: Mapping[str, str],
) -> bool:
    """Verify a callback against the raw body bytes: message is ts\\nnonce\\nbody\\n."""

    ts = str(timestamp or "").strip()
    nonce_value = str(nonce or "").strip()
    sig = str(signature_b64 or "").strip()
    serial_value = str(serial or "").strip()
    if not ts or not nonce_value or not sig or not serial_value:
        return False

    cert_pem = str(platform_certs.get(serial_value) or "").strip()
    if not cert_pem:
        return False
    try:
        body_text = body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return verify_with_certificate(
        cert_pem=cert_pem,
        message=build_message(ts, nonce_value, body_text),
        signature_b64=sig,
    )


def decrypt_resource(*, api_v3_key: str, nonce: str, ciphertext_b64: str, associated_data: str | None) -> bytes:
    key = str(api_v3_key or "").encode("utf-8")
    if len(key) != 32:
        raise ConfigurationError("WECHATPAY_APIV3_KEY must be 32 bytes")
    nonce_bytes = str(nonce or "").encode("utf-8")
    if not nonce_bytes:
        raise ValidationError("resource.nonce is missing")
    if not ciphertext_b64:
        raise ValidationError("resource.ciphertext is missing")
    try:
        ciphertext = base64.b64decode(ciphertext_b64.encode("ascii"), validate=True)
    except (ValueError, binascii.Error) as exc:
        raise ValidationError("resource.ciphertext is not base64") from exc

    aad_bytes = associated_data.encode("utf-8") if associated_data is not None else None
    try:
        return AESGCM(key).decrypt(nonce_bytes, ciphertext, aad_bytes)
    except InvalidTag as exc:
        raise InvalidSignatureError("resource authentication tag mismatch") from exc


def decrypt_notification(*, api_v3_key: str, resource: Mapping[str, Any]) -> dict[str, Any]:
    """Decrypt a callback `resource` and return the transaction object it carries."""

    algo = str(resource.get("algorithm") or "").strip()
    if algo and algo != NOTIFY_ALGORITHM:
        raise ValidationError(f"unsupported algorithm: {algo}")

    associated = resource.get("associated_data")
    plaintext = decrypt_resource(
        api_v3_key=api_v3_key,
        nonce=str(resource.get("nonce") or ""),
        ciphertext_b64=str(resource.get("ciphertext") or ""),
        associated_data=str(associated) if associated is not None else None,
    )
    try:
        parsed = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("decrypted resource is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("decrypted resource must be a JSON object")
    return parsed

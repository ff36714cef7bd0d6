import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # An empty pre-existing variable is not authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

_ENV_ONLY_KEYS = {
    "ADMIN_API_TOKEN",
    "PAYMENT_WEBHOOK_SECRET",
    # WeChat Pay (v3)
    "WECHATPAY_APIV3_KEY",
    "WECHATPAY_PRIVATE_KEY_PEM",
    "WECHATPAY_PRIVATE_KEY_PATH",
    # Aggregator
    "AGGREGATOR_API_KEY",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


APP_VERSION = str(_get("APP_VERSION", "0.1.0"))
LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"
DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.payledger', 'payledger.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
STARTUP_INIT_DB = _parse_bool(_get("STARTUP_INIT_DB", "true"), True)
REDIS_URL = _get("REDIS_URL", "redis://localhost:6379/0")
REDIS_DISABLED = _parse_bool(_get("REDIS_DISABLED", "false"), False)

ADMIN_API_TOKEN = str(_get("ADMIN_API_TOKEN", "")).strip()

PAYMENT_PROVIDER = str(_get("PAYMENT_PROVIDER", "mock")).strip().lower() or "mock"
PAYMENT_WEBHOOK_SECRET = str(_get("PAYMENT_WEBHOOK_SECRET", "")).strip()
PAYMENT_HTTP_TIMEOUT_SECONDS = float(_get("PAYMENT_HTTP_TIMEOUT_SECONDS", "20"))

WECHATPAY_API_BASE_URL = str(_get("WECHATPAY_API_BASE_URL", "https://api.mch.weixin.qq.com")).strip().rstrip("/")
WECHATPAY_NOTIFY_URL = str(_get("WECHATPAY_NOTIFY_URL", "")).strip()
WECHATPAY_MCHID = str(_get("WECHATPAY_MCHID", "")).strip()
WECHATPAY_APPID = str(_get("WECHATPAY_APPID", "")).strip()
WECHATPAY_CERT_SERIAL = str(_get("WECHATPAY_CERT_SERIAL", "")).strip()
WECHATPAY_PRIVATE_KEY_PEM = str(_get("WECHATPAY_PRIVATE_KEY_PEM", "")).strip()
WECHATPAY_PRIVATE_KEY_PATH = str(_get("WECHATPAY_PRIVATE_KEY_PATH", "")).strip()
WECHATPAY_PLATFORM_CERT_SERIAL = str(_get("WECHATPAY_PLATFORM_CERT_SERIAL", "")).strip()
WECHATPAY_PLATFORM_CERT_PEM = str(_get("WECHATPAY_PLATFORM_CERT_PEM", "")).strip()
WECHATPAY_PLATFORM_CERT_PATH = str(_get("WECHATPAY_PLATFORM_CERT_PATH", "")).strip()
WECHATPAY_PLATFORM_CERTS_JSON = str(_get("WECHATPAY_PLATFORM_CERTS_JSON", "")).strip()
WECHATPAY_APIV3_KEY = str(_get("WECHATPAY_APIV3_KEY", "")).strip()
WECHATPAY_NOTIFY_MAX_SKEW_SECONDS = _parse_int(_get("WECHATPAY_NOTIFY_MAX_SKEW_SECONDS", "300"), 300)

AGGREGATOR_API_BASE_URL = str(_get("AGGREGATOR_API_BASE_URL", "https://api.pay.yungouos.com")).strip().rstrip("/")
AGGREGATOR_MCH_ID = str(_get("AGGREGATOR_MCH_ID", "")).strip()
AGGREGATOR_API_KEY = str(_get("AGGREGATOR_API_KEY", "")).strip()
AGGREGATOR_NOTIFY_URL = str(_get("AGGREGATOR_NOTIFY_URL", "")).strip()

INITIAL_CREDITS_AMOUNT = max(0, _parse_int(_get("INITIAL_CREDITS_AMOUNT", "0"), 0))
REDEEM_RATE_LIMIT_PER_MINUTE = max(1, _parse_int(_get("REDEEM_RATE_LIMIT_PER_MINUTE", "10"), 10))

RECONCILE_PENDING_AFTER_SECONDS = max(0, _parse_int(_get("RECONCILE_PENDING_AFTER_SECONDS", "600"), 600))
RECONCILE_BATCH_LIMIT = max(1, _parse_int(_get("RECONCILE_BATCH_LIMIT", "100"), 100))

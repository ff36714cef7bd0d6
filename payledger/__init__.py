from .aggregator import format_yuan, parse_yuan, pay_sign, verify_pay_sign
from .checkout import CheckoutResult, PurchaseRequest, create_payment_intent, purchase_with_credits
from .db import (
    ENGINE,
    SessionLocal,
    build_session_factory,
    init_db,
    session_scope,
)
from .exceptions import (
    ConfigurationError,
    GatewayError,
    InsufficientCreditsError,
    InvalidCodeError,
    InvalidSignatureError,
    PayLedgerError,
    PaymentIntentNotFoundError,
    RateLimitedError,
    ReconciliationPartialFailure,
    UserNotFoundError,
    ValidationError,
)
from .ledger import CreditLedger, LedgerEntry
from .models import (
    CREDIT_ORDER_TYPE,
    Base,
    CreditTransaction,
    CreditTransactionType,
    Order,
    PaymentAuditLog,
    PayOrder,
    PayOrderStatus,
    ReconciliationIssue,
    ReconciliationIssueStatus,
    RedemptionCode,
    RedemptionRecord,
    User,
)
from .provider import (
    AggregatorCredentials,
    AggregatorProvider,
    CheckoutSession,
    MockProvider,
    PaymentEvidence,
    PaymentProvider,
    ProviderOrderStatus,
    WechatPayCredentials,
    WechatPayProvider,
    get_payment_provider,
)
from .ratelimit import AttemptRateLimiter, RateLimitResult
from .reconciliation import (
    OrderQueryResult,
    ReconciliationOutcome,
    SweepReport,
    apply_payment_evidence,
    confirm_by_query,
    process_callback,
    resolve_reconciliation_issue,
    sweep_stale_intents,
)
from .redemption import RedemptionResult, RedemptionService, generate_code
from .repository import OrderStats, OrderStore

__all__ = [
    "Base",
    "ENGINE",
    "SessionLocal",
    "CREDIT_ORDER_TYPE",
    "User",
    "Order",
    "PayOrder",
    "PayOrderStatus",
    "CreditTransaction",
    "CreditTransactionType",
    "RedemptionCode",
    "RedemptionRecord",
    "PaymentAuditLog",
    "ReconciliationIssue",
    "ReconciliationIssueStatus",
    "PayLedgerError",
    "ConfigurationError",
    "GatewayError",
    "InvalidSignatureError",
    "ValidationError",
    "UserNotFoundError",
    "PaymentIntentNotFoundError",
    "InsufficientCreditsError",
    "InvalidCodeError",
    "RateLimitedError",
    "ReconciliationPartialFailure",
    "pay_sign",
    "verify_pay_sign",
    "format_yuan",
    "parse_yuan",
    "PaymentProvider",
    "CheckoutSession",
    "PaymentEvidence",
    "ProviderOrderStatus",
    "MockProvider",
    "WechatPayCredentials",
    "WechatPayProvider",
    "AggregatorCredentials",
    "AggregatorProvider",
    "get_payment_provider",
    "OrderStore",
    "OrderStats",
    "CreditLedger",
    "LedgerEntry",
    "RedemptionService",
    "RedemptionResult",
    "generate_code",
    "PurchaseRequest",
    "CheckoutResult",
    "create_payment_intent",
    "purchase_with_credits",
    "ReconciliationOutcome",
    "OrderQueryResult",
    "SweepReport",
    "apply_payment_evidence",
    "process_callback",
    "confirm_by_query",
    "resolve_reconciliation_issue",
    "sweep_stale_intents",
    "AttemptRateLimiter",
    "RateLimitResult",
    "build_session_factory",
    "init_db",
    "session_scope",
]

from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "PAYMENT_NOT_CONFIGURED": {
        "message": "支付渠道未配置",
        "hint": "检查商户号、私钥、证书序列号或聚合支付密钥配置。",
    },
    "PAYMENT_GATEWAY_ERROR": {
        "message": "支付渠道请求失败",
        "hint": "查看 provider_code/provider_message，修正参数后重新下单。",
    },
    "INVALID_SIGNATURE": {
        "message": "回调签名校验失败",
        "hint": "确认平台证书、API v3 密钥或聚合支付密钥是否正确。",
    },
    "VALIDATION_FAILED": {
        "message": "参数校验失败",
        "hint": "检查请求参数后重试。",
    },
    "USER_NOT_FOUND": {
        "message": "用户不存在",
        "hint": "请先初始化用户积分账户。",
    },
    "PAYMENT_INTENT_NOT_FOUND": {
        "message": "支付订单不存在",
        "hint": "确认 outTradeNo 是否正确。",
    },
    "INSUFFICIENT_CREDITS": {
        "message": "积分不足",
        "hint": "请充值或兑换积分后重试。",
    },
    "INVALID_REDEMPTION_CODE": {
        "message": "兑换码无效",
        "hint": "兑换码不存在、已停用、已过期、已用完或已被当前用户兑换。",
    },
    "RATE_LIMITED": {
        "message": "请求过于频繁",
        "hint": "请稍后再试。",
    },
    "RECONCILIATION_REQUIRED": {
        "message": "支付已确认但入账失败",
        "hint": "已记录对账异常，请管理员在对账列表中处理。",
    },
    "NOT_ADMIN": {
        "message": "管理员权限不足",
        "hint": "仅管理员可访问该接口。",
    },
    "UNEXPECTED_ERROR": {
        "message": "未知错误",
        "hint": "查看日志详情或联系管理员。",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)

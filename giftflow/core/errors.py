# giftflow/core/errors.py
"""
领域错误分类（进入核心之前，外部错误形状一律在边界处归一成这里的类型）。

- ValidationError            输入非法 / 金额不变式不成立（用户可修正）
- InvalidTransitionError     状态机拒绝的迁移
- AuthorizationError         操作他人的订单
- AlreadyCreditedError       返现幂等命中（调用方视为无害 no-op）
- DownstreamUnavailableError 支付 / 配送协作方不可达或超时
- StorageError               持久化失败（可整体重试，依赖 paymentId / orderId 幂等）
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GiftflowError(Exception):
    error_code = "giftflow_error"
    http_status = 400

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        http_status: int | None = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        if error_code:
            self.error_code = error_code
        if http_status:
            self.http_status = http_status
        self.message = message
        self.context = dict(context or {})


class ValidationError(GiftflowError):
    error_code = "validation_error"
    http_status = 400


class InsufficientBalanceError(ValidationError):
    error_code = "insufficient_balance"


class SignatureMismatchError(ValidationError):
    error_code = "signature_mismatch"


class InvalidTransitionError(GiftflowError):
    error_code = "invalid_transition"
    http_status = 400

    def __init__(
        self,
        current: Optional[str],
        requested: str,
        message: str | None = None,
        *,
        allowed_from: Optional[list[str]] = None,
    ):
        context: Dict[str, Any] = {"current_status": current, "requested_status": requested}
        if allowed_from is not None:
            context["allowed_from"] = allowed_from
        super().__init__(
            message or f"Order cannot move from {current or 'none'} to {requested}",
            context=context,
        )
        self.current = current
        self.requested = requested


class AuthenticationError(GiftflowError):
    error_code = "unauthenticated"
    http_status = 401


class AuthorizationError(GiftflowError):
    error_code = "forbidden"
    http_status = 403


class OrderNotFoundError(GiftflowError):
    error_code = "order_not_found"
    http_status = 404

    def __init__(self, order_id: Any):
        super().__init__(f"Order {order_id} not found", context={"order_id": str(order_id)})
        self.order_id = order_id


class AlreadyCreditedError(GiftflowError):
    error_code = "already_credited"
    http_status = 400

    def __init__(self, order_id: Any):
        super().__init__(
            f"Cashback already credited for order {order_id}",
            context={"order_id": str(order_id)},
        )
        self.order_id = order_id


class DownstreamUnavailableError(GiftflowError):
    error_code = "downstream_unavailable"
    http_status = 503

    def __init__(
        self,
        collaborator: str,
        message: str,
        *,
        retryable: bool = True,
        upstream_status: int | None = None,
    ):
        super().__init__(
            message,
            context={"collaborator": collaborator, "upstream_status": upstream_status},
        )
        self.collaborator = collaborator
        self.retryable = retryable
        self.upstream_status = upstream_status


class StorageError(GiftflowError):
    error_code = "storage_error"
    http_status = 503

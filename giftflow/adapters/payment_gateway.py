# giftflow/adapters/payment_gateway.py
"""
支付网关适配层（Razorpay）

- 所有外部错误形状（httpx 异常 / 网关 JSON 错误体 / 超时）在这里统一归一为
  DownstreamUnavailableError，业务层不接触任何网关原始结构
- 金额一律为最小货币单位（paise）
- 签名校验：HMAC-SHA256，常量时间比较
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from giftflow.core.errors import DownstreamUnavailableError
from giftflow.metrics import COLLABORATOR_ERRORS

log = logging.getLogger("giftflow.payments")

COLLABORATOR = "payment_gateway"

# 网关侧视为“已捕获”的支付状态
CAPTURED_STATES = frozenset({"captured"})


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class PaymentInfo:
    id: str
    status: str
    amount_minor: int
    gateway_order_id: str

    @property
    def captured(self) -> bool:
        return self.status in CAPTURED_STATES


@dataclass(frozen=True)
class TransferResult:
    id: str
    status: str


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str
    amount_minor: int


class PaymentGateway(Protocol):
    async def create_payment_order(
        self,
        *,
        receipt: str,
        amount_minor: int,
        currency: str,
        notes: Mapping[str, str],
    ) -> GatewayOrder: ...

    async def fetch_payment(self, payment_id: str) -> PaymentInfo: ...

    async def transfer(
        self,
        *,
        payment_id: str,
        account_id: str,
        amount_minor: int,
        currency: str,
        notes: Mapping[str, str],
    ) -> TransferResult: ...

    async def refund(
        self,
        *,
        payment_id: str,
        amount_minor: Optional[int] = None,
        notes: Optional[Mapping[str, str]] = None,
    ) -> RefundResult: ...

    def verify_signature(self, *, gateway_order_id: str, payment_id: str, signature: str) -> bool: ...

    def verify_webhook(self, body: bytes, signature: str) -> bool: ...


def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret: str, message: bytes | str, signature: str) -> bool:
    if not secret or not signature:
        return False
    expected = hmac_sha256_hex(secret, message)
    return hmac.compare_digest(expected, signature.strip().lower())


def checkout_signature_message(gateway_order_id: str, payment_id: str) -> str:
    return f"{gateway_order_id}|{payment_id}"


class RazorpayGateway:
    """
    Razorpay REST 客户端（Basic auth）。

    client 可注入（测试用 httpx.MockTransport）；未注入时每次调用临时建一个 AsyncClient。
    """

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        base_url: str = "https://api.razorpay.com",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    # ---------- 对外接口 ----------

    async def create_payment_order(
        self,
        *,
        receipt: str,
        amount_minor: int,
        currency: str,
        notes: Mapping[str, str],
    ) -> GatewayOrder:
        data = await self._request(
            "POST",
            "/v1/orders",
            json={
                "amount": int(amount_minor),
                "currency": currency,
                "receipt": receipt,
                "notes": dict(notes),
            },
        )
        log.info("gateway order %s created for %s", data.get("id"), receipt)
        return GatewayOrder(
            id=str(data["id"]),
            amount_minor=int(data.get("amount", amount_minor)),
            currency=str(data.get("currency", currency)),
        )

    async def fetch_payment(self, payment_id: str) -> PaymentInfo:
        data = await self._request("GET", f"/v1/payments/{payment_id}")
        return PaymentInfo(
            id=str(data.get("id", payment_id)),
            status=str(data.get("status", "")).lower(),
            amount_minor=int(data.get("amount") or 0),
            gateway_order_id=str(data.get("order_id") or ""),
        )

    async def transfer(
        self,
        *,
        payment_id: str,
        account_id: str,
        amount_minor: int,
        currency: str,
        notes: Mapping[str, str],
    ) -> TransferResult:
        data = await self._request(
            "POST",
            f"/v1/payments/{payment_id}/transfers",
            json={
                "transfers": [
                    {
                        "account": account_id,
                        "amount": int(amount_minor),
                        "currency": currency,
                        "notes": dict(notes),
                    }
                ]
            },
        )
        # 网关返回单个 transfer 或 {"items": [...]} 列表
        items = data.get("items") or data.get("transfers") or []
        first: Dict[str, Any] = items[0] if items else data
        transfer_id = first.get("id")
        if not transfer_id:
            raise DownstreamUnavailableError(
                COLLABORATOR, "Transfer response carried no transfer id", retryable=False
            )
        return TransferResult(id=str(transfer_id), status=str(first.get("status") or "created"))

    async def refund(
        self,
        *,
        payment_id: str,
        amount_minor: Optional[int] = None,
        notes: Optional[Mapping[str, str]] = None,
    ) -> RefundResult:
        body: Dict[str, Any] = {}
        if amount_minor is not None:
            body["amount"] = int(amount_minor)
        if notes:
            body["notes"] = dict(notes)
        data = await self._request("POST", f"/v1/payments/{payment_id}/refund", json=body)
        log.info("refund %s created for payment %s", data.get("id"), payment_id)
        return RefundResult(
            id=str(data.get("id", "")),
            status=str(data.get("status", "")),
            amount_minor=int(data.get("amount") or amount_minor or 0),
        )

    def verify_signature(self, *, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        return signature_matches(
            self.key_secret, checkout_signature_message(gateway_order_id, payment_id), signature
        )

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        return signature_matches(self.webhook_secret, body, signature)

    # ---------- 内部 ----------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        auth = httpx.BasicAuth(self.key_id, self.key_secret)
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, auth=auth, timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(method, url, auth=auth, **kwargs)
        except httpx.TimeoutException as exc:
            COLLABORATOR_ERRORS.labels(COLLABORATOR).inc()
            raise DownstreamUnavailableError(COLLABORATOR, f"Payment gateway timed out on {path}") from exc
        except httpx.HTTPError as exc:
            COLLABORATOR_ERRORS.labels(COLLABORATOR).inc()
            raise DownstreamUnavailableError(
                COLLABORATOR, f"Payment gateway unreachable: {exc.__class__.__name__}"
            ) from exc

        if resp.status_code >= 400:
            COLLABORATOR_ERRORS.labels(COLLABORATOR).inc()
            raise DownstreamUnavailableError(
                COLLABORATOR,
                f"Payment gateway rejected {method} {path}: {_error_description(resp)}",
                retryable=resp.status_code >= 500 or resp.status_code == 429,
                upstream_status=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise DownstreamUnavailableError(
                COLLABORATOR, "Payment gateway returned a non-JSON body", upstream_status=resp.status_code
            ) from exc


def _error_description(resp: httpx.Response) -> str:
    """{"error": {"code": "...", "description": "..."}} → description；其它形状退化为状态码。"""
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return str(err.get("description") or err.get("code") or f"HTTP {resp.status_code}")
    return f"HTTP {resp.status_code}"


class DevPaymentGateway:
    """
    dev 环境未配置网关密钥时使用：本地生成 id，支付一律视为已捕获，转账 / 退款直接成功。
    签名仍按 HMAC 校验（密钥为 key_secret），便于联调前端。
    """

    def __init__(self, *, key_secret: str = "dev_key_secret", webhook_secret: str = "dev_webhook_secret"):
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret

    async def create_payment_order(
        self,
        *,
        receipt: str,
        amount_minor: int,
        currency: str,
        notes: Mapping[str, str],
    ) -> GatewayOrder:
        return GatewayOrder(id=f"order_dev_{secrets.token_hex(6)}", amount_minor=amount_minor, currency=currency)

    async def fetch_payment(self, payment_id: str) -> PaymentInfo:
        return PaymentInfo(id=payment_id, status="captured", amount_minor=0, gateway_order_id="")

    async def transfer(
        self,
        *,
        payment_id: str,
        account_id: str,
        amount_minor: int,
        currency: str,
        notes: Mapping[str, str],
    ) -> TransferResult:
        log.warning("dev gateway: mock transfer of %s to %s for %s", amount_minor, account_id, payment_id)
        return TransferResult(id=f"trf_dev_{payment_id}", status="processed")

    async def refund(
        self,
        *,
        payment_id: str,
        amount_minor: Optional[int] = None,
        notes: Optional[Mapping[str, str]] = None,
    ) -> RefundResult:
        return RefundResult(id=f"rfnd_dev_{payment_id}", status="processed", amount_minor=amount_minor or 0)

    def verify_signature(self, *, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        return signature_matches(
            self.key_secret, checkout_signature_message(gateway_order_id, payment_id), signature
        )

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        return signature_matches(self.webhook_secret, body, signature)

# giftflow/services/order_lifecycle.py
"""
订单生命周期（唯一允许修改 orders 的地方）

约定：
- 每个操作一个独立事务；状态迁移走条件 UPDATE（WHERE id = :id AND status = :current），
  并发下只有一方成功，另一方拿到 InvalidTransitionError
- 迁移合法性只看 domain.order_state 的邻接表
- 事务提交成功后才发布 StatusChanged，同时同事务写一行 order_status_events
- 分账 / 返现 / 退款在提交之后执行，失败只记日志 + 落库，不回滚订单状态
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftflow.adapters.delivery_client import DeliveryPartnerClient
from giftflow.adapters.payment_gateway import GatewayOrder, PaymentGateway
from giftflow.core.config import AppSettings
from giftflow.core.errors import (
    AlreadyCreditedError,
    AuthorizationError,
    DownstreamUnavailableError,
    GiftflowError,
    InsufficientBalanceError,
    InvalidTransitionError,
    OrderNotFoundError,
    SignatureMismatchError,
    StorageError,
    ValidationError,
)
from giftflow.core.security import ROLE_VENDOR, SYSTEM_ACTOR, Actor
from giftflow.domain.events import StatusChanged
from giftflow.domain.money import as_money, item_total_of, to_minor, validate_totals
from giftflow.domain.order_state import CUSTOMIZE_FROM, REVISE_FROM, check_transition
from giftflow.metrics import ORDER_TRANSITIONS
from giftflow.models.enums import DeliveryType, OrderStatus, PaymentStatus
from giftflow.models.order import Order
from giftflow.models.order_item import OrderItem
from giftflow.models.order_status_event import OrderStatusEvent
from giftflow.services.order_numbers import gen_order_number
from giftflow.services.settlement_engine import CashbackCredit, SettlementEngine
from giftflow.services.wallet_ledger import WalletLedger

log = logging.getLogger("giftflow.orders")

ORDER_NUMBER_ATTEMPTS = 3

_KEEP = object()

Authorize = Callable[[Order, Actor], None]
Prepare = Callable[[Order], Optional[Dict[str, Any]]]
After = Callable[[AsyncSession, Order], Awaitable[None]]


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal


class EventSink(Protocol):
    async def publish(self, event: StatusChanged) -> None: ...


class _NoopSink:
    async def publish(self, event: StatusChanged) -> None:
        return None


# ---------------------------------------------------------------------------
# 权限
# ---------------------------------------------------------------------------


def require_owner(order: Order, actor: Actor) -> None:
    if actor.is_privileged or order.customer_id == actor.user_id:
        return
    raise AuthorizationError("You can only act on your own orders", context={"order_id": order.id})


def require_vendor(order: Order, actor: Actor) -> None:
    if actor.is_privileged or (actor.role == ROLE_VENDOR and order.vendor_id == actor.user_id):
        return
    raise AuthorizationError("Only the order's vendor can do this", context={"order_id": order.id})


def require_party(order: Order, actor: Actor) -> None:
    if actor.is_privileged or actor.user_id in (order.customer_id, order.vendor_id):
        return
    raise AuthorizationError("You are not a party to this order", context={"order_id": order.id})


def require_privileged(order: Order, actor: Actor) -> None:
    if actor.is_privileged:
        return
    raise AuthorizationError("This operation is restricted to operations staff")


class OrderLifecycleManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settlement: SettlementEngine,
        ledger: WalletLedger,
        gateway: PaymentGateway,
        settings: AppSettings,
        events: Optional[EventSink] = None,
        delivery: Optional[DeliveryPartnerClient] = None,
    ) -> None:
        self.session_factory = session_factory
        self.settlement = settlement
        self.ledger = ledger
        self.gateway = gateway
        self.settings = settings
        self.events: EventSink = events or _NoopSink()
        self.delivery = delivery

    # ------------------------------------------------------------------
    # 下单
    # ------------------------------------------------------------------

    async def create_order(
        self,
        actor: Actor,
        *,
        vendor_id: str,
        items: Sequence[OrderLine],
        delivery_fee: Decimal,
        delivery_address: Mapping[str, Any],
        delivery_type: str = DeliveryType.LOCAL.value,
        platform_fee: Optional[Decimal] = None,
        cashback_used: Decimal = Decimal("0"),
        total: Optional[Decimal] = None,
    ) -> Order:
        if not items:
            raise ValidationError("An order needs at least one item")
        if not vendor_id:
            raise ValidationError("vendor_id is required")
        if not delivery_address:
            raise ValidationError("delivery_address is required")
        try:
            dtype = DeliveryType(str(delivery_type).lower())
        except ValueError as exc:
            raise ValidationError(f"Unknown delivery_type {delivery_type!r}") from exc

        item_total = item_total_of((line.quantity, line.unit_price) for line in items)
        fee = as_money(self.settings.PLATFORM_FEE if platform_fee is None else platform_fee)
        used = as_money(cashback_used)
        order_total = validate_totals(
            item_total=item_total,
            delivery_fee=delivery_fee,
            platform_fee=fee,
            cashback_used=used,
            max_usage_ratio=self.settings.CASHBACK_MAX_USAGE_RATIO,
            min_order_value=self.settings.CASHBACK_MIN_ORDER_VALUE,
            total=total,
        )

        if used > 0:
            # 快速失败：避免余额不足时还去网关建单；真正的扣减在下面的事务里做
            async with self.session_factory() as session:
                wallet = await self.ledger.get_wallet(session, actor.user_id)
            available = as_money(wallet.balance) if wallet is not None else Decimal("0.00")
            if available < used:
                raise InsufficientBalanceError(
                    f"Insufficient wallet balance: requested {used}, available {available}",
                    context={"requested": str(used), "balance": str(available)},
                )

        number = gen_order_number()
        gw_order = await self._create_payment_order(number, order_total)

        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            try:
                order = await self._insert_order(
                    actor,
                    number=number,
                    vendor_id=vendor_id,
                    items=items,
                    item_total=item_total,
                    delivery_fee=as_money(delivery_fee),
                    platform_fee=fee,
                    cashback_used=used,
                    total=order_total,
                    delivery_type=dtype,
                    delivery_address=dict(delivery_address),
                    gw_order=gw_order,
                )
                break
            except IntegrityError as exc:
                if attempt + 1 >= ORDER_NUMBER_ATTEMPTS:
                    raise StorageError("Could not allocate a unique order number") from exc
                log.warning("order number %s collided, regenerating", number)
                number = gen_order_number()
        else:  # pragma: no cover
            raise StorageError("Could not allocate a unique order number")

        log.info(
            "order %s (%s) created by %s: total=%s cashback_used=%s gateway_order=%s",
            order.id,
            order.order_number,
            actor.user_id,
            order.total,
            order.cashback_used,
            gw_order.id,
        )
        await self._emit(order, old_status=None)
        return order

    async def _insert_order(
        self,
        actor: Actor,
        *,
        number: str,
        vendor_id: str,
        items: Sequence[OrderLine],
        item_total: Decimal,
        delivery_fee: Decimal,
        platform_fee: Decimal,
        cashback_used: Decimal,
        total: Decimal,
        delivery_type: DeliveryType,
        delivery_address: Dict[str, Any],
        gw_order: GatewayOrder,
    ) -> Order:
        async with self.session_factory() as session:
            async with session.begin():
                order = Order(
                    order_number=number,
                    customer_id=actor.user_id,
                    vendor_id=vendor_id,
                    item_total=item_total,
                    delivery_fee=delivery_fee,
                    platform_fee=platform_fee,
                    cashback_used=cashback_used,
                    total=total,
                    delivery_type=delivery_type.value,
                    delivery_address=delivery_address,
                    status=OrderStatus.PENDING.value,
                    payment_ref=gw_order.id,
                    payment_status=PaymentStatus.PENDING.value,
                    items=[
                        OrderItem(
                            product_id=line.product_id,
                            name=line.name,
                            quantity=int(line.quantity),
                            unit_price=as_money(line.unit_price),
                        )
                        for line in items
                    ],
                )
                session.add(order)
                await session.flush()

                if cashback_used > 0:
                    wallet = await self.ledger.get_or_create_wallet(session, actor.user_id)
                    await self.ledger.debit(
                        session,
                        wallet.id,
                        cashback_used,
                        f"Cashback used on order {number}",
                        order_id=order.id,
                    )

                session.add(
                    OrderStatusEvent(
                        order_id=order.id,
                        old_status=None,
                        new_status=OrderStatus.PENDING.value,
                        actor=actor.user_id,
                    )
                )
            return await self._get(session, order.id)

    async def _create_payment_order(self, number: str, order_total: Decimal) -> GatewayOrder:
        timeout = self.settings.COLLABORATOR_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(
                self.gateway.create_payment_order(
                    receipt=number,
                    amount_minor=to_minor(order_total),
                    currency=self.settings.CURRENCY,
                    notes={"order_number": number},
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise DownstreamUnavailableError(
                "payment_gateway", f"Payment order creation timed out after {timeout}s"
            ) from exc

    # ------------------------------------------------------------------
    # 支付确认
    # ------------------------------------------------------------------

    async def confirm_payment(
        self,
        order_id: int,
        payment_id: str,
        capture_status: str,
        *,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Order:
        """
        幂等：同一 payment_id 的重复 / 并发调用只会有一次状态迁移、一次分账。
        捕获失败：订单留在 pending，payment_status=failed，顾客可以重新支付。
        """
        if not payment_id:
            raise ValidationError("payment_id is required")
        captured = str(capture_status).lower() in (PaymentStatus.CAPTURED.value, "completed")

        async with self.session_factory() as session:
            async with session.begin():
                order = await self._get(session, order_id)
                require_owner(order, actor)
                guard = (
                    Order.id == order_id,
                    Order.status == OrderStatus.PENDING.value,
                    Order.payment_status != PaymentStatus.CAPTURED.value,
                )
                if captured:
                    values = {
                        "status": OrderStatus.AWAITING_DETAILS.value,
                        "payment_status": PaymentStatus.CAPTURED.value,
                        "payment_id": payment_id,
                        "sub_status": "payment captured",
                    }
                else:
                    values = {"payment_status": PaymentStatus.FAILED.value, "payment_id": payment_id}
                res = await session.execute(
                    update(Order)
                    .where(*guard)
                    .values(**values)
                    .returning(Order.id)
                    .execution_options(synchronize_session=False)
                )
                applied = res.scalar_one_or_none() is not None
                if applied and captured:
                    session.add(
                        OrderStatusEvent(
                            order_id=order_id,
                            old_status=OrderStatus.PENDING.value,
                            new_status=OrderStatus.AWAITING_DETAILS.value,
                            sub_status="payment captured",
                            actor=actor.user_id,
                        )
                    )
            order = await self._get(session, order_id)

        if not captured:
            if applied:
                log.warning("payment %s failed for order %s; order stays pending", payment_id, order_id)
            else:
                log.info(
                    "ignoring failed-capture report %s for order %s (status=%s, payment_status=%s)",
                    payment_id,
                    order_id,
                    order.status,
                    order.payment_status,
                )
            return order

        if applied:
            log.info("payment %s captured for order %s", payment_id, order_id)
            await self._emit(order, old_status=OrderStatus.PENDING.value)
        elif order.payment_status == PaymentStatus.CAPTURED.value and order.payment_id == payment_id:
            log.info("duplicate capture %s for order %s ignored", payment_id, order_id)
        elif order.payment_status == PaymentStatus.CAPTURED.value:
            raise InvalidTransitionError(
                order.status,
                OrderStatus.AWAITING_DETAILS.value,
                f"Order {order_id} was already paid with a different payment",
            )
        elif order.status == OrderStatus.CANCELLED.value:
            return await self._capture_after_cancel(order, payment_id)
        else:
            raise InvalidTransitionError(order.status, OrderStatus.AWAITING_DETAILS.value)

        # 分账按 (order_id, payment_id) 幂等：没落库的分账由重放补上；
        # 转账中途中断停在 created 的记录，租约过期后由重放或补偿任务接手
        await self._settle(order)
        return order

    async def verify_payment(
        self,
        order_id: int,
        payment_id: str,
        signature: str,
        *,
        actor: Actor,
    ) -> Order:
        """
        前端 checkout 回调：先验签（HMAC(gateway_order_id|payment_id)），
        再向网关查询真实捕获状态，最后走幂等的 confirm_payment。
        """
        async with self.session_factory() as session:
            order = await self._get(session, order_id)
        require_owner(order, actor)
        if not order.payment_ref or not self.gateway.verify_signature(
            gateway_order_id=order.payment_ref, payment_id=payment_id, signature=signature
        ):
            log.warning("signature mismatch for order %s payment %s", order_id, payment_id)
            raise SignatureMismatchError(
                "Payment signature verification failed", context={"order_id": order_id}
            )

        timeout = self.settings.COLLABORATOR_TIMEOUT_SECONDS
        try:
            info = await asyncio.wait_for(self.gateway.fetch_payment(payment_id), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise DownstreamUnavailableError(
                "payment_gateway", f"Payment lookup timed out after {timeout}s"
            ) from exc
        if info.gateway_order_id and info.gateway_order_id != order.payment_ref:
            raise ValidationError(
                "Payment does not belong to this order",
                context={"order_id": order_id, "payment_id": payment_id},
            )
        return await self.confirm_payment(order_id, payment_id, info.status, actor=actor)

    async def order_id_for_payment_ref(self, payment_ref: str) -> Optional[int]:
        async with self.session_factory() as session:
            res = await session.execute(select(Order.id).where(Order.payment_ref == payment_ref))
            return res.scalar_one_or_none()

    async def _settle(self, order: Order) -> None:
        try:
            account, rate = await self.settlement.payout_terms(order.vendor_id)
            await self.settlement.split_payment(
                order.id, order.payment_id, to_minor(order.total), rate, account
            )
        except (GiftflowError, SQLAlchemyError):
            log.exception("settlement for order %s payment %s not recorded", order.id, order.payment_id)

    async def _capture_after_cancel(self, order: Order, payment_id: str) -> Order:
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    update(Order)
                    .where(
                        Order.id == order.id,
                        Order.status == OrderStatus.CANCELLED.value,
                        Order.payment_status.in_(
                            [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]
                        ),
                    )
                    .values(payment_id=payment_id, payment_status=PaymentStatus.REFUND_PENDING.value)
                    .returning(Order.id)
                    .execution_options(synchronize_session=False)
                )
                applied = res.scalar_one_or_none() is not None
            order = await self._get(session, order.id)
        if applied:
            log.error("payment %s captured on cancelled order %s; refunding", payment_id, order.id)
            return await self._refund(order)
        return order

    # ------------------------------------------------------------------
    # 定制 / 效果图 / 制作
    # ------------------------------------------------------------------

    async def submit_customization(
        self,
        order_id: int,
        details: Mapping[str, Mapping[str, Any]],
        *,
        actor: Actor,
    ) -> Order:
        """details: {product_id: {"text": ..., "photo": ..., "message": ...}}"""
        if not details:
            raise ValidationError("Customization details are required")

        def prepare(order: Order) -> Dict[str, Any]:
            _check_products(order, details.keys())
            return {}

        async def apply(session: AsyncSession, order: Order) -> None:
            for item in order.items:
                if item.product_id in details:
                    item.customization = {**(item.customization or {}), **dict(details[item.product_id])}

        return await self._transition(
            order_id,
            OrderStatus.PERSONALIZING,
            actor=actor,
            authorize=require_owner,
            prepare=prepare,
            after=apply,
            sub_status="customization submitted",
            via=CUSTOMIZE_FROM,
        )

    async def upload_mockup(
        self,
        order_id: int,
        images: Mapping[str, str],
        *,
        actor: Actor,
        note: Optional[str] = None,
    ) -> Order:
        """images: {product_id: image_url}；同一商品多次上传按顺序追加。"""
        if not images:
            raise ValidationError("At least one mockup image is required")

        def prepare(order: Order) -> Dict[str, Any]:
            _check_products(order, images.keys())
            merged: Dict[str, List[str]] = {k: list(v) for k, v in (order.mockup_images or {}).items()}
            for product_id, url in images.items():
                merged.setdefault(product_id, []).append(url)
            return {"mockup_images": merged, "revision_request": None}

        return await self._transition(
            order_id,
            OrderStatus.MOCKUP_READY,
            actor=actor,
            authorize=require_vendor,
            prepare=prepare,
            sub_status=(note or "mockup uploaded")[:255],
        )

    async def approve_mockup(self, order_id: int, *, actor: Actor) -> Order:
        return await self._transition(
            order_id,
            OrderStatus.CRAFTING,
            actor=actor,
            authorize=require_owner,
            prepare=lambda order: {"revision_request": None},
            sub_status="mockup approved",
        )

    async def request_revision(
        self,
        order_id: int,
        feedback: str,
        *,
        actor: Actor,
        product_id: Optional[str] = None,
    ) -> Order:
        feedback = (feedback or "").strip()
        if not feedback:
            raise ValidationError("Revision feedback is required")

        def prepare(order: Order) -> Dict[str, Any]:
            if product_id is not None:
                _check_products(order, [product_id])
            return {
                "revision_request": {
                    "product_id": product_id,
                    "message": feedback,
                    "requested_at": datetime.now(timezone.utc).isoformat(),
                }
            }

        return await self._transition(
            order_id,
            OrderStatus.PERSONALIZING,
            actor=actor,
            authorize=require_owner,
            prepare=prepare,
            sub_status="revision requested",
            via=REVISE_FROM,
        )

    async def mark_ready(self, order_id: int, *, actor: Actor) -> Order:
        return await self._transition(
            order_id,
            OrderStatus.READY_FOR_PICKUP,
            actor=actor,
            authorize=require_vendor,
            sub_status="ready for pickup",
        )

    # ------------------------------------------------------------------
    # 配送 / 签收 / 取消
    # ------------------------------------------------------------------

    async def dispatch(self, order_id: int, *, actor: Actor) -> Order:
        """配置了配送服务商时先下运单；下单失败直接抛错，订单状态不动。"""
        sub_status: Any = "out for delivery"
        if self.delivery is not None:
            async with self.session_factory() as session:
                order = await self._get(session, order_id)
            require_vendor(order, actor)
            check_transition(order.status, OrderStatus.OUT_FOR_DELIVERY)

            timeout = self.settings.COLLABORATOR_TIMEOUT_SECONDS
            try:
                shipment = await asyncio.wait_for(
                    self.delivery.create_shipment(
                        order_number=order.order_number,
                        delivery_address=order.delivery_address,
                        delivery_type=order.delivery_type,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as exc:
                raise DownstreamUnavailableError(
                    "delivery_partner", f"Shipment booking timed out after {timeout}s"
                ) from exc
            sub_status = f"awb:{shipment.delivery_id}"

        return await self._transition(
            order_id,
            OrderStatus.OUT_FOR_DELIVERY,
            actor=actor,
            authorize=require_vendor,
            sub_status=sub_status,
        )

    async def mark_delivered(self, order_id: int, *, actor: Actor = SYSTEM_ACTOR) -> Order:
        order = await self._transition(
            order_id,
            OrderStatus.DELIVERED,
            actor=actor,
            authorize=require_privileged,
            sub_status="delivered",
        )
        # 返现失败不影响签收
        try:
            await self.settlement.credit_cashback(order.id, order.total, order.customer_id)
        except AlreadyCreditedError:
            log.info("cashback for order %s was already credited", order.id)
        except (GiftflowError, SQLAlchemyError):
            log.exception("cashback credit for delivered order %s failed", order.id)
        return order

    async def cancel(self, order_id: int, reason: str, *, actor: Actor) -> Order:
        reason = ((reason or "").strip() or "cancelled")[:255]

        async def restore_cashback(session: AsyncSession, order: Order) -> None:
            used = as_money(order.cashback_used)
            if used <= 0:
                return
            wallet = await self.ledger.get_or_create_wallet(session, order.customer_id)
            try:
                await self.ledger.credit(
                    session,
                    wallet.id,
                    order.id,
                    used,
                    f"Cashback restored for cancelled order {order.order_number}",
                )
            except AlreadyCreditedError:
                log.info("cashback for order %s already restored", order.id)

        order = await self._transition(
            order_id,
            OrderStatus.CANCELLED,
            actor=actor,
            authorize=require_party,
            prepare=lambda order: {"cancel_reason": reason},
            after=restore_cashback,
            sub_status=reason,
        )
        log.info("order %s cancelled by %s: %s", order.id, actor.user_id, reason)

        if order.payment_status == PaymentStatus.CAPTURED.value and order.payment_id:
            order = await self._refund(order)
        return order

    async def _refund(self, order: Order) -> Order:
        timeout = self.settings.COLLABORATOR_TIMEOUT_SECONDS
        outcome = PaymentStatus.REFUNDED
        try:
            await asyncio.wait_for(
                self.gateway.refund(
                    payment_id=order.payment_id,
                    amount_minor=to_minor(order.total),
                    notes={"order_id": str(order.id), "reason": order.cancel_reason or "cancelled"},
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            outcome = PaymentStatus.REFUND_PENDING
            log.error("refund for order %s timed out after %ss; left pending", order.id, timeout)
        except DownstreamUnavailableError as exc:
            outcome = PaymentStatus.REFUND_PENDING
            log.error("refund for order %s failed: %s; left pending", order.id, exc.message)

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == order.id)
                    .values(payment_status=outcome.value)
                    .execution_options(synchronize_session=False)
                )
            return await self._get(session, order.id)

    # ------------------------------------------------------------------
    # 返现（系统入口）
    # ------------------------------------------------------------------

    async def credit_cashback(self, order_id: int, *, actor: Actor = SYSTEM_ACTOR) -> CashbackCredit:
        async with self.session_factory() as session:
            order = await self._get(session, order_id)
        require_privileged(order, actor)
        if order.status != OrderStatus.DELIVERED.value:
            raise ValidationError(
                f"Order {order_id} is not delivered",
                context={"order_id": order_id, "status": order.status},
            )
        return await self.settlement.credit_cashback(order.id, order.total, order.customer_id)

    # ------------------------------------------------------------------
    # 读
    # ------------------------------------------------------------------

    async def get_order(self, order_id: int, *, actor: Actor) -> Order:
        async with self.session_factory() as session:
            order = await self._get(session, order_id)
        require_party(order, actor)
        return order

    async def list_vendor_orders(
        self,
        vendor_id: str,
        *,
        actor: Actor,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[Order]:
        if not actor.is_privileged and actor.user_id != vendor_id:
            raise AuthorizationError("You can only list your own orders")
        stmt = select(Order).where(Order.vendor_id == vendor_id)
        if status:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars())

    async def timeline(self, order_id: int, *, actor: Actor) -> List[OrderStatusEvent]:
        async with self.session_factory() as session:
            order = await self._get(session, order_id)
            require_party(order, actor)
            res = await session.execute(
                select(OrderStatusEvent)
                .where(OrderStatusEvent.order_id == order_id)
                .order_by(OrderStatusEvent.id)
            )
            return list(res.scalars())

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    async def _transition(
        self,
        order_id: int,
        target: OrderStatus,
        *,
        actor: Actor,
        authorize: Authorize,
        prepare: Optional[Prepare] = None,
        after: Optional[After] = None,
        sub_status: Any = _KEEP,
        via: Optional[FrozenSet[OrderStatus]] = None,
    ) -> Order:
        async with self.session_factory() as session:
            async with session.begin():
                order = await self._get(session, order_id)
                authorize(order, actor)
                current = order.status
                check_transition(current, target, via=via)

                values: Dict[str, Any] = dict((prepare(order) if prepare else None) or {})
                values["status"] = target.value
                if sub_status is not _KEEP:
                    values["sub_status"] = sub_status

                res = await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == current)
                    .values(**values)
                    .returning(Order.id)
                    .execution_options(synchronize_session=False)
                )
                if res.scalar_one_or_none() is None:
                    latest = (
                        await session.execute(select(Order.status).where(Order.id == order_id))
                    ).scalar_one()
                    raise InvalidTransitionError(latest, target.value)

                if after is not None:
                    await after(session, order)

                session.add(
                    OrderStatusEvent(
                        order_id=order_id,
                        old_status=current,
                        new_status=target.value,
                        sub_status=values.get("sub_status", order.sub_status),
                        actor=actor.user_id,
                    )
                )
            order = await self._get(session, order_id)

        log.info("order %s: %s -> %s (by %s)", order_id, current, target.value, actor.user_id)
        await self._emit(order, old_status=current)
        return order

    async def _emit(self, order: Order, *, old_status: Optional[str]) -> None:
        ORDER_TRANSITIONS.labels(order.status).inc()
        await self.events.publish(
            StatusChanged(
                order_id=order.id,
                old_status=old_status,
                new_status=order.status,
                sub_status=order.sub_status,
                vendor_id=order.vendor_id,
                customer_id=order.customer_id,
            )
        )

    async def _get(self, session: AsyncSession, order_id: int) -> Order:
        res = await session.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = res.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order


def _check_products(order: Order, product_ids) -> None:
    known = {item.product_id for item in order.items}
    unknown = sorted(set(product_ids) - known)
    if unknown:
        raise ValidationError(
            f"Products not in this order: {', '.join(unknown)}",
            context={"order_id": order.id, "unknown_products": unknown},
        )

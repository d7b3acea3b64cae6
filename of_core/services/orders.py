"""
订单服务（订单状态机编排）
唯一允许修改订单的入口；每个操作一个工作单元，状态写入均为条件 UPDATE
"""
import secrets
import string
import time
from decimal import Decimal
from typing import Dict, List, Optional, Any, Tuple, Union

from sqlalchemy import select, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from of_core.models import (
    Order, OrderItem, OrderStatusHistory, Payment, Product, ReturnRequest
)
from of_core.models.base import utcnow
from of_core.models.enums import (
    InventoryChangeType, OrderStatus, PaymentGateway, PaymentStatus
)
from of_core.utils.errors import (
    OrderFlowException, ValidationError, NotFoundError,
    InvalidTransitionError, CouponInvalidError
)
from of_core.utils.logger import LogContext
from of_core.utils.money import ZERO, to_money
from .base import BaseService, ServiceResult, RepositoryMixin
from .coupons import CouponValidator, CouponRejectReason
from .inventory import InventoryLedgerService
from .order_states import OrderAction, Transition, allowed_actions, ensure_can_apply
from .payments import PaymentLedgerService
from .reconciliation import ReconciliationService

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
ORDER_NUMBER_SUFFIX_LENGTH = 9


def generate_order_number(prefix: str = "ORD") -> str:
    """订单号：前缀-毫秒时间戳-9位大写字母数字"""
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(ORDER_NUMBER_SUFFIX_LENGTH))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def compute_order_total(items_total: Decimal, discount: Decimal, shipping_fee: Decimal, tax_amount: Decimal) -> Decimal:
    """订单应付总额 = 行合计 - 优惠 + 运费 + 税费"""
    return to_money(items_total - discount + shipping_fee + tax_amount)


class OrdersService(BaseService, RepositoryMixin):
    """订单服务"""

    def __init__(self, db_manager=None):
        super().__init__(db_manager)
        self.settings = self.db_manager.settings
        self.inventory = InventoryLedgerService(self.db_manager)
        self.payments = PaymentLedgerService(self.db_manager)
        self.coupons = CouponValidator(self.db_manager)
        self.reconciliation = ReconciliationService(self.db_manager)

    # ---- 创建 ----

    async def create_order(
        self,
        user_id: int,
        items: List[Dict[str, Any]],
        shipping_address_id: int,
        payment_method: Union[PaymentGateway, str],
        coupon_code: Optional[str] = None,
        billing_address_id: Optional[int] = None,
        shipping_fee: Any = 0,
        tax_amount: Any = 0,
        currency: Optional[str] = None,
        notes: Optional[str] = None,
        actor_id: Optional[int] = None
    ) -> ServiceResult[Dict[str, Any]]:
        """
        创建订单

        单个事务内完成：价格快照、优惠券校验与核销、库存扣减（SALE）、
        订单与订单行写入、首条状态历史、pending 支付
        任何一步失败整体回滚
        """
        try:
            self.validate_required_fields(
                {"user_id": user_id, "shipping_address_id": shipping_address_id, "payment_method": payment_method},
                ["user_id", "shipping_address_id", "payment_method"]
            )
            lines = self._normalize_lines(items)
            if coupon_code is not None and not coupon_code.strip():
                raise ValidationError(code="MISSING_COUPON_CODE", detail="Coupon code cannot be blank")
            gateway = self._validate_payment_method(payment_method)
            shipping_fee = self._validate_fee("shipping_fee", shipping_fee)
            tax_amount = self._validate_fee("tax_amount", tax_amount)

            with LogContext(actor_id=actor_id or user_id):
                order = await self.execute_with_transaction(
                    self._create_order_tx,
                    user_id=user_id,
                    lines=lines,
                    shipping_address_id=shipping_address_id,
                    gateway=gateway,
                    coupon_code=coupon_code.strip() if coupon_code else None,
                    billing_address_id=billing_address_id,
                    shipping_fee=shipping_fee,
                    tax_amount=tax_amount,
                    currency=currency or self.settings.default_currency,
                    notes=notes,
                    actor_id=actor_id
                )
            return ServiceResult.ok(order)
        except OrderFlowException as e:
            return self.fail(e, "Order creation", user_id=user_id)

    def _normalize_lines(self, items: List[Dict[str, Any]]) -> List[Tuple[int, int]]:
        """验证订单行并合并重复商品，按商品ID升序返回 (product_id, quantity)"""
        if not items:
            raise ValidationError(code="EMPTY_ORDER", detail="Order must contain at least one item")

        merged: Dict[int, int] = {}
        for index, item in enumerate(items):
            product_id = item.get("product_id")
            quantity = item.get("quantity")
            if product_id is None:
                raise ValidationError(code="MISSING_PRODUCT_ID", detail=f"Item {index} is missing product_id")
            if isinstance(product_id, bool) or not isinstance(product_id, int) or product_id <= 0:
                raise ValidationError(
                    code="INVALID_PRODUCT_ID",
                    detail=f"Item {index} product_id must be a positive integer, got: {product_id!r}"
                )
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError(
                    code="INVALID_QUANTITY",
                    detail=f"Item {index} quantity must be a positive integer, got: {quantity!r}"
                )
            merged[product_id] = merged.get(product_id, 0) + quantity

        return sorted(merged.items())

    def _validate_payment_method(self, payment_method: Union[PaymentGateway, str]) -> PaymentGateway:
        try:
            return PaymentGateway(payment_method)
        except ValueError:
            raise ValidationError(
                code="INVALID_PAYMENT_METHOD",
                detail=f"Payment method must be one of {[g.value for g in PaymentGateway]}, got: {payment_method}"
            )

    def _validate_fee(self, name: str, value: Any) -> Decimal:
        try:
            amount = to_money(value)
        except ValueError as e:
            raise ValidationError(code="INVALID_AMOUNT", detail=f"{name}: {e}")
        if amount < 0:
            raise ValidationError(code="INVALID_AMOUNT", detail=f"{name} cannot be negative: {amount}")
        return amount

    async def _create_order_tx(
        self,
        session: AsyncSession,
        user_id: int,
        lines: List[Tuple[int, int]],
        shipping_address_id: int,
        gateway: PaymentGateway,
        coupon_code: Optional[str],
        billing_address_id: Optional[int],
        shipping_fee: Decimal,
        tax_amount: Decimal,
        currency: str,
        notes: Optional[str],
        actor_id: Optional[int]
    ) -> Dict[str, Any]:
        """事务中的下单逻辑"""
        products = await self._load_products(session, [product_id for product_id, _ in lines])

        priced_lines = []
        items_total = ZERO
        for product_id, quantity in lines:
            product = products[product_id]
            unit_price = to_money(product.price)
            line_total = to_money(unit_price * quantity)
            items_total += line_total
            priced_lines.append((product, quantity, unit_price, line_total))

        discount = ZERO
        coupon_id = None
        if coupon_code:
            discount, coupon_id, coupon_code = await self._apply_coupon(session, coupon_code, items_total)

        total = compute_order_total(items_total, discount, shipping_fee, tax_amount)

        order = await self.create(session, Order, {
            "order_number": generate_order_number(self.settings.order_number_prefix),
            "user_id": user_id,
            "status": OrderStatus.PENDING.value,
            "payment_method": gateway.value,
            "total_amount": total,
            "discount_amount": discount,
            "shipping_fee": shipping_fee,
            "tax_amount": tax_amount,
            "currency": currency,
            "coupon_id": coupon_id,
            "coupon_code": coupon_code,
            "shipping_address_id": shipping_address_id,
            "billing_address_id": billing_address_id,
            "notes": notes,
        })

        for product, quantity, unit_price, line_total in priced_lines:
            await self.create(session, OrderItem, {
                "order_id": order.id,
                "product_id": product.id,
                "product_name": product.name,
                "quantity": quantity,
                "unit_price": unit_price,
                "total_price": line_total,
            })

        # 按商品ID升序扣减，避免并发下单互相死锁
        for product, quantity, _, _ in priced_lines:
            await self.inventory.record_tx(
                session,
                product.id,
                -quantity,
                InventoryChangeType.SALE,
                f"Order {order.order_number}",
                actor_id or user_id,
                order.id
            )

        await self._append_history(session, order.id, None, OrderStatus.PENDING.value, actor_id or user_id, "Order created")
        await self.payments.open_payment_tx(session, order.id, gateway, total, currency)

        self.logger.info(
            "Order created",
            order_id=order.id,
            order_number=order.order_number,
            total_amount=str(total),
            discount_amount=str(discount),
            line_count=len(priced_lines)
        )
        return await self._aggregate_tx(session, order.id)

    async def _load_products(self, session: AsyncSession, product_ids: List[int]) -> Dict[int, Product]:
        """读取商品价格快照；缺失或下架的商品拒绝下单"""
        result = await session.execute(select(Product).where(Product.id.in_(product_ids)))
        products = {product.id: product for product in result.scalars().all()}

        for product_id in product_ids:
            product = products.get(product_id)
            if product is None:
                raise NotFoundError(code="PRODUCT_NOT_FOUND", resource=f"Product {product_id}")
            if not product.is_active:
                raise ValidationError(code="PRODUCT_INACTIVE", detail=f"Product {product_id} is not available for sale")
        return products

    async def _apply_coupon(
        self,
        session: AsyncSession,
        coupon_code: str,
        items_total: Decimal
    ) -> Tuple[Decimal, int, str]:
        """校验并核销优惠券，返回 (优惠金额, 优惠券ID, 规范化代码)"""
        check = await self.coupons.validate_tx(session, coupon_code, items_total)
        if check.reason == CouponRejectReason.NOT_FOUND:
            raise NotFoundError(code="COUPON_NOT_FOUND", resource=f"Coupon {coupon_code}")
        if not check.valid:
            raise CouponInvalidError(
                code=f"COUPON_{check.reason.value.upper()}",
                reason=check.reason.value,
                detail=check.message
            )

        if not await self.coupons.redeem_tx(session, check.coupon_id):
            reason = CouponRejectReason.USAGE_EXHAUSTED
            raise CouponInvalidError(
                code=f"COUPON_{reason.value.upper()}",
                reason=reason.value,
                detail="Coupon usage limit reached"
            )
        return check.discount_amount, check.coupon_id, check.code

    # ---- 状态流转 ----

    async def confirm(self, order_id: int, actor_id: int) -> ServiceResult[Dict[str, Any]]:
        """确认订单：pending → confirmed"""
        return await self._run_transition(order_id, OrderAction.CONFIRM, actor_id, extra_values={"processed_by": actor_id})

    async def start_shipping(self, order_id: int, actor_id: Optional[int] = None) -> ServiceResult[Dict[str, Any]]:
        """开始配送：confirmed → shipping"""
        return await self._run_transition(order_id, OrderAction.START_SHIPPING, actor_id)

    async def mark_delivered(self, order_id: int, actor_id: Optional[int] = None) -> ServiceResult[Dict[str, Any]]:
        """确认送达：shipping → delivered"""
        return await self._run_transition(order_id, OrderAction.MARK_DELIVERED, actor_id)

    async def _run_transition(
        self,
        order_id: int,
        action: OrderAction,
        actor_id: Optional[int],
        note: Optional[str] = None,
        extra_values: Optional[Dict[str, Any]] = None
    ) -> ServiceResult[Dict[str, Any]]:
        try:
            with LogContext(actor_id=actor_id, order_id=order_id):
                order = await self.execute_with_transaction(
                    self._simple_transition_tx, order_id, action, actor_id, note, extra_values
                )
            return ServiceResult.ok(order)
        except OrderFlowException as e:
            return self.fail(e, f"Order {action.value}", order_id=order_id)

    async def _simple_transition_tx(
        self,
        session: AsyncSession,
        order_id: int,
        action: OrderAction,
        actor_id: Optional[int],
        note: Optional[str],
        extra_values: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        order = await self._get_order_or_raise(session, order_id)
        await self._transition_tx(session, order, action, actor_id, note, extra_values)
        return await self._aggregate_tx(session, order_id)

    async def _transition_tx(
        self,
        session: AsyncSession,
        order: Order,
        action: OrderAction,
        actor_id: Optional[int],
        note: Optional[str] = None,
        extra_values: Optional[Dict[str, Any]] = None
    ) -> Transition:
        """条件更新订单状态并追加历史；并发修改导致零行更新时抛出 InvalidTransitionError"""
        from_status = order.status
        edge = ensure_can_apply(action, from_status, order.order_number)

        values = {"status": edge.target.value, "updated_at": utcnow()}
        if extra_values:
            values.update(extra_values)

        stmt = (
            sql_update(Order)
            .where(Order.id == order.id, Order.status.in_(edge.source_values))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            current = await self._read_status(session, order.id)
            ensure_can_apply(action, current, order.order_number)
            raise InvalidTransitionError(
                detail=f"Order {order.order_number} changed concurrently, {action.value} aborted",
                code="ORDER_CONCURRENT_UPDATE",
                current_status=current,
                action=action.value
            )

        await self._append_history(session, order.id, from_status, edge.target.value, actor_id, note)

        self.logger.info(
            "Order status changed",
            order_id=order.id,
            transition=action.value,
            from_status=from_status,
            to_status=edge.target.value
        )
        return edge

    async def _read_status(self, session: AsyncSession, order_id: int) -> str:
        result = await session.execute(select(Order.status).where(Order.id == order_id))
        return result.scalar_one()

    async def _append_history(
        self,
        session: AsyncSession,
        order_id: int,
        from_status: Optional[str],
        to_status: str,
        actor_id: Optional[int],
        note: Optional[str]
    ) -> OrderStatusHistory:
        return await self.create(session, OrderStatusHistory, {
            "order_id": order_id,
            "from_status": from_status,
            "to_status": to_status,
            "actor_id": actor_id,
            "note": note,
        })

    async def cancel(self, order_id: int, actor_id: int, reason: Optional[str] = None) -> ServiceResult[Dict[str, Any]]:
        """取消订单：pending → cancelled，回补库存并作废未完成的支付"""
        try:
            with LogContext(actor_id=actor_id, order_id=order_id):
                order = await self.execute_with_transaction(self._cancel_tx, order_id, actor_id, reason)
            return ServiceResult.ok(order)
        except OrderFlowException as e:
            return self.fail(e, "Order cancel", order_id=order_id)

    async def _cancel_tx(
        self,
        session: AsyncSession,
        order_id: int,
        actor_id: int,
        reason: Optional[str]
    ) -> Dict[str, Any]:
        order = await self._get_order_or_raise(session, order_id)
        ensure_can_apply(OrderAction.CANCEL, order.status, order.order_number)

        # 在线支付已到账的订单不能直接取消，需走退款流程
        payment = await self.payments.authoritative_payment_tx(session, order_id)
        if payment is not None and payment.is_paid and payment.gateway != PaymentGateway.COD.value:
            raise InvalidTransitionError(
                detail=f"Order {order.order_number} is already paid via {payment.gateway}; refund it instead of cancelling",
                code="ORDER_ALREADY_PAID",
                current_status=order.status,
                action=OrderAction.CANCEL.value
            )

        await self._transition_tx(session, order, OrderAction.CANCEL, actor_id, reason)

        restored = await self.inventory.reverse_order_sales_tx(
            session, order_id, actor_id, f"Order {order.order_number} cancelled"
        )
        voided = await self.payments.void_open_payments_tx(session, order_id)

        self.logger.info(
            "Order cancelled",
            order_id=order_id,
            restored_entries=len(restored),
            voided_payments=voided
        )
        return await self._aggregate_tx(session, order_id)

    async def confirm_payment(
        self,
        order_id: int,
        paid: bool,
        actor_id: Optional[int] = None
    ) -> ServiceResult[Dict[str, Any]]:
        """COD 收款确认：只修改支付记录，不改变订单状态"""
        try:
            with LogContext(actor_id=actor_id, order_id=order_id):
                order = await self.execute_with_transaction(self._confirm_payment_tx, order_id, bool(paid), actor_id)
            return ServiceResult.ok(order)
        except OrderFlowException as e:
            return self.fail(e, "COD payment confirmation", order_id=order_id)

    async def _confirm_payment_tx(
        self,
        session: AsyncSession,
        order_id: int,
        paid: bool,
        actor_id: Optional[int]
    ) -> Dict[str, Any]:
        order = await self._get_order_or_raise(session, order_id)
        edge = ensure_can_apply(OrderAction.CONFIRM_PAYMENT, order.status, order.order_number)

        if order.payment_method != PaymentGateway.COD.value:
            raise InvalidTransitionError(
                detail=f"Order {order.order_number} is paid via {order.payment_method}, not COD",
                code="ORDER_NOT_COD",
                current_status=order.status,
                action=OrderAction.CONFIRM_PAYMENT.value
            )

        # 状态不变的条件写入：与并发的状态变更互斥
        guard = await session.execute(
            sql_update(Order)
            .where(Order.id == order_id, Order.status.in_(edge.source_values))
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if guard.rowcount != 1:
            current = await self._read_status(session, order_id)
            ensure_can_apply(OrderAction.CONFIRM_PAYMENT, current, order.order_number)
            raise InvalidTransitionError(
                detail=f"Order {order.order_number} changed concurrently, confirm_payment aborted",
                code="ORDER_CONCURRENT_UPDATE",
                current_status=current,
                action=OrderAction.CONFIRM_PAYMENT.value
            )

        payment = await self.payments.authoritative_payment_tx(session, order_id)
        if payment is None or payment.status == PaymentStatus.VOID.value:
            payment = await self.payments.open_payment_tx(
                session, order_id, PaymentGateway.COD, order.total_amount, order.currency
            )

        if paid:
            await self.payments.mark_paid_tx(session, payment.id)
        else:
            await self.payments.revert_to_pending_tx(session, payment)

        self.logger.info("COD payment confirmed", order_id=order_id, payment_id=payment.id, paid=paid)
        return await self._aggregate_tx(session, order_id)

    async def complete(self, order_id: int, actor_id: Optional[int] = None) -> ServiceResult[Dict[str, Any]]:
        """完成订单：delivered → completed"""
        try:
            with LogContext(actor_id=actor_id, order_id=order_id):
                order = await self.execute_with_transaction(self._complete_tx, order_id, actor_id)
            return ServiceResult.ok(order)
        except OrderFlowException as e:
            return self.fail(e, "Order complete", order_id=order_id)

    async def _complete_tx(self, session: AsyncSession, order_id: int, actor_id: Optional[int]) -> Dict[str, Any]:
        order = await self._get_order_or_raise(session, order_id)
        ensure_can_apply(OrderAction.COMPLETE, order.status, order.order_number)

        if self.settings.cod_completion_requires_payment and order.payment_method == PaymentGateway.COD.value:
            await self._ensure_cod_settled(session, order)

        await self._transition_tx(session, order, OrderAction.COMPLETE, actor_id)
        return await self._aggregate_tx(session, order_id)

    async def _ensure_cod_settled(self, session: AsyncSession, order: Order) -> None:
        """严格模式：COD 订单必须已确认收款或已有银行对账"""
        payment = await self.payments.authoritative_payment_tx(session, order.id)
        if payment is not None and payment.is_paid:
            return
        if await self.reconciliation.has_settled_reconciliation_tx(session, order.id):
            return
        raise InvalidTransitionError(
            detail=f"Order {order.order_number} cannot complete before COD payment is confirmed",
            code="COD_PAYMENT_NOT_CONFIRMED",
            current_status=order.status,
            action=OrderAction.COMPLETE.value
        )

    async def return_order(self, order_id: int, reason: str, processed_by: int) -> ServiceResult[Dict[str, Any]]:
        """退货：delivered|completed → returned，记录退货申请并回补库存"""
        try:
            if not reason or not reason.strip():
                raise ValidationError(code="MISSING_RETURN_REASON", detail="Return reason is required")
            with LogContext(actor_id=processed_by, order_id=order_id):
                order = await self.execute_with_transaction(self._return_tx, order_id, reason.strip(), processed_by)
            return ServiceResult.ok(order)
        except OrderFlowException as e:
            return self.fail(e, "Order return", order_id=order_id)

    async def _return_tx(
        self,
        session: AsyncSession,
        order_id: int,
        reason: str,
        processed_by: int
    ) -> Dict[str, Any]:
        order = await self._load_order(session, Order.id == order_id)
        if order is None:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {order_id}")

        await self._transition_tx(session, order, OrderAction.RETURN, processed_by, reason)

        returned_items = [
            {"product_id": item.product_id, "quantity": item.quantity, "unit_price": str(item.unit_price)}
            for item in order.items
        ]
        await self.create(session, ReturnRequest, {
            "order_id": order.id,
            "user_id": order.user_id,
            "reason": reason,
            "items": returned_items,
            "processed_at": utcnow(),
            "processed_by": processed_by,
        })

        for item in sorted(order.items, key=lambda i: i.product_id):
            await self.inventory.record_tx(
                session,
                item.product_id,
                item.quantity,
                InventoryChangeType.RETURN,
                f"Order {order.order_number} returned",
                processed_by,
                order.id
            )

        self.logger.info("Order returned", order_id=order_id, item_count=len(returned_items))
        return await self._aggregate_tx(session, order_id)

    # ---- 查询 ----

    async def get_order(self, order_id: int) -> ServiceResult[Dict[str, Any]]:
        """获取订单聚合（订单、订单行、权威支付、状态历史）"""
        try:
            order = await self.execute_with_session(self._get_order_query, Order.id == order_id, f"Order {order_id}")
            return ServiceResult.ok(order)
        except OrderFlowException as e:
            return self.fail(e, "Get order", order_id=order_id)

    async def get_order_by_number(self, order_number: str) -> ServiceResult[Dict[str, Any]]:
        """按订单号获取订单聚合"""
        try:
            order = await self.execute_with_session(
                self._get_order_query, Order.order_number == order_number, f"Order {order_number}"
            )
            return ServiceResult.ok(order)
        except OrderFlowException as e:
            return self.fail(e, "Get order by number", order_number=order_number)

    async def _get_order_query(self, session: AsyncSession, criterion, resource: str) -> Dict[str, Any]:
        order = await self._load_order(session, criterion)
        if order is None:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource=resource)
        return await self._serialize(session, order)

    async def list_by_status(
        self,
        status: Union[OrderStatus, str],
        limit: int = 50,
        offset: int = 0
    ) -> ServiceResult[List[Dict[str, Any]]]:
        """按状态列出订单（最新在前）"""
        try:
            status = self._validate_status(status)
            limit, offset = self._page(limit, offset)
            orders = await self.execute_with_session(
                self._list_query, [Order.status == status.value], limit, offset
            )
            return ServiceResult.ok(orders, metadata={"limit": limit, "offset": offset})
        except OrderFlowException as e:
            return self.fail(e, "List orders by status", status=str(status))

    async def list_by_user(
        self,
        user_id: int,
        status: Optional[Union[OrderStatus, str]] = None,
        limit: int = 50,
        offset: int = 0
    ) -> ServiceResult[List[Dict[str, Any]]]:
        """列出用户的订单（最新在前）"""
        try:
            criteria = [Order.user_id == user_id]
            if status is not None:
                criteria.append(Order.status == self._validate_status(status).value)
            limit, offset = self._page(limit, offset)
            orders = await self.execute_with_session(self._list_query, criteria, limit, offset)
            return ServiceResult.ok(orders, metadata={"limit": limit, "offset": offset})
        except OrderFlowException as e:
            return self.fail(e, "List orders by user", user_id=user_id)

    def _validate_status(self, status: Union[OrderStatus, str]) -> OrderStatus:
        try:
            return OrderStatus(status)
        except ValueError:
            raise ValidationError(code="INVALID_ORDER_STATUS", detail=f"Unknown order status: {status}")

    def _page(self, limit: int, offset: int) -> Tuple[int, int]:
        """分页参数：limit 超过上限时截断"""
        if limit <= 0 or offset < 0:
            raise ValidationError(
                code="INVALID_PAGINATION",
                detail=f"limit must be positive and offset non-negative, got limit={limit} offset={offset}"
            )
        return min(limit, self.settings.list_page_size_max), offset

    async def _list_query(self, session: AsyncSession, criteria, limit: int, offset: int) -> List[Dict[str, Any]]:
        stmt = (
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.status_history))
            .where(*criteria)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await session.execute(stmt)
        return [await self._serialize(session, order) for order in result.scalars().all()]

    # ---- 内部 ----

    async def _get_order_or_raise(self, session: AsyncSession, order_id: int) -> Order:
        order = await self.get_by_id(session, Order, order_id)
        if order is None:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {order_id}")
        return order

    async def _load_order(self, session: AsyncSession, criterion) -> Optional[Order]:
        """加载订单及其订单行、状态历史（异步会话不能懒加载）"""
        stmt = (
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.status_history))
            .where(criterion)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _aggregate_tx(self, session: AsyncSession, order_id: int) -> Dict[str, Any]:
        order = await self._load_order(session, Order.id == order_id)
        return await self._serialize(session, order)

    async def _serialize(self, session: AsyncSession, order: Order) -> Dict[str, Any]:
        payment: Optional[Payment] = await self.payments.authoritative_payment_tx(session, order.id)
        data = order.to_dict()
        data["items"] = [item.to_dict() for item in order.items]
        data["payment"] = payment.to_dict() if payment else None
        data["status_history"] = [entry.to_dict() for entry in order.status_history]
        data["allowed_actions"] = [action.value for action in allowed_actions(order.status)]
        return data

"""
支付子账服务
跟踪每个订单的支付尝试；paid 状态不可逆（重复标记为 paid 是空操作）
"""
from datetime import datetime
from typing import Dict, List, Optional, Any, Union

from sqlalchemy import select, case, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from of_core.models import Order, Payment
from of_core.models.base import utcnow
from of_core.models.enums import PaymentGateway, PaymentStatus
from of_core.utils.errors import (
    OrderFlowException, ValidationError, NotFoundError, InvalidTransitionError
)
from of_core.utils.money import to_money
from .base import BaseService, ServiceResult, RepositoryMixin

# 权威支付排序：paid 优先于 pending，其余最后
_AUTHORITY_RANK = case(
    (Payment.status == PaymentStatus.PAID.value, 0),
    (Payment.status == PaymentStatus.PENDING.value, 1),
    else_=2
)


class PaymentLedgerService(BaseService, RepositoryMixin):
    """支付子账服务"""

    async def open_payment(
        self,
        order_id: int,
        gateway: Union[PaymentGateway, str],
        amount: Any
    ) -> ServiceResult[Dict[str, Any]]:
        """为订单新建一条 pending 支付记录"""
        try:
            payment = await self.execute_with_transaction(self._open_payment_checked_tx, order_id, gateway, amount)
            return ServiceResult.ok(payment.to_dict())
        except OrderFlowException as e:
            return self.fail(e, "Open payment", order_id=order_id)

    async def _open_payment_checked_tx(
        self,
        session: AsyncSession,
        order_id: int,
        gateway: Union[PaymentGateway, str],
        amount: Any
    ) -> Payment:
        order = await self.get_by_id(session, Order, order_id)
        if order is None:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {order_id}")

        settled = await self.exists(session, Payment, order_id=order_id, status=PaymentStatus.PAID.value)
        if settled:
            raise InvalidTransitionError(
                detail=f"Order {order.order_number} already has a paid payment",
                code="PAYMENT_ALREADY_SETTLED"
            )
        return await self.open_payment_tx(session, order_id, gateway, amount, order.currency)

    async def open_payment_tx(
        self,
        session: AsyncSession,
        order_id: int,
        gateway: Union[PaymentGateway, str],
        amount: Any,
        currency: Optional[str] = None
    ) -> Payment:
        """事务中创建支付记录"""
        gateway = self._validate_gateway(gateway)
        try:
            amount = to_money(amount)
        except ValueError as e:
            raise ValidationError(code="INVALID_PAYMENT_AMOUNT", detail=str(e))
        if amount < 0:
            raise ValidationError(code="INVALID_PAYMENT_AMOUNT", detail=f"Payment amount cannot be negative: {amount}")

        data = {
            "order_id": order_id,
            "gateway": gateway.value,
            "status": PaymentStatus.PENDING.value,
            "amount": amount,
        }
        if currency:
            data["currency"] = currency
        payment = await self.create(session, Payment, data)

        self.logger.info("Payment opened", order_id=order_id, payment_id=payment.id, gateway=gateway.value)
        return payment

    def _validate_gateway(self, gateway: Union[PaymentGateway, str]) -> PaymentGateway:
        try:
            return PaymentGateway(str(gateway.value if isinstance(gateway, PaymentGateway) else gateway).lower())
        except ValueError:
            raise ValidationError(
                code="INVALID_PAYMENT_GATEWAY",
                detail=f"Payment gateway must be one of {[g.value for g in PaymentGateway]}, got: {gateway}"
            )

    async def mark_paid(
        self,
        payment_id: int,
        external_txn_id: Optional[str] = None
    ) -> ServiceResult[Dict[str, Any]]:
        """网关回调：标记为已支付（幂等）"""
        try:
            payment = await self.execute_with_transaction(self.mark_paid_tx, payment_id, external_txn_id)
            return ServiceResult.ok(payment.to_dict())
        except OrderFlowException as e:
            return self.fail(e, "Mark payment paid", payment_id=payment_id)

    async def mark_paid_tx(
        self,
        session: AsyncSession,
        payment_id: int,
        external_txn_id: Optional[str] = None,
        paid_at: Optional[datetime] = None
    ) -> Payment:
        """事务中标记已支付"""
        payment = await self._get_payment_for_update(session, payment_id)

        if payment.status == PaymentStatus.PAID.value:
            self.logger.debug("Payment already paid, skipping", payment_id=payment_id)
            return payment

        if payment.status == PaymentStatus.VOID.value:
            raise InvalidTransitionError(
                detail=f"Payment {payment_id} is void and cannot be marked paid",
                code="PAYMENT_VOID",
                current_status=payment.status,
                action="mark_paid"
            )

        # 每个订单最多一笔已支付记录
        other_paid = await session.execute(
            select(Payment.id).where(
                Payment.order_id == payment.order_id,
                Payment.status == PaymentStatus.PAID.value,
                Payment.id != payment.id
            ).limit(1)
        )
        if other_paid.scalar_one_or_none() is not None:
            raise InvalidTransitionError(
                detail=f"Order {payment.order_id} already has a paid payment; payment {payment_id} cannot be marked paid",
                code="PAYMENT_ALREADY_SETTLED",
                current_status=payment.status,
                action="mark_paid"
            )

        values = {
            "status": PaymentStatus.PAID.value,
            "paid_at": paid_at or utcnow(),
            "updated_at": utcnow(),
        }
        if external_txn_id:
            values["gateway_transaction_id"] = external_txn_id

        await self._guarded_update(session, payment, [payment.status], values, "mark_paid")
        self.logger.info("Payment marked paid", payment_id=payment_id, order_id=payment.order_id)
        return payment

    async def mark_failed(self, payment_id: int) -> ServiceResult[Dict[str, Any]]:
        """网关回调：标记为失败"""
        try:
            payment = await self.execute_with_transaction(self.mark_failed_tx, payment_id)
            return ServiceResult.ok(payment.to_dict())
        except OrderFlowException as e:
            return self.fail(e, "Mark payment failed", payment_id=payment_id)

    async def mark_failed_tx(self, session: AsyncSession, payment_id: int) -> Payment:
        """事务中标记失败：paid 不可回退"""
        payment = await self._get_payment_for_update(session, payment_id)

        if payment.status == PaymentStatus.FAILED.value:
            return payment

        if payment.status != PaymentStatus.PENDING.value:
            raise InvalidTransitionError(
                detail=f"Payment {payment_id} is {payment.status} and cannot be marked failed",
                code="PAYMENT_ALREADY_PAID" if payment.is_paid else "PAYMENT_VOID",
                current_status=payment.status,
                action="mark_failed"
            )

        await self._guarded_update(
            session, payment, [PaymentStatus.PENDING.value],
            {"status": PaymentStatus.FAILED.value, "updated_at": utcnow()},
            "mark_failed"
        )
        self.logger.info("Payment marked failed", payment_id=payment_id, order_id=payment.order_id)
        return payment

    async def revert_to_pending_tx(self, session: AsyncSession, payment: Payment) -> Payment:
        """COD 人工更正：把已确认收款退回 pending（网关支付不允许）"""
        if payment.gateway != PaymentGateway.COD.value:
            raise InvalidTransitionError(
                detail=f"Only COD payments can be reverted to pending, payment {payment.id} is {payment.gateway}",
                code="PAYMENT_NOT_COD",
                current_status=payment.status,
                action="revert_to_pending"
            )
        if payment.status == PaymentStatus.PENDING.value:
            return payment

        await self._guarded_update(
            session, payment, [PaymentStatus.PAID.value, PaymentStatus.FAILED.value],
            {"status": PaymentStatus.PENDING.value, "paid_at": None, "updated_at": utcnow()},
            "revert_to_pending"
        )
        self.logger.info("COD payment reverted to pending", payment_id=payment.id, order_id=payment.order_id)
        return payment

    async def void_open_payments_tx(self, session: AsyncSession, order_id: int) -> int:
        """作废订单的所有 pending 支付"""
        stmt = (
            sql_update(Payment)
            .where(
                Payment.order_id == order_id,
                Payment.status == PaymentStatus.PENDING.value
            )
            .values(status=PaymentStatus.VOID.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount:
            self.logger.info("Voided open payments", order_id=order_id, count=result.rowcount)
        return result.rowcount

    async def _get_payment_for_update(self, session: AsyncSession, payment_id: int) -> Payment:
        payment = await self.get_by_id(session, Payment, payment_id, for_update=True)
        if payment is None:
            raise NotFoundError(code="PAYMENT_NOT_FOUND", resource=f"Payment {payment_id}")
        return payment

    async def _guarded_update(
        self,
        session: AsyncSession,
        payment: Payment,
        expected_statuses: List[str],
        values: Dict[str, Any],
        action: str
    ) -> None:
        """按预期状态条件更新，防止并发回调覆盖"""
        stmt = (
            sql_update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(expected_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise InvalidTransitionError(
                detail=f"Payment {payment.id} changed concurrently, {action} aborted",
                code="PAYMENT_CONCURRENT_UPDATE",
                action=action
            )
        for key, value in values.items():
            set_committed_value(payment, key, value)

    async def authoritative_payment(self, order_id: int) -> ServiceResult[Optional[Dict[str, Any]]]:
        """订单的权威支付记录"""
        try:
            payment = await self.execute_with_session(self._authoritative_payment_query, order_id)
            return ServiceResult.ok(payment.to_dict() if payment else None)
        except OrderFlowException as e:
            return self.fail(e, "Authoritative payment", order_id=order_id)

    async def _authoritative_payment_query(self, session: AsyncSession, order_id: int) -> Optional[Payment]:
        if not await self.exists(session, Order, id=order_id):
            raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {order_id}")
        return await self.authoritative_payment_tx(session, order_id)

    async def authoritative_payment_tx(self, session: AsyncSession, order_id: int) -> Optional[Payment]:
        """paid 优先于 pending；同级取最新创建（ID 兜底）"""
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(_AUTHORITY_RANK, Payment.created_at.desc(), Payment.id.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_payments(self, order_id: int) -> ServiceResult[List[Dict[str, Any]]]:
        """订单的全部支付记录（按创建顺序）"""
        try:
            payments = await self.execute_with_session(
                self.get_many_by_field, Payment, "order_id", order_id
            )
            return ServiceResult.ok([payment.to_dict() for payment in payments])
        except OrderFlowException as e:
            return self.fail(e, "List payments", order_id=order_id)


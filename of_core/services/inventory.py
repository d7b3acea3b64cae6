"""
库存台账服务
库存数量只通过条件写入变化：检查与扣减在同一条 UPDATE 中完成，随后追加台账记录
"""
from typing import Dict, List, Optional, Any, Union

from sqlalchemy import select, func, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

from of_core.models import InventoryTransaction, Product
from of_core.models.enums import InventoryChangeType
from of_core.utils.errors import (
    OrderFlowException, ValidationError, NotFoundError, InsufficientStockError
)
from .base import BaseService, ServiceResult, RepositoryMixin

# 变动类型的符号约束：-1 只能出库，1 只能入库，0 两者皆可
CHANGE_TYPE_SIGNS = {
    InventoryChangeType.SALE: -1,
    InventoryChangeType.OUT: -1,
    InventoryChangeType.IN: 1,
    InventoryChangeType.RESTOCK: 1,
    InventoryChangeType.RETURN: 1,
    InventoryChangeType.ADJUSTMENT: 0,
}


class InventoryLedgerService(BaseService, RepositoryMixin):
    """库存台账服务"""

    async def record(
        self,
        product_id: int,
        delta: int,
        change_type: Union[InventoryChangeType, str],
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
        order_id: Optional[int] = None
    ) -> ServiceResult[Dict[str, Any]]:
        """记录一次库存变动（独立事务）"""
        try:
            entry = await self.execute_with_transaction(
                self.record_tx,
                product_id, delta, change_type, note, actor_id, order_id
            )
            return ServiceResult.ok(entry.to_dict())
        except OrderFlowException as e:
            return self.fail(e, "Inventory record", product_id=product_id, delta=delta)

    def _validate_change(self, delta: Any, change_type: Union[InventoryChangeType, str]) -> InventoryChangeType:
        """验证变动量和类型"""
        try:
            change_type = InventoryChangeType(change_type)
        except ValueError:
            raise ValidationError(
                code="INVALID_CHANGE_TYPE",
                detail=f"Unknown inventory change type: {change_type}"
            )

        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError(
                code="INVALID_QUANTITY_TYPE",
                detail=f"Inventory delta must be an integer, got: {delta!r}"
            )
        if delta == 0:
            raise ValidationError(code="ZERO_QUANTITY", detail="Inventory delta cannot be zero")

        sign = CHANGE_TYPE_SIGNS[change_type]
        if sign and (delta > 0) != (sign > 0):
            raise ValidationError(
                code="INVALID_DELTA_SIGN",
                detail=f"{change_type.value} requires a {'positive' if sign > 0 else 'negative'} delta, got {delta}"
            )
        return change_type

    async def record_tx(
        self,
        session: AsyncSession,
        product_id: int,
        delta: int,
        change_type: Union[InventoryChangeType, str],
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
        order_id: Optional[int] = None
    ) -> InventoryTransaction:
        """事务中的库存变动：条件更新计数器 + 追加台账"""
        change_type = self._validate_change(delta, change_type)

        # 库存下限检查与写入是同一条语句，不信任之前读到的库存
        stmt = (
            sql_update(Product)
            .where(
                Product.id == product_id,
                Product.stock_quantity + delta >= 0
            )
            .values(stock_quantity=Product.stock_quantity + delta)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)

        stock_after = await self._read_stock(session, product_id)
        if result.rowcount != 1:
            if stock_after is None:
                raise NotFoundError(code="PRODUCT_NOT_FOUND", resource=f"Product {product_id}")
            raise InsufficientStockError(product_id=product_id, requested=-delta, available=stock_after)

        entry = await self.create(session, InventoryTransaction, {
            "product_id": product_id,
            "quantity_change": delta,
            "change_type": change_type.value,
            "order_id": order_id,
            "note": note,
            "created_by": actor_id,
            "stock_after": stock_after,
        })

        self.logger.info(
            "Inventory recorded",
            product_id=product_id,
            delta=delta,
            change_type=change_type.value,
            stock_after=stock_after,
            order_id=order_id
        )
        return entry

    async def _read_stock(self, session: AsyncSession, product_id: int) -> Optional[int]:
        result = await session.execute(
            select(Product.stock_quantity).where(Product.id == product_id)
        )
        return result.scalar_one_or_none()

    async def reverse_order_sales_tx(
        self,
        session: AsyncSession,
        order_id: int,
        actor_id: Optional[int] = None,
        note: Optional[str] = None
    ) -> List[InventoryTransaction]:
        """为订单的每条 SALE 记录写入等量的 RETURN 补偿记录"""
        stmt = (
            select(InventoryTransaction)
            .where(
                InventoryTransaction.order_id == order_id,
                InventoryTransaction.change_type == InventoryChangeType.SALE.value
            )
            .order_by(InventoryTransaction.product_id, InventoryTransaction.id)
        )
        sales = list((await session.execute(stmt)).scalars().all())

        entries = []
        for sale in sales:
            entries.append(await self.record_tx(
                session,
                sale.product_id,
                -sale.quantity_change,
                InventoryChangeType.RETURN,
                note,
                actor_id,
                order_id
            ))
        return entries

    async def current_stock(self, product_id: int) -> ServiceResult[int]:
        """当前库存（物化计数器）"""
        try:
            stock = await self.execute_with_session(self._current_stock_query, product_id)
            return ServiceResult.ok(stock)
        except OrderFlowException as e:
            return self.fail(e, "Current stock", product_id=product_id)

    async def _current_stock_query(self, session: AsyncSession, product_id: int) -> int:
        stock = await self._read_stock(session, product_id)
        if stock is None:
            raise NotFoundError(code="PRODUCT_NOT_FOUND", resource=f"Product {product_id}")
        return stock

    async def ledger_stock(self, product_id: int) -> ServiceResult[int]:
        """按台账合计计算库存（用于核对物化计数器）"""
        try:
            stock = await self.execute_with_session(self._ledger_stock_query, product_id)
            return ServiceResult.ok(stock)
        except OrderFlowException as e:
            return self.fail(e, "Ledger stock", product_id=product_id)

    async def _ledger_stock_query(self, session: AsyncSession, product_id: int) -> int:
        if not await self.exists(session, Product, id=product_id):
            raise NotFoundError(code="PRODUCT_NOT_FOUND", resource=f"Product {product_id}")
        result = await session.execute(
            select(func.coalesce(func.sum(InventoryTransaction.quantity_change), 0))
            .where(InventoryTransaction.product_id == product_id)
        )
        return int(result.scalar_one())

    async def history(self, product_id: int, limit: int = 50) -> ServiceResult[List[Dict[str, Any]]]:
        """库存变动历史（最新在前）"""
        try:
            entries = await self.execute_with_session(self._history_query, product_id, limit)
            return ServiceResult.ok(entries)
        except OrderFlowException as e:
            return self.fail(e, "Inventory history", product_id=product_id)

    async def _history_query(self, session: AsyncSession, product_id: int, limit: int) -> List[Dict[str, Any]]:
        stmt = (
            select(InventoryTransaction)
            .where(InventoryTransaction.product_id == product_id)
            .order_by(InventoryTransaction.id.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return [entry.to_dict() for entry in result.scalars().all()]

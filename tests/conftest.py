"""
Pytest 配置和 fixtures
每个测试使用独立的 SQLite 文件数据库
"""
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from of_core.config import Settings
from of_core.database import DatabaseManager, set_db_manager
from of_core.models import BankAccount, Coupon, Product
from of_core.models.base import utcnow
from of_core.utils.logger import setup_logging
from of_core.services import (
    CouponValidator,
    InventoryLedgerService,
    OrdersService,
    PaymentLedgerService,
    ReconciliationService,
)


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """测试期间按配置输出 JSON 日志（级别 DEBUG）"""
    config = Settings(log_level="DEBUG", log_format="json")
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        enable_pii_masking=config.log_pii_masking
    )


@pytest.fixture
def settings(tmp_path):
    """测试配置"""
    return Settings(db_url=f"sqlite+aiosqlite:///{tmp_path / 'orderflow_test.db'}")


@pytest_asyncio.fixture
async def db_manager(settings):
    """数据库管理器 fixture"""
    manager = DatabaseManager(settings)
    await manager.create_tables()
    set_db_manager(manager)

    yield manager

    set_db_manager(None)
    await manager.drop_tables()
    await manager.close()


@pytest_asyncio.fixture
async def db_session(db_manager):
    """数据库会话 fixture"""
    async with db_manager.get_session() as session:
        yield session


async def _insert(db_manager, instance):
    async with db_manager.get_transaction() as session:
        session.add(instance)
        await session.flush()
        return instance.id


@pytest_asyncio.fixture
async def make_product(db_manager):
    """创建商品；库存通过台账入库，保持计数器与台账一致"""
    inventory = InventoryLedgerService(db_manager)
    counter = {"n": 0}

    async def factory(price="50000", stock=10, name=None, is_active=True):
        counter["n"] += 1
        product_id = await _insert(db_manager, Product(
            sku=f"SKU-{counter['n']:04d}",
            name=name or f"Product {counter['n']}",
            price=Decimal(price),
            is_active=is_active,
            stock_quantity=0,
        ))
        if stock:
            result = await inventory.record(product_id, stock, "RESTOCK", note="initial stock")
            assert result.success, result.error
        return product_id

    return factory


@pytest_asyncio.fixture
async def make_coupon(db_manager):
    """创建优惠券"""

    async def factory(code="SAVE10", **fields):
        now = utcnow()
        data = {
            "code": code,
            "discount_percent": Decimal("10"),
            "start_date": now - timedelta(days=7),
            "end_date": now + timedelta(days=7),
            "is_active": True,
        }
        data.update(fields)
        return await _insert(db_manager, Coupon(**data))

    return factory


@pytest_asyncio.fixture
async def bank_account(db_manager):
    """银行账户"""
    return await _insert(db_manager, BankAccount(
        bank_name="Vietcombank",
        account_number="0071000123456",
        account_name="ORDERFLOW SHOP",
        currency="VND",
        balance=Decimal("0"),
    ))


@pytest.fixture
def orders(db_manager):
    return OrdersService(db_manager)


@pytest.fixture
def inventory(db_manager):
    return InventoryLedgerService(db_manager)


@pytest.fixture
def payments(db_manager):
    return PaymentLedgerService(db_manager)


@pytest.fixture
def coupons(db_manager):
    return CouponValidator(db_manager)


@pytest.fixture
def reconciliation(db_manager):
    return ReconciliationService(db_manager)


@pytest.fixture
def place_order(orders, make_product):
    """下一个简单订单，返回订单聚合"""

    async def factory(payment_method="cod", quantity=1, price="50000", stock=10, **kwargs):
        product_id = await make_product(price=price, stock=stock)
        result = await orders.create_order(
            user_id=kwargs.pop("user_id", 7),
            items=[{"product_id": product_id, "quantity": quantity}],
            shipping_address_id=1,
            payment_method=payment_method,
            **kwargs
        )
        assert result.success, result.error
        return result.data

    return factory

"""
订单服务测试：下单、状态流转、取消、退货、COD 收款确认
"""
import asyncio
import re
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from of_core.config import Settings
from of_core.database import DatabaseManager
from of_core.models import Coupon, InventoryTransaction, Order, ReturnRequest
from of_core.models.base import utcnow
from of_core.services import OrdersService


def _assert_total_invariant(order):
    items_total = sum(Decimal(item["total_price"]) for item in order["items"])
    expected = items_total - Decimal(order["discount_amount"]) + Decimal(order["shipping_fee"]) + Decimal(order["tax_amount"])
    assert Decimal(order["total_amount"]) == expected
    assert Decimal(order["total_amount"]) >= 0


async def _advance(orders, order_id, *steps):
    for step in steps:
        if step == "confirm":
            result = await orders.confirm(order_id, actor_id=99)
        else:
            result = await getattr(orders, step)(order_id)
        assert result.success, result.error
    return result.data


class TestCreateOrder:

    async def test_worked_example_totals(self, orders, make_product, make_coupon):
        first = await make_product(price="50000")
        second = await make_product(price="30000")
        await make_coupon(code="SAVE10", discount_percent=Decimal("10"))

        result = await orders.create_order(
            user_id=7,
            items=[{"product_id": first, "quantity": 2}, {"product_id": second, "quantity": 1}],
            shipping_address_id=1,
            payment_method="cod",
            coupon_code="SAVE10",
            shipping_fee="20000",
        )

        assert result.success, result.error
        order = result.data
        assert Decimal(order["total_amount"]) == Decimal("137000")
        assert Decimal(order["discount_amount"]) == Decimal("13000")
        assert order["coupon_code"] == "SAVE10"
        assert order["status"] == "pending"
        assert order["currency"] == "VND"
        assert re.fullmatch(r"ORD-\d{13}-[A-Z0-9]{9}", order["order_number"])
        assert [h["to_status"] for h in order["status_history"]] == ["pending"]
        assert order["payment"]["status"] == "pending"
        assert order["payment"]["gateway"] == "cod"
        _assert_total_invariant(order)

    async def test_stock_decremented_with_sale_entries(self, orders, inventory, make_product, db_session):
        product_id = await make_product(stock=5)

        result = await orders.create_order(
            user_id=7,
            items=[{"product_id": product_id, "quantity": 2}],
            shipping_address_id=1,
            payment_method="momo",
        )

        assert result.success
        assert (await inventory.current_stock(product_id)).data == 3
        sales = (await db_session.execute(
            select(InventoryTransaction).where(
                InventoryTransaction.order_id == result.data["id"],
                InventoryTransaction.change_type == "SALE",
            )
        )).scalars().all()
        assert [sale.quantity_change for sale in sales] == [-2]

    async def test_duplicate_lines_are_merged(self, orders, make_product):
        product_id = await make_product(price="1000")

        result = await orders.create_order(
            user_id=7,
            items=[{"product_id": product_id, "quantity": 1}, {"product_id": product_id, "quantity": 2}],
            shipping_address_id=1,
            payment_method="cod",
        )

        assert result.success
        assert len(result.data["items"]) == 1
        assert result.data["items"][0]["quantity"] == 3
        assert Decimal(result.data["items"][0]["total_price"]) == Decimal("3000")

    async def test_insufficient_stock_rolls_back_everything(self, orders, inventory, make_product, make_coupon, db_session):
        plenty = await make_product(stock=10)
        scarce = await make_product(stock=1)
        coupon_id = await make_coupon(code="ONCE", usage_limit=1)

        result = await orders.create_order(
            user_id=7,
            items=[{"product_id": plenty, "quantity": 3}, {"product_id": scarce, "quantity": 2}],
            shipping_address_id=1,
            payment_method="cod",
            coupon_code="ONCE",
        )

        assert not result.success
        assert result.error_kind == "insufficient_stock"
        assert (await inventory.current_stock(plenty)).data == 10
        assert (await inventory.current_stock(scarce)).data == 1
        assert (await db_session.execute(select(Order))).scalars().all() == []
        coupon = await db_session.get(Coupon, coupon_id)
        assert coupon.used_count == 0

    async def test_coupon_usage_is_counted(self, orders, make_product, make_coupon, db_session):
        product_id = await make_product()
        coupon_id = await make_coupon(code="TWICE", usage_limit=1)

        first = await orders.create_order(
            user_id=7, items=[{"product_id": product_id, "quantity": 1}],
            shipping_address_id=1, payment_method="cod", coupon_code="TWICE",
        )
        second = await orders.create_order(
            user_id=8, items=[{"product_id": product_id, "quantity": 1}],
            shipping_address_id=1, payment_method="cod", coupon_code="TWICE",
        )

        assert first.success
        assert not second.success
        assert second.error_kind == "coupon_invalid"
        assert second.metadata["reason"] == "usage_exhausted"
        assert (await db_session.get(Coupon, coupon_id)).used_count == 1

    async def test_expired_coupon_is_rejected(self, orders, make_product, make_coupon):
        product_id = await make_product()
        await make_coupon(
            code="OLD",
            start_date=utcnow() - timedelta(days=30),
            end_date=utcnow() - timedelta(days=1),
        )

        result = await orders.create_order(
            user_id=7, items=[{"product_id": product_id, "quantity": 1}],
            shipping_address_id=1, payment_method="cod", coupon_code="OLD",
        )

        assert not result.success
        assert result.error_code == "COUPON_EXPIRED"
        assert result.metadata["reason"] == "expired"

    async def test_unknown_coupon_is_not_found(self, orders, make_product):
        product_id = await make_product()

        result = await orders.create_order(
            user_id=7, items=[{"product_id": product_id, "quantity": 1}],
            shipping_address_id=1, payment_method="cod", coupon_code="GHOST",
        )

        assert result.error_code == "COUPON_NOT_FOUND"
        assert result.error_kind == "not_found"

    @pytest.mark.parametrize("items,code", [
        ([], "EMPTY_ORDER"),
        ([{"product_id": 1, "quantity": 0}], "INVALID_QUANTITY"),
        ([{"product_id": 1, "quantity": -1}], "INVALID_QUANTITY"),
        ([{"product_id": 1, "quantity": "2"}], "INVALID_QUANTITY"),
        ([{"quantity": 1}], "MISSING_PRODUCT_ID"),
        ([{"product_id": "abc", "quantity": 1}], "INVALID_PRODUCT_ID"),
        ([{"product_id": True, "quantity": 1}], "INVALID_PRODUCT_ID"),
        ([{"product_id": 0, "quantity": 1}], "INVALID_PRODUCT_ID"),
    ])
    async def test_invalid_items(self, orders, db_manager, items, code):
        result = await orders.create_order(user_id=7, items=items, shipping_address_id=1, payment_method="cod")
        assert not result.success
        assert result.error_code == code

    async def test_blank_coupon_code_rejected(self, orders, inventory, make_product):
        product_id = await make_product(stock=5)

        result = await orders.create_order(
            user_id=7,
            items=[{"product_id": product_id, "quantity": 1}],
            shipping_address_id=1,
            payment_method="cod",
            coupon_code="   ",
        )

        assert not result.success
        assert result.error_kind == "validation_error"
        assert result.error_code == "MISSING_COUPON_CODE"
        assert (await inventory.current_stock(product_id)).data == 5

    async def test_missing_and_inactive_products(self, orders, make_product):
        inactive = await make_product(is_active=False)

        missing = await orders.create_order(
            user_id=7, items=[{"product_id": 4242, "quantity": 1}], shipping_address_id=1, payment_method="cod",
        )
        hidden = await orders.create_order(
            user_id=7, items=[{"product_id": inactive, "quantity": 1}], shipping_address_id=1, payment_method="cod",
        )

        assert missing.error_code == "PRODUCT_NOT_FOUND"
        assert hidden.error_code == "PRODUCT_INACTIVE"

    async def test_unknown_payment_method(self, orders, make_product):
        product_id = await make_product()
        result = await orders.create_order(
            user_id=7, items=[{"product_id": product_id, "quantity": 1}], shipping_address_id=1, payment_method="cash",
        )
        assert result.error_code == "INVALID_PAYMENT_METHOD"

    async def test_concurrent_orders_for_last_unit(self, orders, inventory, make_product):
        product_id = await make_product(stock=1)

        async def buy(user_id):
            return await orders.create_order(
                user_id=user_id,
                items=[{"product_id": product_id, "quantity": 1}],
                shipping_address_id=1,
                payment_method="cod",
            )

        results = await asyncio.gather(buy(1), buy(2))

        succeeded = [r for r in results if r.success]
        failed = [r for r in results if not r.success]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert failed[0].error_kind == "insufficient_stock"
        assert (await inventory.current_stock(product_id)).data == 0
        assert (await inventory.ledger_stock(product_id)).data == 0


class TestTransitions:

    async def test_happy_path_records_history(self, orders, place_order):
        order = await place_order(shipping_fee="15000", tax_amount="5000")

        final = await _advance(orders, order["id"], "confirm", "start_shipping", "mark_delivered", "complete")

        assert final["status"] == "completed"
        assert final["processed_by"] == 99
        assert [(h["from_status"], h["to_status"]) for h in final["status_history"]] == [
            (None, "pending"),
            ("pending", "confirmed"),
            ("confirmed", "shipping"),
            ("shipping", "delivered"),
            ("delivered", "completed"),
        ]
        assert final["allowed_actions"] == ["return"]
        _assert_total_invariant(final)

    async def test_illegal_transition_leaves_order_untouched(self, orders, place_order):
        order = await place_order()

        result = await orders.mark_delivered(order["id"])

        assert not result.success
        assert result.error_kind == "invalid_transition"
        assert result.metadata["current_status"] == "pending"
        current = await orders.get_order(order["id"])
        assert current.data["status"] == "pending"
        assert len(current.data["status_history"]) == 1

    async def test_cannot_cancel_after_confirmation(self, orders, place_order):
        order = await place_order()
        await _advance(orders, order["id"], "confirm")

        result = await orders.cancel(order["id"], actor_id=7)

        assert result.error_kind == "invalid_transition"

    async def test_unknown_order(self, orders, db_manager):
        result = await orders.confirm(31337, actor_id=1)
        assert result.error_code == "ORDER_NOT_FOUND"


class TestCancel:

    async def test_cancel_restores_stock_and_voids_payment(self, orders, inventory, place_order, db_session):
        order = await place_order(quantity=3, stock=5)
        product_id = order["items"][0]["product_id"]
        assert (await inventory.current_stock(product_id)).data == 2

        result = await orders.cancel(order["id"], actor_id=7, reason="changed my mind")

        assert result.success
        assert result.data["status"] == "cancelled"
        assert result.data["status_history"][-1]["note"] == "changed my mind"
        assert result.data["payment"]["status"] == "void"
        assert (await inventory.current_stock(product_id)).data == 5
        assert (await inventory.ledger_stock(product_id)).data == 5

        entries = (await db_session.execute(
            select(InventoryTransaction)
            .where(InventoryTransaction.order_id == order["id"])
            .order_by(InventoryTransaction.id)
        )).scalars().all()
        assert [(e.change_type, e.quantity_change) for e in entries] == [("SALE", -3), ("RETURN", 3)]

    async def test_cancel_is_terminal(self, orders, place_order):
        order = await place_order()
        await orders.cancel(order["id"], actor_id=7)

        again = await orders.cancel(order["id"], actor_id=7)

        assert again.error_kind == "invalid_transition"

    async def test_cancel_rejected_when_paid_online(self, orders, payments, inventory, place_order):
        order = await place_order(payment_method="momo", quantity=2, stock=5)
        product_id = order["items"][0]["product_id"]
        assert (await payments.mark_paid(order["payment"]["id"], external_txn_id="MOMO-1")).success

        result = await orders.cancel(order["id"], actor_id=7, reason="too slow")

        assert not result.success
        assert result.error_kind == "invalid_transition"
        assert result.error_code == "ORDER_ALREADY_PAID"
        current = (await orders.get_order(order["id"])).data
        assert current["status"] == "pending"
        assert len(current["status_history"]) == 1
        assert current["payment"]["status"] == "paid"
        assert (await inventory.current_stock(product_id)).data == 3

    async def test_cancel_allowed_for_unpaid_online_order(self, orders, place_order):
        order = await place_order(payment_method="momo")

        result = await orders.cancel(order["id"], actor_id=7)

        assert result.success
        assert result.data["payment"]["status"] == "void"


class TestReturn:

    async def test_return_after_completion(self, orders, inventory, place_order, db_session):
        order = await place_order(quantity=2, stock=4)
        product_id = order["items"][0]["product_id"]
        await _advance(orders, order["id"], "confirm", "start_shipping", "mark_delivered", "complete")

        result = await orders.return_order(order["id"], reason="wrong size", processed_by=42)

        assert result.success
        assert result.data["status"] == "returned"
        assert (await inventory.current_stock(product_id)).data == 4
        request = (await db_session.execute(
            select(ReturnRequest).where(ReturnRequest.order_id == order["id"])
        )).scalar_one()
        assert request.status == "approved"
        assert request.processed_by == 42
        assert request.items[0]["quantity"] == 2

    async def test_return_requires_reason(self, orders, place_order):
        order = await place_order()
        await _advance(orders, order["id"], "confirm", "start_shipping", "mark_delivered")

        result = await orders.return_order(order["id"], reason="   ", processed_by=42)

        assert result.error_kind == "validation_error"
        assert (await orders.get_order(order["id"])).data["status"] == "delivered"

    async def test_return_not_allowed_before_delivery(self, orders, place_order):
        order = await place_order()
        result = await orders.return_order(order["id"], reason="late", processed_by=42)
        assert result.error_kind == "invalid_transition"


class TestCodPayment:

    async def test_confirm_payment_is_idempotent(self, orders, place_order):
        order = await place_order(payment_method="cod")
        await _advance(orders, order["id"], "confirm", "start_shipping", "mark_delivered")

        first = await orders.confirm_payment(order["id"], paid=True, actor_id=5)
        second = await orders.confirm_payment(order["id"], paid=True, actor_id=5)

        assert first.success and second.success
        assert first.data["status"] == "delivered"
        assert second.data["payment"]["status"] == "paid"
        assert second.data["payment"]["id"] == first.data["payment"]["id"]
        assert second.data["payment"]["paid_at"] == first.data["payment"]["paid_at"]
        assert len(second.data["status_history"]) == len(first.data["status_history"])

    async def test_confirm_payment_can_revert_to_pending(self, orders, place_order):
        order = await place_order(payment_method="cod")
        await _advance(orders, order["id"], "confirm", "start_shipping", "mark_delivered")
        await orders.confirm_payment(order["id"], paid=True)

        result = await orders.confirm_payment(order["id"], paid=False)

        assert result.success
        assert result.data["payment"]["status"] == "pending"
        assert result.data["payment"]["paid_at"] is None

    async def test_confirm_payment_only_when_delivered(self, orders, place_order):
        order = await place_order(payment_method="cod")
        result = await orders.confirm_payment(order["id"], paid=True)
        assert result.error_kind == "invalid_transition"

    async def test_confirm_payment_rejects_gateway_orders(self, orders, place_order):
        order = await place_order(payment_method="momo")
        await _advance(orders, order["id"], "confirm", "start_shipping", "mark_delivered")

        result = await orders.confirm_payment(order["id"], paid=True)

        assert result.error_code == "ORDER_NOT_COD"

    async def test_strict_policy_blocks_unpaid_cod_completion(self, settings, place_order):
        strict_settings = Settings(**{**settings.model_dump(), "cod_completion_requires_payment": True})
        strict_manager = DatabaseManager(strict_settings)
        strict = OrdersService(strict_manager)
        try:
            order = await place_order(payment_method="cod")
            await _advance(strict, order["id"], "confirm", "start_shipping", "mark_delivered")

            blocked = await strict.complete(order["id"])
            assert blocked.error_code == "COD_PAYMENT_NOT_CONFIRMED"

            await strict.confirm_payment(order["id"], paid=True)
            completed = await strict.complete(order["id"])
            assert completed.success
            assert completed.data["status"] == "completed"
        finally:
            await strict_manager.close()

    async def test_default_policy_completes_unpaid_cod(self, orders, place_order):
        order = await place_order(payment_method="cod")
        final = await _advance(orders, order["id"], "confirm", "start_shipping", "mark_delivered", "complete")
        assert final["status"] == "completed"
        assert final["payment"]["status"] == "pending"


class TestQueries:

    async def test_get_order_by_number(self, orders, place_order):
        order = await place_order()
        found = await orders.get_order_by_number(order["order_number"])
        assert found.data["id"] == order["id"]

        missing = await orders.get_order_by_number("ORD-0-NOPE")
        assert missing.error_code == "ORDER_NOT_FOUND"

    async def test_list_by_status_and_user(self, orders, place_order):
        first = await place_order(user_id=1)
        second = await place_order(user_id=1)
        other = await place_order(user_id=2)
        await orders.confirm(second["id"], actor_id=9)

        pending = await orders.list_by_status("pending")
        assert {o["id"] for o in pending.data} == {first["id"], other["id"]}

        mine = await orders.list_by_user(1)
        assert [o["id"] for o in mine.data] == [second["id"], first["id"]]

        confirmed_mine = await orders.list_by_user(1, status="confirmed")
        assert [o["id"] for o in confirmed_mine.data] == [second["id"]]

    async def test_list_limit_is_capped(self, orders, place_order):
        await place_order()
        result = await orders.list_by_status("pending", limit=10_000)
        assert result.metadata["limit"] == 200

    async def test_list_rejects_unknown_status(self, orders, db_manager):
        result = await orders.list_by_status("lost")
        assert result.error_code == "INVALID_ORDER_STATUS"

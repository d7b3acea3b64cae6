"""
订单服务状态机测试：每个状态下的非法操作都被拒绝，且不留下任何写入
"""
import pytest

from of_core.models.enums import OrderStatus
from of_core.services.order_states import OrderAction, can_apply

# 到达各状态的操作路径
PATHS = {
    OrderStatus.PENDING: [],
    OrderStatus.CONFIRMED: ["confirm"],
    OrderStatus.SHIPPING: ["confirm", "start_shipping"],
    OrderStatus.DELIVERED: ["confirm", "start_shipping", "mark_delivered"],
    OrderStatus.COMPLETED: ["confirm", "start_shipping", "mark_delivered", "complete"],
    OrderStatus.CANCELLED: ["cancel"],
    OrderStatus.RETURNED: ["confirm", "start_shipping", "mark_delivered", "return"],
}

ILLEGAL = [
    (status, action)
    for status in PATHS
    for action in OrderAction
    if not can_apply(action, status)
]


async def _apply(orders, order_id, action):
    if action == OrderAction.CONFIRM:
        return await orders.confirm(order_id, actor_id=1)
    if action == OrderAction.START_SHIPPING:
        return await orders.start_shipping(order_id)
    if action == OrderAction.MARK_DELIVERED:
        return await orders.mark_delivered(order_id)
    if action == OrderAction.CANCEL:
        return await orders.cancel(order_id, actor_id=1)
    if action == OrderAction.CONFIRM_PAYMENT:
        return await orders.confirm_payment(order_id, paid=True)
    if action == OrderAction.COMPLETE:
        return await orders.complete(order_id)
    return await orders.return_order(order_id, reason="x", processed_by=1)


def test_every_status_has_a_path():
    assert set(PATHS) == set(OrderStatus)


@pytest.mark.parametrize(
    "status,action", ILLEGAL, ids=[f"{s.value}-{a.value}" for s, a in ILLEGAL]
)
async def test_illegal_action_is_rejected(orders, place_order, status, action):
    order = await place_order()
    for step in PATHS[status]:
        result = await _apply(orders, order["id"], OrderAction(step))
        assert result.success, result.error
    before = (await orders.get_order(order["id"])).data
    assert before["status"] == status.value

    result = await _apply(orders, order["id"], action)

    assert not result.success
    assert result.error_kind == "invalid_transition"
    after = (await orders.get_order(order["id"])).data
    assert after["status"] == status.value
    assert len(after["status_history"]) == len(before["status_history"])
    assert after["payment"] == before["payment"]

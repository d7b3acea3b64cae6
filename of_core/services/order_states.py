"""
订单状态机：合法边表
所有状态变更操作都从这里读取允许的源状态和目标状态
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from of_core.models.enums import OrderStatus
from of_core.utils.errors import InvalidTransitionError


class OrderAction(str, Enum):
    """订单操作"""

    CONFIRM = "confirm"
    START_SHIPPING = "start_shipping"
    MARK_DELIVERED = "mark_delivered"
    CANCEL = "cancel"
    CONFIRM_PAYMENT = "confirm_payment"
    COMPLETE = "complete"
    RETURN = "return"


@dataclass(frozen=True)
class Transition:
    """一条合法边；target 为空表示只校验状态、不改变状态"""
    action: OrderAction
    sources: FrozenSet[OrderStatus]
    target: Optional[OrderStatus]

    @property
    def source_values(self) -> List[str]:
        return sorted(status.value for status in self.sources)


def _edge(action: OrderAction, sources, target: Optional[OrderStatus]) -> Transition:
    return Transition(action=action, sources=frozenset(sources), target=target)


ORDER_TRANSITIONS: Dict[OrderAction, Transition] = {
    OrderAction.CONFIRM: _edge(OrderAction.CONFIRM, [OrderStatus.PENDING], OrderStatus.CONFIRMED),
    OrderAction.START_SHIPPING: _edge(OrderAction.START_SHIPPING, [OrderStatus.CONFIRMED], OrderStatus.SHIPPING),
    OrderAction.MARK_DELIVERED: _edge(OrderAction.MARK_DELIVERED, [OrderStatus.SHIPPING], OrderStatus.DELIVERED),
    # 确认后不可取消（服务端约束）
    OrderAction.CANCEL: _edge(OrderAction.CANCEL, [OrderStatus.PENDING], OrderStatus.CANCELLED),
    OrderAction.CONFIRM_PAYMENT: _edge(OrderAction.CONFIRM_PAYMENT, [OrderStatus.DELIVERED], None),
    OrderAction.COMPLETE: _edge(OrderAction.COMPLETE, [OrderStatus.DELIVERED], OrderStatus.COMPLETED),
    OrderAction.RETURN: _edge(
        OrderAction.RETURN, [OrderStatus.DELIVERED, OrderStatus.COMPLETED], OrderStatus.RETURNED
    ),
}

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})


def _as_status(status: Union[OrderStatus, str]) -> OrderStatus:
    return status if isinstance(status, OrderStatus) else OrderStatus(status)


def get_transition(action: OrderAction) -> Transition:
    """获取操作对应的边"""
    return ORDER_TRANSITIONS[OrderAction(action)]


def can_apply(action: OrderAction, status: Union[OrderStatus, str]) -> bool:
    """当前状态下是否允许该操作"""
    return _as_status(status) in get_transition(action).sources


def allowed_actions(status: Union[OrderStatus, str]) -> List[OrderAction]:
    """当前状态下允许的全部操作"""
    current = _as_status(status)
    return [action for action, edge in ORDER_TRANSITIONS.items() if current in edge.sources]


def ensure_can_apply(
    action: OrderAction,
    status: Union[OrderStatus, str],
    order_ref: Optional[str] = None
) -> Transition:
    """校验操作合法，不合法抛出 InvalidTransitionError"""
    edge = get_transition(action)
    current = _as_status(status)
    if current not in edge.sources:
        subject = f"Order {order_ref}" if order_ref else "Order"
        raise InvalidTransitionError(
            detail=(
                f"{subject} cannot {edge.action.value} from status {current.value}; "
                f"allowed from: {', '.join(edge.source_values)}"
            ),
            code="ORDER_INVALID_TRANSITION",
            current_status=current.value,
            action=edge.action.value
        )
    return edge

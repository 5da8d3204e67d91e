# marketplace/services/status_machine.py
import logging
from datetime import datetime
from typing import Optional, Set

from sqlalchemy import update
from sqlalchemy.orm import Session

from marketplace import config
from marketplace.errors import NotFound, InvalidInput, InvalidTransition
from marketplace.models import Order, OrderStatusLog
from marketplace.services.inventory import InventoryService
from marketplace.utils.enums import OrderStatus, StockDirection, values

log = logging.getLogger(__name__)

S = OrderStatus

# 🔹 Разрешённые переходы (прямой граф)
VALID_NEXT = {
    S.PENDING: {S.CONFIRMED},
    S.CONFIRMED: {S.IN_PREPARATION},
    S.IN_PREPARATION: {S.SHIPPED},
    S.SHIPPED: {S.DELIVERED},
}
TERMINAL = {S.DELIVERED, S.CANCELLED, S.REFUNDED}
# в этих статусах товар уже списан со склада
STOCK_HELD = {S.CONFIRMED, S.IN_PREPARATION, S.SHIPPED}
STAMPS = {
    S.CONFIRMED: "confirmed_at",
    S.SHIPPED: "shipped_at",
    S.DELIVERED: "delivered_at",
}


def _status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidInput(f"Некорректный статус: {value}", details={"allowed": values(OrderStatus)})


def allowed_targets(current, strict: Optional[bool] = None) -> Set[OrderStatus]:
    strict = config.ORDER_STATUS_STRICT if strict is None else strict
    current = _status(current)
    if not strict:
        return set(OrderStatus) - {current}
    if current in TERMINAL:
        return set()
    return VALID_NEXT.get(current, set()) | {S.CANCELLED, S.REFUNDED}


def stock_effect(current, target) -> Optional[StockDirection]:
    current, target = _status(current), _status(target)
    if target == S.CONFIRMED and current != S.CONFIRMED:
        return StockDirection.DECREMENT
    if target in (S.CANCELLED, S.REFUNDED) and current in STOCK_HELD:
        return StockDirection.INCREMENT
    return None


class OrderStateMachine:
    """
    Смена статуса заказа. Запись статуса: compare-and-swap по текущему значению,
    поэтому два параллельных подтверждения не спишут склад дважды.
    Коммит делает вызывающий код.
    """

    def __init__(self, db: Session, inventory: Optional[InventoryService] = None,
                 strict: Optional[bool] = None):
        self.db = db
        self.inventory = inventory or InventoryService(db)
        self.strict = config.ORDER_STATUS_STRICT if strict is None else strict

    def transition(self, order_id: int, target, user: str = "system",
                   note: Optional[str] = None) -> Order:
        target = _status(target)
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound(f"Заказ {order_id} не найден")

        current = _status(order.status)
        if current == target:
            # повторная установка того же статуса ничего не меняет
            return order
        if target not in allowed_targets(current, self.strict):
            raise InvalidTransition(
                f"Недопустимый переход статуса: {current.value} → {target.value}",
                details={"from": current.value, "to": target.value,
                         "allowed": sorted(s.value for s in allowed_targets(current, self.strict))},
            )

        now = datetime.utcnow()
        changes = {"status": target.value, "updated_at": now}
        if target in STAMPS:
            changes[STAMPS[target]] = now

        with self.db.begin_nested():
            res = self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == current.value)
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                raise InvalidTransition(
                    "Статус заказа изменён параллельно, повторите запрос",
                    details={"expected": current.value},
                )

            effect = stock_effect(current, target)
            if effect is not None:
                self.inventory.apply_order_stock_change(order_id, effect)

            self.db.add(OrderStatusLog(
                order_id=order_id,
                old_status=current.value,
                new_status=target.value,
                user=user,
                note=note,
            ))

        order = self.db.get(Order, order_id, populate_existing=True)
        log.info("order %s: %s -> %s (%s)", order.number, current.value, target.value, user)
        return order

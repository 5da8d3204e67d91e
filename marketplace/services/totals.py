# marketplace/services/totals.py
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from sqlalchemy.orm import Session

from marketplace.errors import NotFound, InvalidInput
from marketplace.models import Order

CENT = Decimal("0.01")


def money(v) -> Decimal:
    return Decimal(str(v if v is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_totals(db: Session, order_id: int) -> Dict[str, Decimal]:
    """
    subtotal = Σ unit_price * quantity
    total    = subtotal + shipping_fee + taxes - discount
    Ничего не пишет; можно вызывать сколько угодно раз.
    """
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound(f"Заказ {order_id} не найден")

    subtotal = sum((money(l.unit_price) * int(l.quantity) for l in order.lines), Decimal("0.00"))
    subtotal = money(subtotal)
    total = money(subtotal + money(order.shipping_fee) + money(order.taxes) - money(order.discount))
    if total < 0:
        raise InvalidInput(
            "Скидка больше суммы заказа",
            details={"subtotal": str(subtotal), "discount": str(money(order.discount))},
        )
    return {"subtotal": subtotal, "total": total}


def update_totals(db: Session, order_id: int) -> Order:
    """Пересчитывает строки и итоги заказа и записывает их (flush, без commit)."""
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound(f"Заказ {order_id} не найден")
    for line in order.lines:
        line.recompute_line()
    totals = compute_totals(db, order_id)
    order.subtotal = totals["subtotal"]
    order.total = totals["total"]
    db.flush()
    return order

# marketplace/services/orders.py
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.errors import InvalidInput, NotFound
from marketplace.models import Order, OrderLine, Product
from marketplace.services.status_machine import OrderStateMachine
from marketplace.services.totals import money, update_totals
from marketplace.telegram.telegram_notify import TelegramNotifier, notifier as default_notifier
from marketplace.utils.enums import OrderStatus, PaymentMethod, PaymentStatus, values
from marketplace.utils.tokens import random_suffix

log = logging.getLogger(__name__)

NUMBER_ATTEMPTS = 5


def number_prefix(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    return f"COM-{now:%Y}-{now:%m}"


class OrderService:
    def __init__(self, db: Session, notifier: Optional[TelegramNotifier] = None):
        self.db = db
        self.notifier = notifier or default_notifier
        self.machine = OrderStateMachine(db)

    # ---------- номер заказа ----------
    def generate_number(self, now: Optional[datetime] = None) -> str:
        """COM-<YYYY>-<MM><seq4>; счётчик свой для каждого месяца."""
        prefix = number_prefix(now)
        try:
            last = self.db.execute(
                select(Order.number)
                .where(Order.number.like(f"{prefix}%"))
                .order_by(func.length(Order.number).desc(), Order.number.desc())
                .limit(1)
            ).scalar_one_or_none()
            seq = int(last[len(prefix):]) + 1 if last else 1
        except (SQLAlchemyError, ValueError) as e:
            log.warning("order number: sequence lookup failed (%s), using random suffix", e)
            return f"{prefix}{random_suffix(4)}"
        return f"{prefix}{seq:04d}"

    # ---------- создание ----------
    def create_order(self, data: Dict[str, Any]) -> Order:
        """
        Шапка, строки и итоги создаются одной транзакцией: при любой ошибке
        в базе не остаётся заказа без строк или без итогов.
        """
        lines = data.get("lines") or []
        if not lines:
            raise InvalidInput("Заказ без товаров")
        for field in ("shipping_fee", "taxes", "discount"):
            if money(data.get(field)) < 0:
                raise InvalidInput(f"{field} не может быть отрицательным")

        for attempt in range(1, NUMBER_ATTEMPTS + 1):
            try:
                order = self._build(data, lines)
                self.db.commit()
                break
            except IntegrityError:
                # номер заняли параллельно, берём следующий
                self.db.rollback()
                log.warning("order number collision (attempt %s/%s)", attempt, NUMBER_ATTEMPTS)
                if attempt == NUMBER_ATTEMPTS:
                    raise
            except Exception:
                self.db.rollback()
                raise

        self.db.refresh(order)
        log.info("order %s created: %s lines, total %s", order.number, len(order.lines), order.total)
        self.notifier.notify_order_created(order)
        return order

    def _build(self, data: Dict[str, Any], lines: List[Dict[str, Any]]) -> Order:
        customer = data.get("customer") or {}
        order = Order(
            number=self.generate_number(),
            shop_id=data.get("shop_id"),
            customer_name=customer.get("name"),
            customer_phone=customer.get("phone"),
            customer_email=customer.get("email"),
            customer_address=customer.get("address"),
            customer_city=customer.get("city"),
            customer_district=customer.get("district"),
            customer_instructions=customer.get("instructions"),
            shipping_fee=money(data.get("shipping_fee")),
            taxes=money(data.get("taxes")),
            discount=money(data.get("discount")),
            subtotal=Decimal("0.00"),
            total=Decimal("0.00"),
            amount_paid=0,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
        )
        self.db.add(order)
        self.db.flush()

        for l in lines:
            qty = int(l.get("quantity") or 0)
            if qty < 1:
                raise InvalidInput("Количество должно быть не меньше 1",
                                   details={"product_id": l.get("product_id")})
            product = self.db.get(Product, l.get("product_id"))
            if product is None:
                raise InvalidInput(f"Товар {l.get('product_id')} не найден",
                                   details={"product_id": l.get("product_id")})
            unit_price = money(l["unit_price"]) if l.get("unit_price") is not None else money(product.price)
            if unit_price < 0:
                raise InvalidInput("Цена не может быть отрицательной",
                                   details={"product_id": product.id})
            self.db.add(OrderLine(
                order_id=order.id,
                product_id=product.id,
                product_name=l.get("product_name") or product.name,
                quantity=qty,
                unit_price=unit_price,
                line_total=unit_price * qty,
                selected_variant=l.get("selected_variant"),
            ))
        self.db.flush()
        self.db.expire(order, ["lines"])
        return update_totals(self.db, order.id)

    # ---------- чтение ----------
    def get(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound(f"Заказ {order_id} не найден")
        return order

    def get_by_number(self, number: str) -> Order:
        order = self.db.execute(select(Order).where(Order.number == number)).scalar_one_or_none()
        if order is None:
            raise NotFound(f"Заказ {number} не найден")
        return order

    def list_by_shop(self, shop_id: int, page: int = 1, limit: int = 10,
                     status: Optional[str] = None):
        page = max(int(page), 1)
        limit = min(max(int(limit), 1), 100)
        q = select(Order).where(Order.shop_id == shop_id)
        if status:
            q = q.where(Order.status == status)
        total = self.db.execute(select(func.count()).select_from(q.subquery())).scalar_one()
        rows = self.db.execute(
            q.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return rows, total

    # ---------- статусы ----------
    def update_status(self, order_id: int, status: str, user: str = "admin",
                      note: Optional[str] = None) -> Order:
        old = self.get(order_id).status
        try:
            order = self.machine.transition(order_id, status, user=user, note=note)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(order)
        if order.status != old:
            self.notifier.notify_order_status_changed(order, old)
        return order

    def update_payment_status(self, order_id: int, payment_status: str,
                              payment_method: Optional[str] = None) -> Order:
        try:
            payment_status = PaymentStatus(payment_status).value
        except ValueError:
            raise InvalidInput(f"Некорректный статус оплаты: {payment_status}",
                               details={"allowed": values(PaymentStatus)})
        if payment_method is not None:
            try:
                payment_method = PaymentMethod(payment_method).value
            except ValueError:
                raise InvalidInput(f"Некорректный метод оплаты: {payment_method}",
                                   details={"allowed": values(PaymentMethod)})

        order = self.get(order_id)
        order.payment_status = payment_status
        if payment_method:
            order.payment_method = payment_method
        order.updated_at = datetime.utcnow()
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(order)
        return order

    def lines_summary(self, order_id: int) -> Dict[str, Any]:
        order = self.get(order_id)
        return {
            "order_id": order.id,
            "number": order.number,
            "lines": order.lines,
            "subtotal": order.subtotal,
            "shipping_fee": order.shipping_fee,
            "taxes": order.taxes,
            "discount": order.discount,
            "total": order.total,
        }

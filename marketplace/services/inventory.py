# marketplace/services/inventory.py
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace import config
from marketplace.errors import NotFound, InsufficientStock, StockConflict, InvalidInput
from marketplace.models import Product, Order, StockAudit
from marketplace.services.variants import VariantStock
from marketplace.utils.enums import StockDirection

log = logging.getLogger(__name__)


class InventoryService:
    """
    Склад: списание/возврат остатков.

    Все записи идут условными UPDATE на уровне БД, без read-modify-write в Python:
    скаляр: ``stock = stock - d WHERE stock - d >= 0``, варианты: CAS по ``version``.
    Коммит делает вызывающий код.
    """

    def __init__(self, db: Session, user: str = "system", retries: Optional[int] = None):
        self.db = db
        self.user = user
        self.retries = retries if retries is not None else config.STOCK_CAS_RETRIES

    # ---------- скалярный остаток ----------
    def adjust(self, product_id: int, delta: int, order_id: Optional[int] = None,
               note: Optional[str] = None) -> Product:
        """Уменьшает остаток на delta (отрицательный delta означает возврат на склад)."""
        delta = int(delta)
        if delta == 0:
            return self._get(product_id)

        new_stock = Product.stock - delta
        res = self.db.execute(
            update(Product)
            .where(Product.id == product_id, new_stock >= 0)
            .values(
                stock=new_stock,
                in_stock=new_stock > 0,
                version=Product.version + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            product = self._get(product_id)
            raise InsufficientStock(
                f"Недостаточно товара «{product.name}»: остаток {product.stock}, требуется {delta}",
                details={"product_id": product_id, "available": product.stock, "requested": delta},
            )

        product = self.db.get(Product, product_id, populate_existing=True)
        self._audit(product.id, None, delta, product.stock + delta, product.stock, order_id, note)
        return product

    # ---------- остаток по варианту ----------
    def adjust_variant(self, product_id: int, delta: int, selection: Any,
                       order_id: Optional[int] = None, note: Optional[str] = None) -> Product:
        """
        Списывает delta с выбранного варианта и пересчитывает агрегат.
        Если выбор не совпал ни с одной записью, работаем со скалярным остатком.
        """
        delta = int(delta)
        for attempt in range(1, self.retries + 1):
            product = self.db.execute(
                select(Product)
                .where(Product.id == product_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if product is None:
                raise NotFound(f"Товар {product_id} не найден")

            vs = VariantStock.load(product.variants)
            matched = vs.match(selection) if vs else []
            if not matched:
                log.debug("product %s: selection %r not matched, scalar adjust", product_id, selection)
                return self.adjust(product_id, delta, order_id=order_id, note=note)

            for e in matched:
                if e.quantity - delta < 0:
                    raise InsufficientStock(
                        f"Недостаточно товара «{product.name}» ({e.key}): остаток {e.quantity}, требуется {delta}",
                        details={"product_id": product_id, "variant": e.key,
                                 "available": e.quantity, "requested": delta},
                    )

            before = [(e.key, e.quantity) for e in matched]
            for e in matched:
                e.quantity -= delta
            aggregate = vs.aggregate

            res = self.db.execute(
                update(Product)
                .where(Product.id == product_id, Product.version == product.version)
                .values(
                    variants=vs.dump(),
                    stock=aggregate,
                    in_stock=aggregate > 0,
                    version=product.version + 1,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                product = self.db.get(Product, product_id, populate_existing=True)
                for key, old in before:
                    self._audit(product_id, key, delta, old, old - delta, order_id, note)
                return product

            log.warning("product %s: version conflict on variant stock (attempt %s/%s)",
                        product_id, attempt, self.retries)

        raise StockConflict(
            f"Не удалось обновить остаток товара {product_id}: конкурентные изменения",
            details={"product_id": product_id, "attempts": self.retries},
        )

    # ---------- заказ целиком ----------
    def apply_order_stock_change(self, order_id: int, direction: str) -> Order:
        """Списывает (decrement) или возвращает (increment) остатки по всем строкам заказа."""
        try:
            direction = StockDirection(direction)
        except ValueError:
            raise InvalidInput(f"Неизвестное направление: {direction}")

        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound(f"Заказ {order_id} не найден")

        sign = 1 if direction == StockDirection.DECREMENT else -1
        note = f"{direction.value} заказ {order.number}"

        # всё или ничего: при ошибке на любой строке откатываем точку сохранения
        with self.db.begin_nested():
            for line in order.lines:
                delta = sign * int(line.quantity)
                if line.selected_variant:
                    self.adjust_variant(line.product_id, delta, line.selected_variant,
                                        order_id=order.id, note=note)
                else:
                    self.adjust(line.product_id, delta, order_id=order.id, note=note)

        log.info("order %s: stock %s applied (%d lines)", order.number, direction.value, len(order.lines))
        return order

    # ---------- helpers ----------
    def _get(self, product_id: int) -> Product:
        product = self.db.get(Product, product_id, populate_existing=True)
        if product is None:
            raise NotFound(f"Товар {product_id} не найден")
        return product

    def _audit(self, product_id, variant_key, delta, old, new, order_id, note):
        self.db.add(StockAudit(
            product_id=product_id,
            variant_key=variant_key,
            change_type="DECREASE" if delta > 0 else "INCREASE",
            delta=abs(delta),
            old_stock=old,
            new_stock=new,
            order_id=order_id,
            note=note,
            user=self.user,
        ))

# marketplace/services/cart.py
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from marketplace.errors import InsufficientStock, InvalidInput, NotFound
from marketplace.models import CartItem, Product
from marketplace.services.variants import available_stock

log = logging.getLogger(__name__)


@dataclass
class CartValidation:
    items: List[CartItem] = field(default_factory=list)
    removed_items: List[Dict[str, Any]] = field(default_factory=list)
    adjusted_items: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.removed_items or self.adjusted_items)


def _same_selection(a: Any, b: Any) -> bool:
    return (a or None) == (b or None)


class CartService:
    def __init__(self, db: Session):
        self.db = db

    # ---------- сверка корзины со складом ----------
    def get_validated_cart(self, session_id: str) -> CartValidation:
        """
        Единственная точка, через которую корзина попадает на экран и в оформление:
        недоступные товары удаляются, количество урезается до остатка.
        """
        result = CartValidation()
        entries = self.db.execute(
            select(CartItem).where(CartItem.session_id == session_id).order_by(CartItem.id)
        ).scalars().all()

        try:
            for item in entries:
                product = self.db.get(Product, item.product_id)
                if product is None or not product.is_sellable:
                    result.removed_items.append({
                        "id": item.id,
                        "product_id": item.product_id,
                        "name": product.name if product else None,
                        "quantity": item.quantity,
                        "reason": "unavailable",
                    })
                    self.db.delete(item)
                    continue

                available = available_stock(product, item.selected_variant)
                if available <= 0:
                    result.removed_items.append({
                        "id": item.id,
                        "product_id": item.product_id,
                        "name": product.name,
                        "quantity": item.quantity,
                        "reason": "out_of_stock",
                    })
                    self.db.delete(item)
                    continue

                if item.quantity > available:
                    result.adjusted_items.append({
                        "id": item.id,
                        "product_id": item.product_id,
                        "name": product.name,
                        "original_quantity": item.quantity,
                        "new_quantity": available,
                        "available_stock": available,
                    })
                    item.quantity = available
                    item.updated_at = datetime.utcnow()

                result.items.append(item)

            if result.has_warnings:
                self.db.commit()
                log.info("cart %s: removed %d, adjusted %d", session_id,
                         len(result.removed_items), len(result.adjusted_items))
        except Exception:
            self.db.rollback()
            raise
        return result

    # ---------- операции с корзиной ----------
    def add(self, session_id: str, product_id: int, quantity: int = 1,
            shop_id: Optional[int] = None, selected_variant: Any = None) -> CartItem:
        """Добавляет товар; такая же позиция (товар + выбор) складывается по количеству."""
        quantity = int(quantity)
        if quantity < 1:
            raise InvalidInput("Количество должно быть не меньше 1")

        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFound(f"Товар {product_id} не найден")
        if not product.is_sellable:
            raise InvalidInput(f"Товар «{product.name}» недоступен")

        existing = None
        for item in self.db.execute(
            select(CartItem).where(CartItem.session_id == session_id, CartItem.product_id == product_id)
        ).scalars():
            if _same_selection(item.selected_variant, selected_variant):
                existing = item
                break

        want = quantity + (existing.quantity if existing else 0)
        available = available_stock(product, selected_variant)
        if want > available:
            raise InsufficientStock(
                f"Недостаточно на складе: доступно {available} шт.",
                details={"product_id": product_id, "available": available, "requested": want},
            )

        try:
            if existing:
                existing.quantity = want
                existing.updated_at = datetime.utcnow()
                item = existing
            else:
                item = CartItem(
                    session_id=session_id,
                    shop_id=shop_id if shop_id is not None else product.shop_id,
                    product_id=product_id,
                    quantity=quantity,
                    selected_variant=selected_variant,
                )
                self.db.add(item)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(item)
        return item

    def get_item(self, item_id: int) -> CartItem:
        item = self.db.get(CartItem, item_id)
        if item is None:
            raise NotFound(f"Позиция корзины {item_id} не найдена")
        return item

    def update_quantity(self, item_id: int, quantity: int) -> CartItem:
        quantity = int(quantity)
        if quantity < 1:
            raise InvalidInput("Количество должно быть больше 0")
        item = self.get_item(item_id)
        product = self.db.get(Product, item.product_id)
        if product is None or not product.is_sellable:
            raise InvalidInput(f"Товар {item.product_id} недоступен")
        available = available_stock(product, item.selected_variant)
        if quantity > available:
            raise InsufficientStock(
                f"Недостаточно на складе: доступно {available} шт.",
                details={"product_id": item.product_id, "available": available, "requested": quantity},
            )
        item.quantity = quantity
        item.updated_at = datetime.utcnow()
        return self._commit(item)

    def update_variants(self, item_id: int, selected_variant: Any) -> CartItem:
        item = self.get_item(item_id)
        item.selected_variant = selected_variant
        item.updated_at = datetime.utcnow()
        return self._commit(item)

    def remove(self, item_id: int) -> None:
        item = self.get_item(item_id)
        try:
            self.db.delete(item)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def clear(self, session_id: str) -> int:
        try:
            res = self.db.execute(delete(CartItem).where(CartItem.session_id == session_id))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return res.rowcount

    def count(self, session_id: str) -> int:
        return self.db.execute(
            select(func.count(CartItem.id)).where(CartItem.session_id == session_id)
        ).scalar_one()

    def _commit(self, item: CartItem) -> CartItem:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(item)
        return item

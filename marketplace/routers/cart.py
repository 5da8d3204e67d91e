from decimal import Decimal

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.db import get_db
from marketplace.schemas import CartAdd, CartQuantityUpdate, CartVariantsUpdate
from marketplace.services.cart import CartService
from marketplace.utils.serializers import cart_item_to_dict

router = APIRouter(prefix="/cart", tags=["cart"])


# ----------------------- ITEM -----------------------
@router.post("", status_code=201)
def cart_add(payload: CartAdd, db: Session = Depends(get_db)):
    item = CartService(db).add(
        payload.session_id, payload.product_id, payload.quantity,
        shop_id=payload.shop_id, selected_variant=payload.selected_variant,
    )
    return {"success": True, "message": "Товар добавлен в корзину", "item": cart_item_to_dict(item)}


@router.get("/item/{item_id}")
def cart_item(item_id: int, db: Session = Depends(get_db)):
    return {"success": True, "item": cart_item_to_dict(CartService(db).get_item(item_id))}


@router.patch("/item/{item_id}/quantity")
def cart_update_quantity(item_id: int, payload: CartQuantityUpdate, db: Session = Depends(get_db)):
    item = CartService(db).update_quantity(item_id, payload.quantity)
    return {"success": True, "item": cart_item_to_dict(item)}


@router.patch("/item/{item_id}/variants")
def cart_update_variants(item_id: int, payload: CartVariantsUpdate, db: Session = Depends(get_db)):
    item = CartService(db).update_variants(item_id, payload.selected_variant)
    return {"success": True, "item": cart_item_to_dict(item)}


@router.delete("/item/{item_id}")
def cart_remove(item_id: int, db: Session = Depends(get_db)):
    CartService(db).remove(item_id)
    return {"success": True, "message": "Позиция удалена"}


# ----------------------- SESSION -----------------------
@router.get("/{session_id}")
def cart_view(session_id: str, db: Session = Depends(get_db)):
    """Корзина всегда отдаётся уже сверенной со складом"""
    res = CartService(db).get_validated_cart(session_id)
    items = [cart_item_to_dict(i) for i in res.items]
    total = sum((Decimal(str(i["line_total"])) for i in items), Decimal("0"))
    return {
        "success": True,
        "items": items,
        "total_items": sum(i["quantity"] for i in items),
        "total_sum": float(total),
        "removed_items": res.removed_items,
        "adjusted_items": res.adjusted_items,
    }


@router.get("/{session_id}/count")
def cart_count(session_id: str, db: Session = Depends(get_db)):
    return {"success": True, "count": CartService(db).count(session_id)}


@router.delete("/{session_id}")
def cart_clear(session_id: str, db: Session = Depends(get_db)):
    removed = CartService(db).clear(session_id)
    return {"success": True, "removed": removed, "message": "Корзина очищена"}

from decimal import Decimal
from typing import Any, Dict

from marketplace.models import Order, OrderLine, Transaction, CartItem, Product


def _money(v) -> float:
    return float(v) if v is not None else 0.0


def _dt(v):
    return v.isoformat() if v else None


def line_to_dict(line: OrderLine) -> Dict[str, Any]:
    return {
        "id": line.id,
        "product_id": line.product_id,
        "product_name": line.product_name,
        "unit_price": _money(line.unit_price),
        "quantity": line.quantity,
        "line_total": _money(line.line_total),
        "selected_variant": line.selected_variant,
    }


def transaction_to_dict(t: Transaction) -> Dict[str, Any]:
    return {
        "id": t.id,
        "order_id": t.order_id,
        "reference": t.reference,
        "operator_reference": t.operator_reference,
        "provider_transaction_id": t.provider_transaction_id,
        "amount": t.amount,
        "payment_method": t.payment_method,
        "payment_purpose": t.payment_purpose,
        "status": t.status,
        "phone_number": t.phone_number,
        "description": t.description,
        "needs_review": bool(t.needs_review),
        "notes": t.notes,
        "created_at": _dt(t.created_at),
        "confirmed_at": _dt(t.confirmed_at),
        "updated_at": _dt(t.updated_at),
    }


def order_to_dict(o: Order, with_lines: bool = True, with_transactions: bool = False) -> Dict[str, Any]:
    """Конвертирует Order в словарь для API"""
    data = {
        "id": o.id,
        "number": o.number,
        "shop_id": o.shop_id,
        "customer": {
            "name": o.customer_name,
            "phone": o.customer_phone,
            "email": o.customer_email,
            "address": o.customer_address,
            "city": o.customer_city,
            "district": o.customer_district,
            "instructions": o.customer_instructions,
        },
        "subtotal": _money(o.subtotal),
        "shipping_fee": _money(o.shipping_fee),
        "taxes": _money(o.taxes),
        "discount": _money(o.discount),
        "total": _money(o.total),
        "amount_paid": int(o.amount_paid or 0),
        "amount_remaining": _money(o.amount_remaining),
        "status": o.status,
        "payment_status": o.payment_status,
        "payment_method": o.payment_method,
        "created_at": _dt(o.created_at),
        "confirmed_at": _dt(o.confirmed_at),
        "shipped_at": _dt(o.shipped_at),
        "delivered_at": _dt(o.delivered_at),
        "updated_at": _dt(o.updated_at),
    }
    if with_lines:
        data["lines"] = [line_to_dict(l) for l in o.lines]
    if with_transactions:
        data["transactions"] = [transaction_to_dict(t) for t in o.transactions]
    return data


def product_to_dict(p: Product) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "price": _money(p.price),
        "status": p.status,
        "stock": p.stock,
        "in_stock": bool(p.in_stock),
        "variants": p.variants,
    }


def cart_item_to_dict(item: CartItem) -> Dict[str, Any]:
    p = item.product
    price = Decimal(str(p.price)) if p is not None else Decimal("0")
    return {
        "id": item.id,
        "session_id": item.session_id,
        "shop_id": item.shop_id,
        "product_id": item.product_id,
        "quantity": item.quantity,
        "selected_variant": item.selected_variant,
        "product": product_to_dict(p) if p is not None else None,
        "line_total": float(price * item.quantity),
        "created_at": _dt(item.created_at),
        "updated_at": _dt(item.updated_at),
    }

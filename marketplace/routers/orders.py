from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.db import get_db
from marketplace.schemas import OrderCreate, OrderStatusUpdate, PaymentStatusUpdate, PaymentInit
from marketplace.services.orders import OrderService
from marketplace.services.payments import PaymentService
from marketplace.utils.serializers import order_to_dict, line_to_dict, transaction_to_dict

router = APIRouter(prefix="/orders", tags=["orders"])


def _payment_summary(order) -> dict:
    return {
        "total": float(order.total),
        "amount_paid": int(order.amount_paid or 0),
        "amount_remaining": float(order.amount_remaining),
        "payment_status": order.payment_status,
    }


@router.post("", status_code=201)
def create_order(payload: OrderCreate, db: Session = Depends(get_db)):
    order = OrderService(db).create_order(payload.model_dump())
    return {
        "success": True,
        "message": "Заказ создан",
        "order": order_to_dict(order),
        "payment": _payment_summary(order),
    }


@router.get("/number/{number}")
def get_order_by_number(number: str, db: Session = Depends(get_db)):
    order = OrderService(db).get_by_number(number)
    return {"success": True, "order": order_to_dict(order, with_transactions=True)}


@router.get("/shop/{shop_id}")
def list_shop_orders(
    shop_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: str | None = Query(None),
    db: Session = Depends(get_db),
):
    rows, total = OrderService(db).list_by_shop(shop_id, page=page, limit=limit, status=status)
    return {
        "success": True,
        "orders": [order_to_dict(o, with_lines=False) for o in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.get("/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_db)):
    order = OrderService(db).get(order_id)
    return {"success": True, "order": order_to_dict(order, with_transactions=True)}


@router.get("/{order_id}/lines")
def get_order_lines(order_id: int, db: Session = Depends(get_db)):
    summary = OrderService(db).lines_summary(order_id)
    return {
        "success": True,
        "order_id": summary["order_id"],
        "number": summary["number"],
        "lines": [line_to_dict(l) for l in summary["lines"]],
        "totals": {k: float(summary[k]) for k in ("subtotal", "shipping_fee", "taxes", "discount", "total")},
    }


@router.patch("/{order_id}/status")
def update_order_status(order_id: int, payload: OrderStatusUpdate, db: Session = Depends(get_db)):
    order = OrderService(db).update_status(order_id, payload.status, user="admin", note=payload.note)
    return {"success": True, "message": "Статус обновлён", "order": order_to_dict(order)}


@router.patch("/{order_id}/payment-status")
def update_payment_status(order_id: int, payload: PaymentStatusUpdate, db: Session = Depends(get_db)):
    order = OrderService(db).update_payment_status(order_id, payload.payment_status, payload.payment_method)
    return {"success": True, "order": order_to_dict(order, with_lines=False)}


@router.post("/{order_id}/payment", status_code=201)
def initiate_payment(order_id: int, payload: PaymentInit, db: Session = Depends(get_db)):
    tx = PaymentService(db).initiate_payment(
        order_id,
        payment_method=payload.payment_method,
        phone_number=payload.phone_number,
        payment_purpose=payload.payment_purpose,
        amount=payload.amount,
        description=payload.description,
    )
    return {"success": True, "message": "Платёж инициирован", "transaction": transaction_to_dict(tx)}

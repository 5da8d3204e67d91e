from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketplace.db import get_db
from marketplace.schemas import TransactionCreate, TransactionUpdate, TransactionStatusUpdate
from marketplace.services.payments import PaymentService
from marketplace.utils.serializers import transaction_to_dict

router = APIRouter(prefix="/transactions", tags=["transactions"])


def _page(rows, total, page, limit) -> dict:
    return {
        "success": True,
        "transactions": [transaction_to_dict(t) for t in rows],
        "pagination": {"page": page, "limit": limit, "total": total,
                       "pages": (total + limit - 1) // limit},
    }


@router.get("")
def list_transactions(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                      status: str | None = Query(None), db: Session = Depends(get_db)):
    rows, total = PaymentService(db).list_transactions(page=page, limit=limit, status=status)
    return _page(rows, total, page, limit)


@router.post("", status_code=201)
def create_transaction(payload: TransactionCreate, db: Session = Depends(get_db)):
    tx = PaymentService(db).create_transaction(**payload.model_dump())
    return {"success": True, "transaction": transaction_to_dict(tx)}


@router.get("/stats")
def transaction_stats(shop_id: int | None = Query(None), db: Session = Depends(get_db)):
    return {"success": True, "stats": PaymentService(db).stats(shop_id=shop_id)}


@router.get("/reference/{reference}")
def get_by_reference(reference: str, db: Session = Depends(get_db)):
    return {"success": True, "transaction": transaction_to_dict(PaymentService(db).get_by_reference(reference))}


@router.get("/order/{order_id}")
def list_by_order(order_id: int, db: Session = Depends(get_db)):
    rows = PaymentService(db).list_by_order(order_id)
    return {"success": True, "transactions": [transaction_to_dict(t) for t in rows]}


@router.get("/shop/{shop_id}")
def list_by_shop(shop_id: int, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                 db: Session = Depends(get_db)):
    rows, total = PaymentService(db).list_by_shop(shop_id, page=page, limit=limit)
    return _page(rows, total, page, limit)


@router.get("/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return {"success": True, "transaction": transaction_to_dict(PaymentService(db).get_transaction(transaction_id))}


@router.put("/{transaction_id}")
def update_transaction(transaction_id: int, payload: TransactionUpdate, db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude_unset=True)
    tx = PaymentService(db).update_transaction(transaction_id, fields)
    return {"success": True, "transaction": transaction_to_dict(tx)}


@router.patch("/{transaction_id}/status")
def update_transaction_status(transaction_id: int, payload: TransactionStatusUpdate,
                              db: Session = Depends(get_db)):
    tx = PaymentService(db).update_status(transaction_id, payload.status, note=payload.note)
    return {"success": True, "transaction": transaction_to_dict(tx)}

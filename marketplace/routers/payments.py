from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.db import get_db
from marketplace.routers.deps import get_gateway
from marketplace.schemas import MobilePaymentIn, CardPaymentIn
from marketplace.services.billing import BillingGateway
from marketplace.services.payments import PaymentService
from marketplace.utils.serializers import order_to_dict, transaction_to_dict

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/mobile")
def mobile_payment(payload: MobilePaymentIn, db: Session = Depends(get_db),
                   gateway: BillingGateway = Depends(get_gateway)):
    res = PaymentService(db, gateway=gateway).initiate_mobile_payment(
        reference=payload.reference,
        msisdn=payload.msisdn,
        payment_system=payload.payment_system,
        email=payload.email,
        last_name=payload.lastname,
        first_name=payload.firstname,
        description=payload.description,
    )
    return {
        "success": True,
        "bill_id": res["bill_id"],
        "transaction": transaction_to_dict(res["transaction"]),
        "message": "Запрос на оплату отправлен на телефон",
    }


@router.post("/card")
def card_payment(payload: CardPaymentIn, db: Session = Depends(get_db),
                 gateway: BillingGateway = Depends(get_gateway)):
    res = PaymentService(db, gateway=gateway).initiate_card_payment(
        payload.transaction_id,
        return_url=payload.return_url,
        email=payload.email,
        msisdn=payload.msisdn,
        last_name=payload.lastname,
        first_name=payload.firstname,
    )
    return {
        "success": True,
        "redirect": True,
        "url": res["url"],
        "bill_id": res["bill_id"],
        "message": "Переход на страницу оплаты картой",
    }


@router.get("/verify/{bill_id}")
def verify_payment(bill_id: str, db: Session = Depends(get_db),
                   gateway: BillingGateway = Depends(get_gateway)):
    res = PaymentService(db, gateway=gateway).verify_payment(bill_id)
    body = {
        "success": res["confirmed"],
        "state": res["state"],
        "message": res["message"],
        "transaction": transaction_to_dict(res["transaction"]),
    }
    if res.get("order") is not None:
        body["order"] = order_to_dict(res["order"], with_lines=False)
    return body

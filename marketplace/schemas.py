from typing import Any, List, Optional

from pydantic import BaseModel, Field

PHONE_PATTERN = r"^\+?[0-9]{8,15}$"

# ---------- Заказы ----------

class CustomerIn(BaseModel):
    name: str = Field(..., min_length=1, description="Имя клиента")
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: Optional[str] = None
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    district: str = Field(..., min_length=1)
    instructions: Optional[str] = None

class OrderLineIn(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=1)
    unit_price: Optional[float] = Field(None, ge=0, description="По умолчанию цена товара")
    product_name: Optional[str] = None
    selected_variant: Optional[Any] = None

class OrderCreate(BaseModel):
    shop_id: int
    customer: CustomerIn
    lines: List[OrderLineIn] = Field(..., min_length=1)
    shipping_fee: float = Field(0, ge=0)
    taxes: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)

class OrderStatusUpdate(BaseModel):
    status: str
    note: Optional[str] = None

class PaymentStatusUpdate(BaseModel):
    payment_status: str
    payment_method: Optional[str] = None

class PaymentInit(BaseModel):
    payment_method: str
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    payment_purpose: Optional[str] = None
    amount: Optional[int] = Field(None, gt=0)
    description: Optional[str] = None

# ---------- Оплата через биллинг ----------

class MobilePaymentIn(BaseModel):
    reference: str
    msisdn: str = Field(..., pattern=PHONE_PATTERN)
    payment_system: str = Field(..., pattern=r"^(airtelmoney|moovmoney)$")
    email: Optional[str] = None
    lastname: Optional[str] = None
    firstname: Optional[str] = None
    description: Optional[str] = None

class CardPaymentIn(BaseModel):
    transaction_id: int
    return_url: str
    email: Optional[str] = None
    msisdn: Optional[str] = None
    lastname: Optional[str] = None
    firstname: Optional[str] = None

# ---------- Транзакции ----------

class TransactionCreate(BaseModel):
    order_id: Optional[int] = None
    amount: int = Field(..., gt=0)
    payment_method: Optional[str] = None
    payment_purpose: Optional[str] = None
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    description: Optional[str] = None
    reference: Optional[str] = None
    operator_reference: Optional[str] = None

class TransactionUpdate(BaseModel):
    payment_method: Optional[str] = None
    payment_purpose: Optional[str] = None
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    description: Optional[str] = None
    notes: Optional[str] = None
    operator_reference: Optional[str] = None

class TransactionStatusUpdate(BaseModel):
    status: str
    note: Optional[str] = None

# ---------- Корзина ----------

class CartAdd(BaseModel):
    session_id: str = Field(..., min_length=1)
    product_id: int
    quantity: int = Field(1, ge=1)
    shop_id: Optional[int] = None
    selected_variant: Optional[Any] = None

class CartQuantityUpdate(BaseModel):
    quantity: int = Field(..., ge=1)

class CartVariantsUpdate(BaseModel):
    selected_variant: Optional[Any] = None

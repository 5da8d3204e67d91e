from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PREPARATION = "in_preparation"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    MOBILE_MONEY = "mobile_money"
    AIRTEL_MONEY = "airtel_money"
    MOOV_MONEY = "moov_money"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"


class PaymentPurpose(str, Enum):
    FULL_PAYMENT = "full_payment"
    DEPOSIT = "deposit"
    DELIVERY_FEE = "delivery_fee"
    BALANCE_AFTER_DELIVERY = "balance_after_delivery"
    TOP_UP = "top_up"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class StockDirection(str, Enum):
    DECREMENT = "decrement"
    INCREMENT = "increment"


def values(enum_cls) -> list:
    return [e.value for e in enum_cls]

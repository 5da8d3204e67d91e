# marketplace/services/fees.py
"""
Сверка суммы транзакции с ожидаемой.

Поверх суммы заказа клиент платит сервисный сбор (``SERVICE_FEE_RATE``, по умолчанию 10%).
Ожидаемая сумма зависит от назначения платежа:

    delivery_fee            round(shipping_fee * 1.10), если доставка платная, иначе 0
    full_payment            round((Σ line_total + shipping_fee) * 1.10)
    balance_after_delivery  round(Σ line_total * 1.10)
    deposit / top_up        фиксированной суммы нет, принимается любая > 0

Всё, что не распознали, считаем полной оплатой. Округление half-up до целого.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from marketplace import config
from marketplace.errors import AmountMismatch
from marketplace.utils.enums import PaymentPurpose

P = PaymentPurpose
OPEN_PURPOSES = {P.DEPOSIT, P.TOP_UP}


def fee_rate() -> Decimal:
    return Decimal(str(config.SERVICE_FEE_RATE))


def with_fee(amount) -> int:
    value = Decimal(str(amount or 0)) * (Decimal("1") + fee_rate())
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_purpose(purpose) -> PaymentPurpose:
    if isinstance(purpose, PaymentPurpose):
        return purpose
    try:
        return PaymentPurpose(purpose)
    except ValueError:
        return P.FULL_PAYMENT


def lines_total(order) -> Decimal:
    return sum((Decimal(str(l.line_total or 0)) for l in order.lines), Decimal("0"))


def expected_amount(order, purpose) -> Optional[int]:
    """None: у назначения нет фиксированной суммы (депозит, пополнение)."""
    purpose = normalize_purpose(purpose)
    shipping = Decimal(str(order.shipping_fee or 0))
    if purpose in OPEN_PURPOSES:
        return None
    if purpose == P.DELIVERY_FEE:
        return with_fee(shipping) if shipping > 0 else 0
    if purpose == P.BALANCE_AFTER_DELIVERY:
        return with_fee(lines_total(order))
    return with_fee(lines_total(order) + shipping)


def breakdown(order, purpose, amount: int) -> dict:
    purpose = normalize_purpose(purpose)
    expected = expected_amount(order, purpose)
    return {
        "purpose": purpose.value,
        "lines_total": str(lines_total(order)),
        "shipping_fee": str(Decimal(str(order.shipping_fee or 0))),
        "fee_rate": str(fee_rate()),
        "expected": expected,
        "actual": int(amount),
        "difference": None if expected is None else int(amount) - expected,
    }


def verify_amount(order, purpose, amount: int) -> int:
    """Бросает AmountMismatch, если сумма не сходится. Возвращает ожидаемую сумму (или amount)."""
    purpose = normalize_purpose(purpose)
    amount = int(amount)
    expected = expected_amount(order, purpose)
    if expected is None:
        if amount <= 0:
            raise AmountMismatch(
                f"Сумма платежа ({purpose.value}) должна быть больше нуля",
                details=breakdown(order, purpose, amount),
            )
        return amount
    if abs(expected - amount) > config.AMOUNT_TOLERANCE:
        raise AmountMismatch(
            f"Сумма {amount} не совпадает с ожидаемой {expected} для {purpose.value}",
            details=breakdown(order, purpose, amount),
        )
    return expected


def detect_purpose(order, amount: int) -> PaymentPurpose:
    """Угадывает назначение платежа по сумме (для транзакций, созданных без него)."""
    amount = int(amount)
    tol = config.AMOUNT_TOLERANCE
    shipping = Decimal(str(order.shipping_fee or 0))

    if shipping > 0 and abs(amount - expected_amount(order, P.DELIVERY_FEE)) <= tol:
        return P.DELIVERY_FEE
    full = expected_amount(order, P.FULL_PAYMENT)
    if abs(amount - full) <= tol:
        return P.FULL_PAYMENT
    if shipping > 0 and abs(amount - expected_amount(order, P.BALANCE_AFTER_DELIVERY)) <= tol:
        return P.BALANCE_AFTER_DELIVERY
    return P.DEPOSIT if amount < full else P.FULL_PAYMENT

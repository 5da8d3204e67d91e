from decimal import Decimal
from types import SimpleNamespace

import pytest

from marketplace.errors import AmountMismatch
from marketplace.services import fees
from marketplace.utils.enums import PaymentPurpose


def make_order(lines=(8000,), shipping_fee=2000):
    return SimpleNamespace(
        lines=[SimpleNamespace(line_total=Decimal(v)) for v in lines],
        shipping_fee=Decimal(shipping_fee),
    )


def test_expected_amounts_for_shop_fee_example():
    order = make_order()
    assert fees.expected_amount(order, "full_payment") == 11000
    assert fees.expected_amount(order, "delivery_fee") == 2200
    assert fees.expected_amount(order, "balance_after_delivery") == 8800


def test_delivery_fee_without_shipping_is_zero():
    assert fees.expected_amount(make_order(shipping_fee=0), "delivery_fee") == 0


def test_open_purposes_have_no_expectation():
    order = make_order()
    assert fees.expected_amount(order, "deposit") is None
    assert fees.expected_amount(order, "top_up") is None
    assert fees.verify_amount(order, "deposit", 1) == 1
    with pytest.raises(AmountMismatch):
        fees.verify_amount(order, "top_up", 0)


def test_unknown_purpose_is_full_payment():
    order = make_order()
    assert fees.expected_amount(order, "whatever") == 11000
    assert fees.expected_amount(order, None) == 11000


def test_rounding_is_half_up():
    # 1005 * 1.10 = 1105.5
    order = make_order(lines=(1005,), shipping_fee=0)
    assert fees.expected_amount(order, "full_payment") == 1106


def test_tolerance_of_two_units():
    order = make_order()
    assert fees.verify_amount(order, "full_payment", 11002) == 11000
    assert fees.verify_amount(order, "full_payment", 10998) == 11000
    with pytest.raises(AmountMismatch) as exc:
        fees.verify_amount(order, "full_payment", 11003)
    details = exc.value.details
    assert details["purpose"] == "full_payment"
    assert details["expected"] == 11000
    assert details["actual"] == 11003
    assert details["difference"] == 3
    assert details["lines_total"] == "8000"
    assert details["shipping_fee"] == "2000"


@pytest.mark.parametrize("amount,purpose", [
    (2200, PaymentPurpose.DELIVERY_FEE),
    (2201, PaymentPurpose.DELIVERY_FEE),
    (11000, PaymentPurpose.FULL_PAYMENT),
    (8800, PaymentPurpose.BALANCE_AFTER_DELIVERY),
    (5000, PaymentPurpose.DEPOSIT),
    (20000, PaymentPurpose.FULL_PAYMENT),
])
def test_detect_purpose(amount, purpose):
    assert fees.detect_purpose(make_order(), amount) == purpose


def test_detect_purpose_without_shipping():
    order = make_order(shipping_fee=0)
    assert fees.detect_purpose(order, 0) == PaymentPurpose.DEPOSIT
    assert fees.detect_purpose(order, 8800) == PaymentPurpose.FULL_PAYMENT

import pytest
import requests

from marketplace.services.orders import OrderService
from marketplace.telegram import telegram_notify
from marketplace.telegram.telegram_notify import TelegramNotifier


class Posted:
    def __init__(self, fail_for=()):
        self.calls = []
        self.fail_for = set(fail_for)

    def __call__(self, url, data=None, timeout=None):
        self.calls.append((url, data))
        if data["chat_id"] in self.fail_for:
            raise requests.ConnectionError("telegram down")
        return self

    def raise_for_status(self):
        return None


@pytest.fixture
def posted(monkeypatch):
    p = Posted()
    monkeypatch.setattr(telegram_notify.requests, "post", p)
    return p


def test_disabled_without_token(posted):
    n = TelegramNotifier("", ["1"])
    assert not n.enabled
    assert n.send("hi") == 0
    assert posted.calls == []


def test_send_to_every_chat(posted):
    n = TelegramNotifier("T", ["1", "2"])
    assert n.send("hi") == 2
    assert [c[1]["chat_id"] for c in posted.calls] == ["1", "2"]
    assert posted.calls[0][0] == "https://api.telegram.org/botT/sendMessage"


def test_send_failure_is_logged_not_raised(posted):
    posted.fail_for = {"1"}
    n = TelegramNotifier("T", ["1", "2"])
    assert n.send("hi") == 1


def test_order_created_message(db, make_product, posted):
    p = make_product(name="Robe wax", price="8000")
    n = TelegramNotifier("T", ["1"])
    data = {
        "customer": {"name": "Awa", "phone": "+24106000000", "address": "Rue 1",
                     "city": "Libreville", "district": "Louis", "instructions": "Appeler avant"},
        "lines": [{"product_id": p.id, "quantity": 2}],
    }
    order = OrderService(db, notifier=n).create_order(data)

    text = posted.calls[0][1]["text"]
    assert order.number in text
    assert "Robe wax × 2" in text
    assert "Appeler avant" in text


def test_status_change_message(db, make_product, make_order, posted):
    p = make_product()
    order = make_order([(p, 1, None, None)])
    n = TelegramNotifier("T", ["1"])
    OrderService(db, notifier=n).update_status(order.id, "confirmed")
    assert "pending → confirmed" in posted.calls[-1][1]["text"]

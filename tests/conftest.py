import os

# до импорта пакета: конфиг читается один раз при импорте
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["SWEEPER_ENABLED"] = "0"
os.environ["TELEGRAM_TOKEN"] = ""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.db import Base, get_db, make_engine
from marketplace.errors import GatewayError
from marketplace.main import app
from marketplace.models import Product, Shop
from marketplace.routers.deps import get_gateway
from marketplace.services.billing import BillState
from marketplace.services.orders import OrderService
from marketplace.utils.enums import ProductStatus


class FakeGateway:
    """Биллинг в памяти: счета и их состояния задаёт тест."""

    def __init__(self):
        self.bills = {}
        self.calls = []
        self.fail = False
        self._seq = 0

    def set_state(self, bill_id, state, ps_transaction_id=None, payment_system_name=None):
        self.bills[bill_id] = BillState(bill_id, state, ps_transaction_id, payment_system_name)

    def _check(self, what):
        self.calls.append(what)
        if self.fail:
            raise GatewayError(f"billing down ({what})")

    def authenticate(self):
        self._check("auth")
        return "token"

    def create_invoice(self, payer, amount, reference, description=None, token=None):
        self._check("create-invoice")
        self._seq += 1
        bill_id = f"BILL{self._seq:04d}"
        self.set_state(bill_id, "ready")
        return bill_id

    def push_ussd(self, bill_id, msisdn, payment_system, token=None):
        self._check("send-ussd-push")
        return {"status": "ok"}

    def get_bill(self, bill_id):
        self._check("e_bills")
        return self.bills.get(bill_id, BillState(bill_id, "ready"))

    def card_redirect_url(self, bill_id, return_url):
        return f"https://portal.test/?invoice={bill_id}&redirect_url={return_url}?bill_id={bill_id}"


@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def shop(db):
    s = Shop(name="Boutique Akanda", city="Libreville")
    db.add(s)
    db.commit()
    return s


@pytest.fixture
def make_product(db, shop):
    def _make(name="Robe", price="8000", stock=10, variants=None, status=ProductStatus.ACTIVE.value):
        p = Product(
            shop_id=shop.id,
            name=name,
            price=Decimal(price),
            stock=stock,
            in_stock=stock > 0,
            variants=variants,
            status=status,
        )
        db.add(p)
        db.commit()
        db.refresh(p)
        return p
    return _make


@pytest.fixture
def make_order(db, shop):
    def _make(lines, shipping_fee=0, taxes=0, discount=0):
        data = {
            "shop_id": shop.id,
            "customer": {
                "name": "Awa Mba",
                "phone": "+24106000000",
                "address": "Rue 12",
                "city": "Libreville",
                "district": "Louis",
            },
            "lines": [
                {
                    "product_id": product.id,
                    "quantity": qty,
                    "unit_price": price,
                    "selected_variant": variant,
                }
                for product, qty, price, variant in lines
            ],
            "shipping_fee": shipping_fee,
            "taxes": taxes,
            "discount": discount,
        }
        return OrderService(db).create_order(data)
    return _make


@pytest.fixture
def stock_of(db):
    def _stock(product_id):
        return db.get(Product, product_id, populate_existing=True).stock
    return _stock

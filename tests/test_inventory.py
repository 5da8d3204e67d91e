import pytest
from sqlalchemy import select, update

from marketplace.errors import InsufficientStock, NotFound, StockConflict
from marketplace.models import Product, StockAudit
from marketplace.services import variants as variants_module
from marketplace.services.inventory import InventoryService
from marketplace.services.variants import available_stock

CURRENT_RAW = {
    "variants": [{"name": "Rouge", "quantity": 3}, {"name": "Bleu", "quantity": 2}],
    "options": ["Rouge", "Bleu"],
}


def test_adjust_scalar_decrement_and_restock(db, make_product, stock_of):
    p = make_product(stock=5)
    inv = InventoryService(db)

    product = inv.adjust(p.id, 3)
    db.commit()
    assert product.stock == 2 and product.in_stock is True
    assert product.version == 1

    inv.adjust(p.id, 2)
    db.commit()
    product = db.get(Product, p.id, populate_existing=True)
    assert product.stock == 0
    assert product.in_stock is False

    inv.adjust(p.id, -4)
    db.commit()
    assert stock_of(p.id) == 4
    assert db.get(Product, p.id).in_stock is True


def test_adjust_below_zero_leaves_stock_unchanged(db, make_product, stock_of):
    p = make_product(stock=2)
    with pytest.raises(InsufficientStock) as exc:
        InventoryService(db).adjust(p.id, 3)
    db.rollback()
    assert exc.value.details["available"] == 2
    assert stock_of(p.id) == 2


def test_adjust_unknown_product(db):
    with pytest.raises(NotFound):
        InventoryService(db).adjust(999, 1)


def test_adjust_variant_updates_entry_and_aggregate(db, make_product):
    p = make_product(stock=5, variants=CURRENT_RAW)
    product = InventoryService(db).adjust_variant(p.id, 2, {"variant": {"name": "Rouge"}})
    db.commit()

    assert product.variants["variants"][0]["quantity"] == 1
    assert product.variants["variants"][1]["quantity"] == 2
    assert product.stock == 3
    assert product.in_stock is True


def test_adjust_variant_to_zero_flips_in_stock(db, make_product):
    p = make_product(stock=3, variants={"variants": [{"name": "Unique", "quantity": 3}]})
    product = InventoryService(db).adjust_variant(p.id, 3, "Unique")
    db.commit()
    assert product.stock == 0
    assert product.in_stock is False


def test_adjust_variant_below_zero_is_per_variant(db, make_product, stock_of):
    # агрегат 5, но у «Bleu» только 2
    p = make_product(stock=5, variants=CURRENT_RAW)
    with pytest.raises(InsufficientStock) as exc:
        InventoryService(db).adjust_variant(p.id, 3, {"variant": {"name": "Bleu"}})
    db.rollback()
    assert exc.value.details["variant"] == "Bleu"
    product = db.get(Product, p.id, populate_existing=True)
    assert product.variants["variants"][1]["quantity"] == 2
    assert stock_of(p.id) == 5


def test_adjust_variant_legacy_decrements_each_dimension(db, make_product):
    raw = [
        {"name": "Couleur", "options": ["Rouge", "Bleu"], "quantities": [3, 5]},
        {"name": "Taille", "options": ["S", "M"], "quantities": [2, 6]},
    ]
    p = make_product(stock=8, variants=raw)
    product = InventoryService(db).adjust_variant(p.id, 1, {"Couleur": "Bleu", "Taille": "S"})
    db.commit()
    assert product.variants[0]["quantities"] == [3, 4]
    assert product.variants[1]["quantities"] == [1, 6]
    assert product.stock == 7


def test_legacy_sale_lowers_stock_by_units_sold(db, make_product, stock_of):
    raw = [
        {"name": "Couleur", "options": ["Rouge", "Bleu"], "quantities": [3, 2]},
        {"name": "Taille", "options": ["S", "M"], "quantities": [3, 2]},
    ]
    p = make_product(stock=5, variants=raw)
    service = InventoryService(db)
    service.adjust_variant(p.id, 1, {"Couleur": "Rouge", "Taille": "S"})
    service.adjust_variant(p.id, 2, {"Couleur": "Bleu", "Taille": "M"})
    db.commit()
    assert stock_of(p.id) == 2
    assert available_stock(db.get(Product, p.id), {"Couleur": "Bleu", "Taille": "M"}) == 0


def test_adjust_variant_without_match_falls_back_to_scalar(db, make_product):
    p = make_product(stock=5, variants=CURRENT_RAW)
    product = InventoryService(db).adjust_variant(p.id, 1, {"variant": {"name": "Vert"}})
    db.commit()
    assert product.stock == 4
    assert product.variants == CURRENT_RAW


def test_adjust_variant_gives_up_after_version_conflicts(db, make_product, monkeypatch):
    p = make_product(stock=5, variants=CURRENT_RAW)
    original_dump = variants_module.VariantStock.dump

    def dump_with_concurrent_write(self):
        # кто-то другой успевает записать товар между чтением и CAS
        db.execute(update(Product).where(Product.id == p.id).values(version=Product.version + 1))
        return original_dump(self)

    monkeypatch.setattr(variants_module.VariantStock, "dump", dump_with_concurrent_write)
    with pytest.raises(StockConflict):
        InventoryService(db, retries=3).adjust_variant(p.id, 1, "Rouge")


def test_every_write_is_audited(db, make_product):
    p = make_product(stock=5, variants=CURRENT_RAW)
    inv = InventoryService(db, user="tester")
    inv.adjust_variant(p.id, 1, "Rouge", note="test")
    inv.adjust(p.id, -2)
    db.commit()

    rows = db.execute(select(StockAudit).order_by(StockAudit.id)).scalars().all()
    assert [(r.variant_key, r.change_type, r.delta, r.old_stock, r.new_stock) for r in rows] == [
        ("Rouge", "DECREASE", 1, 3, 2),
        (None, "INCREASE", 2, 4, 6),
    ]
    assert rows[0].user == "tester"


def test_apply_order_stock_change_is_all_or_nothing(db, make_product, make_order, stock_of):
    a = make_product(name="A", stock=5)
    b = make_product(name="B", stock=1)
    order = make_order([(a, 2, 1000, None), (b, 3, 1000, None)])

    with pytest.raises(InsufficientStock):
        InventoryService(db).apply_order_stock_change(order.id, "decrement")
    db.rollback()
    assert stock_of(a.id) == 5
    assert stock_of(b.id) == 1


def test_apply_order_stock_change_round_trip(db, make_product, make_order, stock_of):
    a = make_product(name="A", stock=5)
    v = make_product(name="V", stock=5, variants=CURRENT_RAW)
    order = make_order([(a, 2, 1000, None), (v, 1, 1000, {"variant": {"name": "Bleu"}})])
    inv = InventoryService(db)

    inv.apply_order_stock_change(order.id, "decrement")
    db.commit()
    assert stock_of(a.id) == 3
    assert stock_of(v.id) == 4
    assert db.get(Product, v.id).variants["variants"][1]["quantity"] == 1

    inv.apply_order_stock_change(order.id, "increment")
    db.commit()
    assert stock_of(a.id) == 5
    assert stock_of(v.id) == 5
    assert db.get(Product, v.id).variants["variants"][1]["quantity"] == 2

import pytest

from marketplace.errors import InsufficientStock, InvalidInput, NotFound
from marketplace.models import CartItem
from marketplace.services.cart import CartService

SESSION = "sess-1"

SIZES = {"variants": [{"name": "S", "quantity": 2}, {"name": "M", "quantity": 0}]}


def test_quantity_is_clamped_to_stock(db, make_product):
    p = make_product(stock=3)
    db.add(CartItem(session_id=SESSION, shop_id=p.shop_id, product_id=p.id, quantity=10))
    db.commit()

    result = CartService(db).get_validated_cart(SESSION)
    assert [i.quantity for i in result.items] == [3]
    assert result.removed_items == []
    [adj] = result.adjusted_items
    assert adj["original_quantity"] == 10
    assert adj["new_quantity"] == 3
    assert adj["available_stock"] == 3
    # урезание сохранено в базе
    db.expire_all()
    assert db.get(CartItem, adj["id"]).quantity == 3


def test_unavailable_and_out_of_stock_items_are_removed(db, make_product):
    inactive = make_product(name="Old", status="inactive")
    empty = make_product(name="Empty", stock=0)
    ok = make_product(name="Ok", stock=5)
    for p in (inactive, empty, ok):
        db.add(CartItem(session_id=SESSION, shop_id=p.shop_id, product_id=p.id, quantity=1))
    db.add(CartItem(session_id=SESSION, shop_id=ok.shop_id, product_id=9999, quantity=1))
    db.commit()

    result = CartService(db).get_validated_cart(SESSION)
    assert [i.product_id for i in result.items] == [ok.id]
    reasons = {r["product_id"]: r["reason"] for r in result.removed_items}
    assert reasons == {inactive.id: "unavailable", empty.id: "out_of_stock", 9999: "unavailable"}
    assert CartService(db).count(SESSION) == 1


def test_clean_cart_has_no_warnings(db, make_product):
    p = make_product(stock=5)
    db.add(CartItem(session_id=SESSION, shop_id=p.shop_id, product_id=p.id, quantity=2))
    db.commit()

    result = CartService(db).get_validated_cart(SESSION)
    assert not result.has_warnings
    assert len(result.items) == 1


def test_variant_stock_is_used_for_clamping(db, make_product):
    p = make_product(stock=10, variants=SIZES)
    db.add(CartItem(session_id=SESSION, shop_id=p.shop_id, product_id=p.id, quantity=5,
                    selected_variant={"variant": {"name": "S"}}))
    db.add(CartItem(session_id=SESSION, shop_id=p.shop_id, product_id=p.id, quantity=1,
                    selected_variant={"variant": {"name": "M"}}))
    db.commit()

    result = CartService(db).get_validated_cart(SESSION)
    assert [i.quantity for i in result.items] == [2]
    assert result.adjusted_items[0]["new_quantity"] == 2
    assert result.removed_items[0]["reason"] == "out_of_stock"


def test_add_merges_same_selection(db, make_product):
    p = make_product(stock=5, variants=SIZES)
    cart = CartService(db)
    first = cart.add(SESSION, p.id, 1, selected_variant={"variant": {"name": "S"}})
    again = cart.add(SESSION, p.id, 1, selected_variant={"variant": {"name": "S"}})
    assert again.id == first.id
    assert again.quantity == 2

    plain = cart.add(SESSION, p.id, 1)
    assert plain.id != first.id
    assert cart.count(SESSION) == 2


def test_add_beyond_stock(db, make_product):
    p = make_product(stock=2)
    cart = CartService(db)
    cart.add(SESSION, p.id, 2)
    with pytest.raises(InsufficientStock) as exc:
        cart.add(SESSION, p.id, 1)
    assert exc.value.details == {"product_id": p.id, "available": 2, "requested": 3}


def test_add_rejects_bad_input(db, make_product):
    inactive = make_product(status="inactive")
    cart = CartService(db)
    with pytest.raises(NotFound):
        cart.add(SESSION, 12345, 1)
    with pytest.raises(InvalidInput):
        cart.add(SESSION, inactive.id, 1)
    with pytest.raises(InvalidInput):
        cart.add(SESSION, inactive.id, 0)


def test_item_operations(db, make_product):
    p = make_product(stock=5)
    cart = CartService(db)
    item = cart.add(SESSION, p.id, 1)

    assert cart.update_quantity(item.id, 4).quantity == 4
    with pytest.raises(InvalidInput):
        cart.update_quantity(item.id, 0)
    assert cart.update_variants(item.id, {"variant": "S"}).selected_variant == {"variant": "S"}

    cart.remove(item.id)
    with pytest.raises(NotFound):
        cart.get_item(item.id)


def test_clear(db, make_product):
    p = make_product(stock=5)
    q = make_product(name="Sac", stock=5)
    cart = CartService(db)
    cart.add(SESSION, p.id, 1)
    cart.add(SESSION, q.id, 1)
    cart.add("other", p.id, 1)

    assert cart.clear(SESSION) == 2
    assert cart.count(SESSION) == 0
    assert cart.count("other") == 1


def test_update_quantity_beyond_stock(db, make_product):
    p = make_product(stock=3, variants=SIZES)
    cart = CartService(db)
    item = cart.add(SESSION, p.id, 1, selected_variant={"variant": {"name": "S"}})

    with pytest.raises(InsufficientStock) as exc:
        cart.update_quantity(item.id, 3)
    assert exc.value.details["available"] == 2
    assert cart.get_item(item.id).quantity == 1
    assert cart.update_quantity(item.id, 2).quantity == 2

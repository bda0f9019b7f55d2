"""
Cart tests: line merging, variant selection, ownership and clearing.
"""

import pytest

from storefront.errors import NotFoundError
from storefront.models import CartItem
from storefront.services import cart_service, catalog_service
from storefront.services.cart_service import CartError
from storefront.validation import ValidationError, MAX_LINE_QUANTITY


class TestCartService:

    def test_canonical_selection_ignores_key_order(self):
        a = cart_service.canonical_selection({"size": "M", "color": "black"})
        b = cart_service.canonical_selection({"color": "black", "size": "M"})
        assert a == b == '{"color":"black","size":"M"}'
        assert cart_service.canonical_selection(None) == ""

    def test_same_selection_merges(self, db_session, customer, phone):
        first = cart_service.add_item(customer.id, phone.id, 1, selected_variants={"storage": "256GB", "color": "black"})
        second = cart_service.add_item(customer.id, phone.id, 2, selected_variants={"color": "black", "storage": "256GB"})

        assert first.id == second.id
        assert second.quantity == 3
        assert db_session.query(CartItem).count() == 1

    def test_different_selection_is_new_line(self, db_session, customer, phone):
        cart_service.add_item(customer.id, phone.id, 1, selected_variants={"storage": "256GB", "color": "black"})
        cart_service.add_item(customer.id, phone.id, 1, selected_variants={"storage": "512GB", "color": "white"})

        cart = cart_service.get_cart(customer.id)
        assert len(cart["items"]) == 2
        assert cart["item_count"] == 2
        assert cart["subtotal_cents"] == 100000 + 120000

    def test_variant_id_resolves_selection(self, db_session, customer, phone):
        variant = phone.variants[1]
        item = cart_service.add_item(customer.id, phone.id, 1, variant_id=variant.id)
        assert item.variant_id == variant.id
        assert item.selected_variants == cart_service.canonical_selection(variant.attributes)

    def test_variant_id_with_other_variants_selection_rejected(self, db_session, customer, phone):
        black, white = phone.variants
        cart_service.add_item(customer.id, phone.id, 1, variant_id=black.id)

        with pytest.raises(CartError):
            cart_service.add_item(customer.id, phone.id, 1, variant_id=white.id, selected_variants=black.attributes)

        item = db_session.query(CartItem).one()
        assert item.variant_id == black.id
        assert item.quantity == 1

    def test_variant_id_with_matching_selection_merges(self, db_session, customer, phone):
        variant = phone.variants[0]
        first = cart_service.add_item(customer.id, phone.id, 1, selected_variants=variant.attributes)
        second = cart_service.add_item(customer.id, phone.id, 1, variant_id=variant.id,
                                       selected_variants=dict(reversed(list(variant.attributes.items()))))
        assert first.id == second.id
        assert second.quantity == 2

    def test_product_with_variants_requires_selection(self, db_session, customer, phone):
        with pytest.raises(CartError):
            cart_service.add_item(customer.id, phone.id, 1)

    def test_unknown_selection_rejected(self, db_session, customer, phone):
        with pytest.raises(CartError):
            cart_service.add_item(customer.id, phone.id, 1, selected_variants={"color": "red"})

    def test_simple_product(self, db_session, customer, mug):
        item = cart_service.add_item(customer.id, mug.id, 2)
        assert item.variant_id is None
        assert item.selected_variants == ""

    def test_inactive_product_not_found(self, db_session, customer, mug):
        catalog_service.archive_product(mug.id)
        with pytest.raises(NotFoundError):
            cart_service.add_item(customer.id, mug.id, 1)

    def test_quantity_must_be_positive(self, db_session, customer, mug):
        with pytest.raises(ValidationError):
            cart_service.add_item(customer.id, mug.id, 0)

    def test_merge_respects_line_cap(self, db_session, customer, mug):
        cart_service.add_item(customer.id, mug.id, MAX_LINE_QUANTITY)
        with pytest.raises(CartError):
            cart_service.add_item(customer.id, mug.id, 1)

    def test_update_to_zero_removes_line(self, db_session, customer, mug):
        item = cart_service.add_item(customer.id, mug.id, 2)
        assert cart_service.update_item(customer.id, item.id, 0) is None
        assert cart_service.get_cart(customer.id)["items"] == []

    def test_cannot_touch_other_users_line(self, db_session, customer, other_customer, mug):
        item = cart_service.add_item(customer.id, mug.id, 1)
        with pytest.raises(NotFoundError):
            cart_service.update_item(other_customer.id, item.id, 5)
        with pytest.raises(NotFoundError):
            cart_service.remove_item(other_customer.id, item.id)

    def test_clear_cart(self, db_session, customer, mug, phone):
        cart_service.add_item(customer.id, mug.id, 1)
        cart_service.add_item(customer.id, phone.id, 1, variant_id=phone.variants[0].id)

        assert cart_service.clear_cart(customer.id) == 2
        assert cart_service.get_cart(customer.id)["items"] == []

    def test_prices_come_from_live_catalog(self, db_session, customer, mug):
        cart_service.add_item(customer.id, mug.id, 2)
        catalog_service.update_product(product_id=mug.id, patch={"price_cents": 20000})

        assert cart_service.get_cart(customer.id)["subtotal_cents"] == 40000


class TestCartRoutes:

    def test_empty_cart(self, client, customer_headers):
        resp = client.get("/api/cart", headers=customer_headers)
        assert resp.status_code == 200
        assert resp.get_json()["cart"]["items"] == []

    def test_add_update_delete(self, client, customer_headers, mug):
        resp = client.post("/api/cart", json={"product_id": mug.id, "quantity": 2}, headers=customer_headers)
        assert resp.status_code == 201
        item_id = resp.get_json()["item"]["id"]

        resp = client.put("/api/cart", json={"item_id": item_id, "quantity": 5}, headers=customer_headers)
        assert resp.status_code == 200
        assert resp.get_json()["cart"]["item_count"] == 5

        resp = client.delete(f"/api/cart?item_id={item_id}", headers=customer_headers)
        assert resp.status_code == 200
        assert resp.get_json()["cart"]["items"] == []

    def test_add_unknown_product_is_404(self, client, customer_headers, db_session):
        resp = client.post("/api/cart", json={"product_id": 999, "quantity": 1}, headers=customer_headers)
        assert resp.status_code == 404

    def test_add_bad_quantity_is_400(self, client, customer_headers, mug):
        resp = client.post("/api/cart", json={"product_id": mug.id, "quantity": "2.5"}, headers=customer_headers)
        assert resp.status_code == 400

    def test_delete_without_item_clears(self, client, customer_headers, mug):
        client.post("/api/cart", json={"product_id": mug.id, "quantity": 1}, headers=customer_headers)
        resp = client.delete("/api/cart", headers=customer_headers)
        assert resp.status_code == 200
        assert resp.get_json()["cart"]["items"] == []

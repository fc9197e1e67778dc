import pytest
import stripe

from conftest import ADMIN_UID


def headers(uid):
    return {"Firebase-UID": uid}


ADDRESS = {"street": "1 Main St", "city": "Springfield", "state": "IL", "country": "US", "postal_code": "62701"}
CHECKOUT = {"payment_method": "credit_card", "shipping_address": ADDRESS, "billing_address": ADDRESS}


def register(client, uid, email=None):
    return client.post("/api/users/register", json={
        "firebase_uid": uid,
        "first_name": "Grace",
        "last_name": "Hopper",
        "email": email or f"{uid}@example.com",
    })


@pytest.fixture
def shopper(client):
    assert register(client, "shopper").status_code == 201
    return "shopper"


@pytest.fixture
def product(make_product):
    return make_product("Widget", price=10.00, stock=5, is_featured=True)


def test_root(client):
    assert client.get("/").json() == {"message": "Storefront API is running"}


class TestUsers:

    def test_register(self, client):
        response = register(client, "new-user")
        assert response.status_code == 201
        body = response.json()
        assert body["role"] == "customer"
        assert body["is_active"] is True
        assert body["email"] == "new-user@example.com"

    def test_duplicate_registration(self, client, shopper):
        response = register(client, "someone-else", email="shopper@example.com")
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_invalid_email(self, client):
        assert register(client, "bad", email="not-an-email").status_code == 422

    def test_admin_uid_registers_as_admin(self, client):
        assert register(client, ADMIN_UID).json()["role"] == "admin"

    def test_profile_round_trip(self, client, shopper):
        assert client.get("/api/users/profile", headers=headers(shopper)).json()["first_name"] == "Grace"
        response = client.put("/api/users/profile", headers=headers(shopper),
                              json={"first_name": "Amazing", "last_name": "Grace", "phone": "555-0100"})
        assert response.status_code == 200
        assert response.json()["first_name"] == "Amazing"
        assert response.json()["email"] == "shopper@example.com"

    def test_missing_and_unknown_caller(self, client):
        missing = client.get("/api/cart")
        assert missing.status_code == 401
        assert missing.json()["error"] == "unauthorized"
        assert client.get("/api/cart", headers=headers("nobody")).status_code == 404

    def test_deactivated_user_is_locked_out(self, client, admin, shopper):
        user_id = client.get("/api/users/profile", headers=headers(shopper)).json()["id"]
        response = client.post(f"/api/users/{user_id}/deactivate", headers=headers(ADMIN_UID))
        assert response.json()["is_active"] is False
        assert client.get("/api/cart", headers=headers(shopper)).status_code == 403

        client.post(f"/api/users/{user_id}/activate", headers=headers(ADMIN_UID))
        assert client.get("/api/cart", headers=headers(shopper)).status_code == 200

    def test_role_change_requires_admin(self, client, admin, shopper):
        user_id = client.get("/api/users/profile", headers=headers(shopper)).json()["id"]
        assert client.put(f"/api/users/{user_id}/role?role=admin", headers=headers(shopper)).status_code == 403
        response = client.put(f"/api/users/{user_id}/role?role=admin", headers=headers(ADMIN_UID))
        assert response.json()["role"] == "admin"

    def test_lookup_by_email_is_admin_only(self, client, admin, shopper):
        url = "/api/users/email/shopper@example.com"
        assert client.get(url, headers=headers(shopper)).status_code == 403
        assert client.get(url, headers=headers(ADMIN_UID)).json()["firebase_uid"] == shopper


class TestCatalog:

    def test_static_routes_win_over_ids(self, client, product):
        featured = client.get("/api/products/featured")
        assert featured.status_code == 200
        assert [p["name"] for p in featured.json()] == ["Widget"]
        assert client.get("/api/products/brands").status_code == 200

    def test_product_lookup(self, client, product):
        assert client.get(f"/api/products/{product.id}").json()["slug"] == "widget"
        assert client.get("/api/products/slug/widget").json()["id"] == product.id
        missing = client.get("/api/products/not-an-id")
        assert missing.status_code == 404
        assert missing.json()["error"] == "not_found"

    def test_list_page_shape(self, client, product):
        body = client.get("/api/products?size=5").json()
        assert body["page"] == 0
        assert body["size"] == 5
        assert body["total_elements"] == 1
        assert body["total_pages"] == 1
        assert body["content"][0]["category"]["slug"] == "laptops-tablets"

    def test_bad_sort_field(self, client):
        assert client.get("/api/products?sort_by=secret").status_code == 422

    def test_categories(self, client, category):
        assert [c["id"] for c in client.get("/api/categories/top-level").json()] == [category.id]
        assert client.get(f"/api/categories/{category.id}/product-count").json() == 0


class TestAdmin:

    def test_product_management_needs_admin(self, client, admin, shopper, category):
        payload = {"name": "Gadget", "price": 25.5, "stock_quantity": 3, "category_id": category.id}
        assert client.post("/api/admin/products", json=payload).status_code == 401
        assert client.post("/api/admin/products", json=payload, headers=headers(shopper)).status_code == 403

        response = client.post("/api/admin/products", json=payload, headers=headers(ADMIN_UID))
        assert response.status_code == 201
        product_id = response.json()["id"]

        assert client.delete(f"/api/admin/products/{product_id}", headers=headers(ADMIN_UID)).status_code == 204
        assert client.get(f"/api/products/{product_id}").status_code == 404

    def test_all_orders_needs_admin(self, client, admin, shopper):
        assert client.get("/api/orders", headers=headers(shopper)).status_code == 403
        assert client.get("/api/orders", headers=headers(ADMIN_UID)).json() == []

    def test_low_stock(self, client, admin, make_product):
        make_product("Nearly Gone", stock=1)
        response = client.get("/api/admin/products/low-stock?threshold=2", headers=headers(ADMIN_UID))
        assert [p["name"] for p in response.json()] == ["Nearly Gone"]


class TestShopping:

    def add(self, client, uid, product_id, quantity):
        return client.post("/api/cart/add", headers=headers(uid), json={"product_id": product_id, "quantity": quantity})

    def test_cart_endpoints(self, client, shopper, product):
        body = self.add(client, shopper, product.id, 2).json()
        assert body["total_amount"] == 20.0
        item_id = body["items"][0]["id"]

        body = client.put(f"/api/cart/items/{item_id}?quantity=3", headers=headers(shopper)).json()
        assert body["total_items"] == 3

        assert self.add(client, shopper, product.id, 5).status_code == 409

        body = client.put(f"/api/cart/items/{item_id}?quantity=0", headers=headers(shopper)).json()
        assert body["items"] == []

    def test_add_requires_positive_quantity(self, client, shopper, product):
        assert self.add(client, shopper, product.id, 0).status_code == 422

    def test_checkout_and_cancel(self, client, shopper, product):
        self.add(client, shopper, product.id, 2)
        response = client.post("/api/orders", headers=headers(shopper), json=CHECKOUT)
        assert response.status_code == 201
        order = response.json()
        assert order["total_amount"] == 31.6
        assert order["status"] == "pending"
        assert client.get("/api/cart", headers=headers(shopper)).json()["total_items"] == 0

        page = client.get("/api/orders/user", headers=headers(shopper)).json()
        assert [o["id"] for o in page["content"]] == [order["id"]]

        cancel = client.post(f"/api/orders/{order['id']}/cancel", headers=headers(shopper))
        assert cancel.json()["status"] == "cancelled"
        again = client.post(f"/api/orders/{order['id']}/cancel", headers=headers(shopper))
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_transition"

    def test_empty_cart_checkout(self, client, shopper):
        response = client.post("/api/orders", headers=headers(shopper), json=CHECKOUT)
        assert response.status_code == 400
        assert response.json()["error"] == "empty_cart"

    def test_simulated_payment_confirms_order(self, client, shopper, product):
        self.add(client, shopper, product.id, 1)
        order = client.post("/api/orders", headers=headers(shopper), json=CHECKOUT).json()

        intent = client.post(f"/api/orders/{order['id']}/payment-intent", headers=headers(shopper)).json()
        assert intent["simulated"] is True
        assert intent["amount"] == 2080

        confirmed = client.post(f"/api/orders/{order['id']}/payment/confirm", headers=headers(shopper)).json()
        assert confirmed["payment_status"] == "paid"
        assert confirmed["status"] == "confirmed"

    def test_gateway_failure_is_bad_gateway(self, client, services, shopper, product, monkeypatch):
        self.add(client, shopper, product.id, 1)
        order = client.post("/api/orders", headers=headers(shopper), json=CHECKOUT).json()

        def declined(order):
            raise stripe.StripeError("Your card was declined.")

        monkeypatch.setattr(services.gateway, "create_payment_intent", declined)
        response = client.post(f"/api/orders/{order['id']}/payment-intent", headers=headers(shopper))
        assert response.status_code == 502
        assert response.json() == {"error": "payment_error", "detail": "Your card was declined."}

    def test_admin_moves_order_along(self, client, admin, shopper, product):
        self.add(client, shopper, product.id, 1)
        order = client.post("/api/orders", headers=headers(shopper), json=CHECKOUT).json()
        url = f"/api/orders/{order['id']}/status"

        assert client.put(url + "?status=shipped", headers=headers(shopper)).status_code == 403
        shipped = client.put(url + "?status=shipped", headers=headers(ADMIN_UID)).json()
        assert shipped["tracking_number"].startswith("TRK-")
        client.put(url + "?status=delivered", headers=headers(ADMIN_UID))
        assert client.put(url + "?status=cancelled", headers=headers(ADMIN_UID)).status_code == 409

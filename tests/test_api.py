import importlib
import json
import runpy

import uvicorn

import config
import database
from conftest import PASSWORD, headers_for, stock_of

ADDRESS = {"address": "1 Main St", "city": "Springfield", "postalCode": "12345", "country": "US"}


def assert_error(response, status, message=None):
    assert response.status_code == status
    body = response.json()
    assert body["statusCode"] == status
    assert body["success"] is False
    assert body["path"] == response.request.url.path
    assert body["timestamp"].endswith("Z")
    if message is not None:
        assert body["message"] == message
    return body


def test_root(client):
    assert client.get("/").json() == {"message": "Storefront API running"}


def test_unknown_route(client):
    assert_error(client.get("/api/nope"), 404, "Route /api/nope not found")


def test_register_login_and_profile(client):
    response = client.post("/api/auth/register", json={
        "name": "New Person", "email": "New@Example.com", "password": PASSWORD,
    })
    assert response.status_code == 201
    assert response.json()["token_type"] == "bearer"

    assert_error(client.post("/api/auth/register", json={
        "name": "Dup", "email": "new@example.com", "password": PASSWORD,
    }), 409)

    login = client.post("/api/auth/login", data={"username": "new@example.com", "password": PASSWORD})
    assert login.status_code == 200
    assert "accessToken=" in login.headers["set-cookie"]
    token = login.json()["access_token"]

    profile = client.get("/api/users/profile", headers={"Authorization": f"Bearer {token}"})
    assert profile.json()["email"] == "new@example.com"
    assert profile.json()["role"] == "user"
    assert "password_hash" not in profile.json()

    assert_error(client.post("/api/auth/login", data={"username": "new@example.com", "password": "wrong-pass"}),
                 401, "Invalid user credentials")


def test_register_validation_errors(client):
    body = assert_error(client.post("/api/auth/register", json={"name": "X", "email": "nope", "password": "1"}),
                        422, "Validation failed")
    fields = {e["field"] for e in body["errors"]}
    assert "body.email" in fields
    assert "body.password" in fields


def test_authentication_required(client):
    assert_error(client.get("/api/cart"), 401, "Authentication required")
    assert_error(client.get("/api/cart", headers={"Authorization": "Bearer garbage"}), 401)


def test_admin_routes_are_gated(client, user, admin):
    assert_error(client.get("/api/users", headers=headers_for(user)), 403, "Admin access required")
    assert_error(client.get("/api/payments/admin/stats", headers=headers_for(user)), 403)
    assert client.get("/api/users", headers=headers_for(admin)).status_code == 200


def test_only_superadmin_creates_admins(client, admin, superadmin):
    payload = {"name": "Second Admin", "email": "second@example.com", "password": PASSWORD}
    assert_error(client.post("/api/admin/create", json=payload, headers=headers_for(admin)),
                 403, "Super admin access required")
    created = client.post("/api/admin/create", json=payload, headers=headers_for(superadmin))
    assert created.status_code == 201
    assert created.json()["role"] == "admin"


def test_admin_cannot_delete_superadmin(client, admin, superadmin):
    assert_error(client.delete(f"/api/users/{superadmin['_id']}", headers=headers_for(admin)), 403)


def test_product_management_and_listing(client, user, admin):
    payload = {"name": "Denim Jacket", "description": "Blue", "price": 80, "stock": 4, "sizes": ["S", "M"]}
    assert_error(client.post("/api/products", json=payload, headers=headers_for(user)), 403)
    created = client.post("/api/products", json=payload, headers=headers_for(admin))
    assert created.status_code == 201
    product = created.json()
    assert product["slug"] == "denim-jacket"

    listed = client.get("/api/products", params={"search": "denim"}).json()
    assert [p["id"] for p in listed["products"]] == [product["id"]]
    assert client.get(f"/api/products/{product['id']}").json()["name"] == "Denim Jacket"
    assert_error(client.get("/api/products/not-an-id"), 400, "Invalid product ID")


def test_cart_flow_over_http(client, user, make_product):
    product = make_product(price=40, stock=5, discount=25, sizes=["M"])
    pid = str(product["_id"])
    auth = headers_for(user)

    added = client.post("/api/cart/add", json={"productId": pid, "quantity": 2, "selectedSize": "M"}, headers=auth)
    assert added.status_code == 200
    cart = added.json()
    assert cart["totalItems"] == 2
    assert cart["totalPrice"] == 60.0
    assert cart["items"][0]["product"]["name"] == product["name"]
    assert stock_of(product) == 3

    assert client.get("/api/cart/summary", headers=auth).json() == {"totalItems": 2, "totalPrice": 60.0, "itemCount": 1}

    too_many = client.post("/api/cart/add", json={"productId": pid, "quantity": 4, "selectedSize": "M"}, headers=auth)
    assert_error(too_many, 400, "Insufficient stock available")

    updated = client.put("/api/cart/update", json={"productId": pid, "quantity": 1, "selectedSize": "M"}, headers=auth)
    assert updated.json()["totalItems"] == 1
    assert stock_of(product) == 4

    removed = client.delete(f"/api/cart/remove/{pid}", headers=auth)
    assert removed.json()["items"] == []
    assert stock_of(product) == 5


def test_inactive_product_cannot_be_added(client, user, make_product):
    product = make_product(status="inactive")
    response = client.post("/api/cart/add", json={"productId": str(product["_id"])}, headers=headers_for(user))
    assert_error(response, 400, "Product is not available")


def test_admin_cart_views(client, user, admin, make_product):
    product = make_product(stock=5)
    client.post("/api/cart/add", json={"productId": str(product["_id"]), "quantity": 2}, headers=headers_for(user))

    listing = client.get("/api/cart/admin/all", params={"search": "jane"}, headers=headers_for(admin)).json()
    assert listing["pagination"]["total"] == 1
    assert listing["carts"][0]["user"]["email"] == user["email"]

    cleared = client.delete(f"/api/cart/admin/user/{user['_id']}/clear", headers=headers_for(admin))
    assert cleared.json()["totalItems"] == 0
    assert stock_of(product) == 5

    assert client.post("/api/cart/clean-expired", headers=headers_for(admin)).json()["matchedCount"] == 0


def test_order_with_payment_and_webhook(client, user, make_product, processor):
    product = make_product(price=50, stock=5)
    response = client.post("/api/orders/with-payment", json={
        "items": [{"product": str(product["_id"]), "qty": 1}],
        "shippingAddress": ADDRESS,
    }, headers=headers_for(user))
    assert response.status_code == 201
    body = response.json()
    assert body["order"]["totalPrice"] == 65.0
    payment = body["payment"]
    assert payment["clientSecret"].endswith("_secret")
    assert payment["currency"] == "USD"

    event = json.dumps({
        "id": "evt_http",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": payment["stripePaymentIntentId"], "status": "succeeded"}},
    })
    assert_error(client.post("/api/payments/webhook", content=event, headers={"stripe-signature": "bad"}), 400)
    hook = client.post("/api/payments/webhook", content=event, headers={"stripe-signature": "valid-signature"})
    assert hook.json() == {"received": True}

    status = client.get(f"/api/orders/status/{body['order']['id']}", headers=headers_for(user)).json()
    assert status["status"] == "confirmed"
    assert status["paymentStatus"] == "paid"

    detail = client.get(f"/api/payments/{payment['paymentId']}", headers=headers_for(user)).json()
    assert detail["status"] == "succeeded"
    assert detail["remainingAmount"] == 65.0


def test_order_access_and_admin_refund(client, user, other_user, admin, make_product, processor):
    product = make_product(price=50, stock=5)
    body = client.post("/api/orders/with-payment", json={
        "items": [{"product": str(product["_id"]), "qty": 1}],
        "shippingAddress": ADDRESS,
    }, headers=headers_for(user)).json()
    order_id = body["order"]["id"]
    payment_id = body["payment"]["paymentId"]

    assert_error(client.get(f"/api/orders/{order_id}", headers=headers_for(other_user)), 403, "Access denied")
    assert client.get(f"/api/orders/{order_id}", headers=headers_for(admin)).json()["user"]["email"] == user["email"]

    processor.set_status(body["payment"]["stripePaymentIntentId"], "succeeded")
    confirmed = client.post(f"/api/payments/confirm/{payment_id}", headers=headers_for(user)).json()
    assert confirmed["status"] == "succeeded"
    assert confirmed["orderStatus"] == "confirmed"

    assert_error(client.post(f"/api/payments/admin/refund/{payment_id}", json={}, headers=headers_for(user)), 403)
    refund = client.post(f"/api/payments/admin/refund/{payment_id}", json={"amount": 65},
                         headers=headers_for(admin)).json()
    assert refund["status"] == "refunded"
    assert database.collection("order").find_one({"_id": database.oid(order_id)})["status"] == "cancelled"


def test_processor_failure_maps_to_bad_gateway(client, user, make_product, processor):
    processor.fail_create = True
    product = make_product(price=50, stock=5)
    response = client.post("/api/orders/with-payment", json={
        "items": [{"product": str(product["_id"]), "qty": 1}],
        "shippingAddress": ADDRESS,
    }, headers=headers_for(user))
    assert_error(response, 502)
    assert stock_of(product) == 5


def test_my_orders_and_status_update(client, user, admin, make_product):
    product = make_product(stock=5)
    created = client.post("/api/orders", json={
        "items": [{"product": str(product["_id"]), "qty": 2}],
        "shippingAddress": ADDRESS,
        "paymentMethod": "cash",
    }, headers=headers_for(user))
    assert created.status_code == 201
    order_id = created.json()["id"]

    mine = client.get("/api/orders/myorders", headers=headers_for(user)).json()
    assert [o["id"] for o in mine["orders"]] == [order_id]

    assert_error(client.put(f"/api/orders/status/{order_id}", json={"status": "shipped"}, headers=headers_for(user)), 403)
    shipped = client.put(f"/api/orders/status/{order_id}", json={"status": "shipped"}, headers=headers_for(admin))
    assert shipped.json()["status"] == "shipped"


def test_database_diagnostics(client):
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["connection_status"] == "Connected"


def test_login_cookie_authenticates_over_plain_http(client):
    client.post("/api/auth/register", json={"name": "Cookie Person", "email": "cookie@example.com", "password": PASSWORD})
    login = client.post("/api/auth/login", data={"username": "cookie@example.com", "password": PASSWORD})
    assert "secure" not in login.headers["set-cookie"].lower()
    profile = client.get("/api/users/profile")
    assert profile.status_code == 200
    assert profile.json()["email"] == "cookie@example.com"


def test_login_cookie_is_secure_when_configured(client, user, monkeypatch):
    monkeypatch.setattr(config, "COOKIE_SECURE", True)
    login = client.post("/api/auth/login", data={"username": user["email"], "password": PASSWORD})
    assert "secure" in login.headers["set-cookie"].lower()


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.setenv("COOKIE_SECURE", "true")
    try:
        importlib.reload(config)
        assert config.PORT == 9100
        assert config.COOKIE_SECURE is True
    finally:
        monkeypatch.undo()
        importlib.reload(config)


def test_entrypoint_serves_on_configured_port(monkeypatch):
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append(kwargs))
    monkeypatch.setattr(config, "PORT", 9100)
    runpy.run_module("main", run_name="__main__")
    assert calls == [{"host": "0.0.0.0", "port": 9100}]

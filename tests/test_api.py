from datetime import datetime, timedelta, timezone

import database
from conftest import PASSWORD, bearer, insert_listing


def listing_form(**overrides):
    start = datetime.now(timezone.utc) + timedelta(hours=1)
    form = {
        "title": "Chapati bundle",
        "description": "Soft chapatis from the lunch service",
        "cuisine": "Kenyan",
        "dietary_tags": '["vegetarian", "dairy-free"]',
        "original_price": "500",
        "discounted_price": "300",
        "quantity": "10",
        "pickup_start": start.isoformat(),
        "pickup_end": (start + timedelta(hours=2)).isoformat(),
    }
    form.update(overrides)
    return form


def register(client, **fields):
    body = {
        "role": "customer",
        "email": "carol@example.com",
        "password": PASSWORD,
        "name": "Carol",
        "phone": "0700000000",
    }
    body.update(fields)
    return client.post("/api/auth/register", json=body)


# -------------------- health / auth --------------------

def test_root(client):
    assert client.get("/").json()["status"] == "ok"


def test_database_probe(client, restaurant):
    body = client.get("/test").json()
    assert body["database"] == "✅ Connected & Working"
    assert "user" in body["collections"]


def test_startup_builds_indexes(db):
    from fastapi.testclient import TestClient
    from main import app

    db["order"].drop_indexes()
    with TestClient(app):
        indexes = db["order"].index_information()
    [code_index] = [i for i in indexes.values() if i["key"] == [("pickup_code", 1)]]
    assert code_index["unique"] is True
    assert code_index["partialFilterExpression"] == {"status": {"$in": ["reserved", "paid"]}}


def test_register_login_me(client):
    res = register(client, email="Carol@Example.com")
    assert res.status_code == 201
    assert res.json()["user"]["email"] == "carol@example.com"
    assert "password_hash" not in res.json()["user"]

    login = client.post("/api/auth/login", json={"email": "carol@example.com", "password": PASSWORD})
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user"]["role"] == "customer"


def test_register_rules(client):
    assert register(client).status_code == 201
    duplicate = register(client)
    assert duplicate.status_code == 400
    assert "already exists" in duplicate.json()["detail"]

    no_business = register(client, email="shop@example.com", role="restaurant")
    assert no_business.status_code == 400

    admin = register(client, email="boss@example.com", role="admin")
    assert admin.status_code == 400


def test_login_with_wrong_password(client):
    register(client)
    res = client.post("/api/auth/login", json={"email": "carol@example.com", "password": "wrong-password"})
    assert res.status_code == 401


def test_protected_routes_need_token(client):
    assert client.get("/api/orders/mine").status_code in (401, 403)
    res = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401


# -------------------- listings --------------------

def test_customer_cannot_post_listing(client, customer):
    res = client.post("/api/listings", data=listing_form(), headers=bearer(customer))
    assert res.status_code == 403


def test_create_listing_with_images(client, restaurant, media_host):
    files = [("images", ("a.png", b"\x89PNG....", "image/png")), ("images", ("b.jpg", b"\xff\xd8....", "image/jpeg"))]
    res = client.post("/api/listings", data=listing_form(), files=files, headers=bearer(restaurant))

    assert res.status_code == 201
    listing = res.json()["listing"]
    assert listing["discount_percentage"] == 40
    assert listing["dietary_tags"] == ["vegetarian", "dairy-free"]
    assert len(listing["images"]) == 2
    assert len(media_host.uploaded) == 2


def test_create_listing_rejects_non_images(client, restaurant):
    files = [("images", ("menu.txt", b"hello", "text/plain"))]
    res = client.post("/api/listings", data=listing_form(), files=files, headers=bearer(restaurant))
    assert res.status_code == 400


def test_create_listing_validation(client, restaurant):
    res = client.post("/api/listings", data=listing_form(discounted_price="500"), headers=bearer(restaurant))
    assert res.status_code == 400
    assert res.json()["detail"] == "Discounted price must be less than original price"

    res = client.post("/api/listings", data=listing_form(dietary_tags='["paleo"]'), headers=bearer(restaurant))
    assert res.status_code == 400


def test_browse_and_fetch(client, restaurant):
    insert_listing(restaurant, title="Vegan curry", cuisine="Indian", dietary_tags=["vegan"])
    other_id = insert_listing(restaurant, title="Halal wraps", cuisine="Lebanese", dietary_tags=["halal"])

    res = client.get("/api/listings", params={"dietaryTags": "halal,kosher"})
    assert res.json()["count"] == 1
    assert res.json()["listings"][0]["title"] == "Halal wraps"
    assert res.json()["listings"][0]["restaurant"]["business_name"] == "mama kitchen"

    assert client.get("/api/listings", params={"search": "CURRY"}).json()["count"] == 1

    single = client.get(f"/api/listings/{other_id}")
    assert single.status_code == 200
    assert single.json()["listing"]["id"] == other_id

    assert client.get("/api/listings/64b7f0c2e4b0a1a2b3c4d5e6").status_code == 404
    assert client.get("/api/listings/nope").status_code == 400


def test_owner_listing_management(client, restaurant, other_restaurant):
    listing_id = insert_listing(restaurant, images=[{"url": "u", "public_id": "food-waste-rescue/p1"}])

    mine = client.get("/api/listings/mine", headers=bearer(restaurant)).json()
    assert mine["stats"]["total"] == 1

    res = client.put(f"/api/listings/{listing_id}", data={"quantity": "7"}, headers=bearer(other_restaurant))
    assert res.status_code == 403

    res = client.put(f"/api/listings/{listing_id}", data={"quantity": "7", "title": "Samosa box"},
                     headers=bearer(restaurant))
    assert res.status_code == 200
    assert res.json()["listing"]["quantity_remaining"] == 7

    res = client.delete(f"/api/listings/{listing_id}/images/food-waste-rescue/p1", headers=bearer(restaurant))
    assert res.status_code == 200
    assert res.json()["listing"]["images"] == []

    res = client.patch(f"/api/listings/{listing_id}/sold-out", headers=bearer(restaurant))
    assert res.json()["listing"]["status"] == "sold_out"

    res = client.put(f"/api/listings/{listing_id}", data={"title": "Again"}, headers=bearer(restaurant))
    assert res.status_code == 400

    assert client.delete(f"/api/listings/{listing_id}", headers=bearer(restaurant)).status_code == 200
    assert client.get(f"/api/listings/{listing_id}").status_code == 404


# -------------------- orders --------------------

def test_reserve_then_cancel_round_trip(client, restaurant, customer):
    created = client.post("/api/listings", data=listing_form(), headers=bearer(restaurant))
    listing_id = created.json()["listing"]["id"]
    assert created.json()["listing"]["discount_percentage"] == 40

    res = client.post("/api/orders", json={"listing_id": listing_id, "quantity": 3}, headers=bearer(customer))
    assert res.status_code == 201
    order = res.json()["order"]
    assert (order["total_price"], order["platform_fee"], order["restaurant_earnings"]) == (900, 135, 765)
    assert order["payment_method"] == "mpesa"
    assert client.get(f"/api/listings/{listing_id}").json()["listing"]["quantity_remaining"] == 7

    res = client.patch(f"/api/orders/{order['id']}/cancel", headers=bearer(customer))
    assert res.status_code == 200
    listing = client.get(f"/api/listings/{listing_id}").json()["listing"]
    assert listing["quantity_remaining"] == 10
    assert listing["status"] == "active"


def test_order_errors(client, restaurant, customer):
    listing_id = insert_listing(restaurant, quantity=2, quantity_remaining=2)

    res = client.post("/api/orders", json={"listing_id": listing_id, "quantity": 3}, headers=bearer(customer))
    assert res.status_code == 400
    assert res.json()["detail"] == "Only 2 items remaining"

    res = client.post("/api/orders", json={"listing_id": listing_id, "quantity": 1}, headers=bearer(restaurant))
    assert res.status_code == 403

    res = client.post("/api/orders", json={"listing_id": listing_id, "quantity": 0}, headers=bearer(customer))
    assert res.status_code == 422


def test_pickup_and_review_flow(client, restaurant, customer, other_customer):
    listing_id = insert_listing(restaurant)
    order = client.post("/api/orders", json={"listing_id": listing_id, "quantity": 1, "payment_method": "card"},
                        headers=bearer(customer)).json()["order"]
    order_id = order["id"]

    assert client.get(f"/api/orders/{order_id}", headers=bearer(other_customer)).status_code == 403
    incoming = client.get("/api/orders/restaurant", headers=bearer(restaurant)).json()
    assert incoming["count"] == 1
    assert incoming["orders"][0]["customer"]["email"] == "alice@example.com"
    mine = client.get("/api/orders/mine", headers=bearer(customer)).json()
    assert mine["count"] == 1
    assert mine["orders"][0]["restaurant"]["business_name"] == "mama kitchen"

    paid = client.patch(f"/api/orders/{order_id}/pay", json={"payment_id": "CARD-1"}, headers=bearer(customer))
    assert paid.json()["order"]["status"] == "paid"

    early = client.patch(f"/api/orders/{order_id}/review", json={"rating": 5}, headers=bearer(customer))
    assert early.status_code == 400

    bad = client.patch(f"/api/orders/{order_id}/pickup", json={"pickup_code": "000000"}, headers=bearer(restaurant))
    assert bad.status_code == 400
    assert bad.json()["detail"] == "Invalid pickup code"

    res = client.patch(f"/api/orders/{order_id}/pickup", json={"pickup_code": order["pickup_code"]},
                       headers=bearer(restaurant))
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "picked_up"

    assert client.patch(f"/api/orders/{order_id}/cancel", headers=bearer(customer)).status_code == 400

    res = client.patch(f"/api/orders/{order_id}/review", json={"rating": 4, "review": "Still warm"},
                       headers=bearer(customer))
    assert res.status_code == 200
    assert client.patch(f"/api/orders/{order_id}/review", json={"rating": 1},
                        headers=bearer(customer)).status_code == 400
    assert client.patch(f"/api/orders/{order_id}/review", json={"rating": 6},
                        headers=bearer(customer)).status_code == 422

    reviews = client.get(f"/api/restaurants/{restaurant['_id']}/reviews").json()
    assert reviews["restaurant"]["rating"] == 4
    assert reviews["items"][0]["review"] == "Still warm"


def test_admin_sweep(client, restaurant, customer, admin):
    past = database.utcnow() - timedelta(hours=3)
    insert_listing(restaurant, start=past, end=past + timedelta(hours=1))

    assert client.post("/api/admin/listings/expire", headers=bearer(customer)).status_code == 403
    res = client.post("/api/admin/listings/expire", headers=bearer(admin))
    assert res.json() == {"expired": 1}

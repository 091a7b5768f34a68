from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import media
from auth import create_access_token, hash_password
from database import create_document, to_object_id, utcnow
from pricing import discount_percentage
from schemas import Listing, ListingDraft, PickupWindow, Role, User

PASSWORD = "secret123"


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["food_rescue_test"]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes()
    return mock_db


class FakeMediaHost:
    def __init__(self):
        self.uploaded = []
        self.destroyed = []

    def upload(self, upload):
        public_id = f"food-waste-rescue/{len(self.uploaded) + 1}-{upload.filename}"
        self.uploaded.append(public_id)
        return {"url": f"https://media.test/{public_id}", "public_id": public_id}

    def destroy(self, public_id):
        self.destroyed.append(public_id)


@pytest.fixture(autouse=True)
def media_host(monkeypatch):
    host = FakeMediaHost()
    monkeypatch.setattr(media, "upload_image", host.upload)
    monkeypatch.setattr(media, "destroy_image", host.destroy)
    return host


def make_user(role: Role, email: str, **extra):
    fields = dict(
        role=role,
        email=email,
        password_hash=hash_password(PASSWORD),
        name=email.split("@")[0],
        phone="0712345678",
    )
    if role is Role.RESTAURANT:
        fields["business_name"] = f"{fields['name']} kitchen"
    fields.update(extra)
    user_id = create_document("user", User(**fields))
    doc = database.db["user"].find_one({"_id": to_object_id(user_id)})
    doc["_id"] = str(doc["_id"])
    return doc


@pytest.fixture
def restaurant(db):
    return make_user(Role.RESTAURANT, "mama@example.com")


@pytest.fixture
def other_restaurant(db):
    return make_user(Role.RESTAURANT, "papa@example.com")


@pytest.fixture
def customer(db):
    return make_user(Role.CUSTOMER, "alice@example.com")


@pytest.fixture
def other_customer(db):
    return make_user(Role.CUSTOMER, "bob@example.com")


@pytest.fixture
def admin(db):
    return make_user(Role.ADMIN, "admin@example.com")


def draft(**overrides) -> ListingDraft:
    start = utcnow() + timedelta(hours=1)
    fields = dict(
        title="Fresh bread",
        description="Loaves baked this morning",
        cuisine="Bakery",
        dietary_tags=["vegetarian"],
        original_price=500,
        discounted_price=300,
        quantity=10,
        pickup_start=start,
        pickup_end=start + timedelta(hours=3),
    )
    fields.update(overrides)
    return ListingDraft(**fields)


def insert_listing(owner, **overrides) -> str:
    """Store a listing directly, skipping the create-time checks (for past windows etc.)."""
    start = overrides.pop("start", utcnow() + timedelta(hours=1))
    end = overrides.pop("end", start + timedelta(hours=3))
    fields = dict(
        restaurant_id=str(owner["_id"]),
        title="Veg samosas",
        description="Crispy samosas",
        cuisine="Indian",
        dietary_tags=["vegan"],
        original_price=200,
        discounted_price=120,
        quantity=5,
        quantity_remaining=5,
        pickup_window=PickupWindow(start=start, end=end),
        expires_at=end,
    )
    fields.update(overrides)
    fields["discount_percentage"] = discount_percentage(fields["original_price"], fields["discounted_price"])
    return create_document("listing", Listing(**fields))


def get_listing_doc(listing_id):
    return database.db["listing"].find_one({"_id": to_object_id(listing_id)})


def get_order_doc(order_id):
    return database.db["order"].find_one({"_id": to_object_id(order_id)})


@pytest.fixture
def client(db):
    from main import app
    return TestClient(app)


def bearer(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user['_id']), user['role'])}"}

"""
Order lifecycle: reserved -> paid -> picked_up, with cancelled reachable
from reserved or paid.

Each status change is a conditional update keyed on the status it leaves,
so a repeated or concurrent request cannot cancel twice, release stock
twice or review twice.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

import listings
import pricing
from auth import ensure_role
from database import collection, create_document, get_documents, to_object_id, utcnow
from errors import (
    AuthorizationError,
    DuplicateError,
    ExpiredError,
    InsufficientStockError,
    InvalidCodeError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from schemas import ListingStatus, Order, OrderStatus, PaymentMethod, Role

logger = logging.getLogger(__name__)

PICKUP_CODE_ATTEMPTS = 5
OPEN_STATUSES = (OrderStatus.RESERVED.value, OrderStatus.PAID.value)

LISTING_SUMMARY_FIELDS = {"title": 1, "images": 1, "pickup_window": 1, "cuisine": 1}
RESTAURANT_CONTACT_FIELDS = {"business_name": 1, "address": 1, "phone": 1}
CUSTOMER_CONTACT_FIELDS = {"name": 1, "phone": 1, "email": 1}


def _load(order_id: str) -> Dict[str, Any]:
    doc = collection("order").find_one({"_id": to_object_id(order_id)})
    if not doc:
        raise NotFoundError("Order not found")
    return doc


def _load_for_customer(order_id: str, customer: Dict[str, Any]) -> Dict[str, Any]:
    doc = _load(order_id)
    if doc["customer_id"] != str(customer["_id"]):
        raise AuthorizationError("Not authorized")
    return doc


def _insert_with_pickup_code(order_fields: Dict[str, Any]) -> str:
    for attempt in range(1, PICKUP_CODE_ATTEMPTS + 1):
        order = Order(pickup_code=pricing.generate_pickup_code(), **order_fields)
        try:
            return create_document("order", order)
        except DuplicateKeyError:
            logger.warning("Pickup code collision on attempt %d, regenerating", attempt)
    raise DuplicateError("Could not allocate a unique pickup code, please retry")


# -------------------- Create --------------------

def create_order(
    customer: Dict[str, Any],
    listing_id: str,
    quantity: int,
    payment_method: PaymentMethod = PaymentMethod.MPESA,
) -> Dict[str, Any]:
    ensure_role(customer, Role.CUSTOMER, "Only customers can create orders")
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    listing = listings.load_listing(listing_id)
    if listing["status"] != ListingStatus.ACTIVE.value:
        raise InvalidStateError("This listing is no longer available")
    if listings.expire_if_past(listing)["status"] == ListingStatus.EXPIRED.value:
        raise ExpiredError()
    if quantity > listing["quantity_remaining"]:
        raise InsufficientStockError(listing["quantity_remaining"])

    # the read above may be stale; reserve() is the authoritative check
    listings.reserve(listing_id, quantity)

    total, fee, earnings = pricing.order_totals(listing["discounted_price"], quantity)
    fields = dict(
        customer_id=str(customer["_id"]),
        restaurant_id=listing["restaurant_id"],
        listing_id=str(listing["_id"]),
        listing_title=listing.get("title"),
        quantity=quantity,
        total_price=total,
        platform_fee=fee,
        restaurant_earnings=earnings,
        status=OrderStatus.RESERVED,
        payment_method=PaymentMethod(payment_method),
    )
    try:
        order_id = _insert_with_pickup_code(fields)
    except Exception:
        listings.release(listing_id, quantity)
        raise
    logger.info("Order %s reserved %d of listing %s", order_id, quantity, listing_id)
    return _load(order_id)


# -------------------- Transitions --------------------

def record_payment(order_id: str, customer: Dict[str, Any], payment_id: Optional[str] = None) -> Dict[str, Any]:
    doc = _load_for_customer(order_id, customer)
    updated = collection("order").find_one_and_update(
        {"_id": doc["_id"], "status": OrderStatus.RESERVED.value},
        {"$set": {"status": OrderStatus.PAID.value, "payment_id": payment_id, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError("Only reserved orders can be paid")
    logger.info("Order %s paid via %s", order_id, doc.get("payment_method"))
    return updated


def cancel_order(order_id: str, customer: Dict[str, Any]) -> Dict[str, Any]:
    doc = _load_for_customer(order_id, customer)
    if doc["status"] == OrderStatus.PICKED_UP.value:
        raise InvalidStateError("Cannot cancel completed order")
    now = utcnow()
    updated = collection("order").find_one_and_update(
        {"_id": doc["_id"], "status": {"$in": list(OPEN_STATUSES)}},
        {"$set": {
            "status": OrderStatus.CANCELLED.value,
            "cancelled_at": now,
            "cancel_reason": "customer",
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = _load(order_id)
        if current["status"] == OrderStatus.PICKED_UP.value:
            raise InvalidStateError("Cannot cancel completed order")
        raise InvalidStateError("Order already cancelled")

    listings.release(doc["listing_id"], doc["quantity"])
    logger.info("Order %s cancelled, %d units released", order_id, doc["quantity"])
    return updated


def verify_pickup(order_id: str, restaurant: Dict[str, Any], pickup_code: str) -> Dict[str, Any]:
    # reserved orders are accepted as well as paid ones until payments are integrated
    doc = _load(order_id)
    if doc["restaurant_id"] != str(restaurant["_id"]):
        raise AuthorizationError("Not authorized")
    if doc["pickup_code"] != pickup_code:
        logger.warning("Wrong pickup code for order %s", order_id)
        raise InvalidCodeError()
    now = utcnow()
    updated = collection("order").find_one_and_update(
        {"_id": doc["_id"], "status": {"$in": list(OPEN_STATUSES)}},
        {"$set": {"status": OrderStatus.PICKED_UP.value, "picked_up_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = _load(order_id)
        if current["status"] == OrderStatus.PICKED_UP.value:
            raise InvalidStateError("Order already picked up")
        raise InvalidStateError("Cancelled orders cannot be picked up")
    logger.info("Order %s picked up", order_id)
    return updated


def add_review(order_id: str, customer: Dict[str, Any], rating: int, review: Optional[str] = None) -> Dict[str, Any]:
    doc = _load_for_customer(order_id, customer)
    if doc["status"] != OrderStatus.PICKED_UP.value:
        raise InvalidStateError("Can only review completed orders")
    now = utcnow()
    updated = collection("order").find_one_and_update(
        {"_id": doc["_id"], "status": OrderStatus.PICKED_UP.value, "rating": None},
        {"$set": {"rating": rating, "review": review, "reviewed_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError("Order already reviewed")
    try:
        _apply_rating(doc["restaurant_id"], rating)
    except Exception:
        # hand the review slot back so the customer can retry
        collection("order").update_one(
            {"_id": doc["_id"], "rating": rating},
            {"$set": {"rating": None, "review": None, "reviewed_at": None}},
        )
        logger.exception("Rating for order %s not recorded, review rolled back", order_id)
        raise
    logger.info("Order %s reviewed with %d stars", order_id, rating)
    return updated


def _apply_rating(restaurant_id: str, rating: int) -> None:
    """Fold one rating into the restaurant's mean in a single update.

    Sum, count and mean are computed by one pipeline update on the user
    document. Accounts created before the running sum was kept start from
    ``rating * total_ratings``.
    """
    result = collection("user").update_one(
        {"_id": to_object_id(restaurant_id)},
        [
            {"$set": {
                "rating_sum": {"$add": [
                    {"$ifNull": [
                        "$rating_sum",
                        {"$multiply": [{"$ifNull": ["$rating", 0]}, {"$ifNull": ["$total_ratings", 0]}]},
                    ]},
                    rating,
                ]},
                "total_ratings": {"$add": [{"$ifNull": ["$total_ratings", 0]}, 1]},
            }},
            {"$set": {"rating": {"$divide": ["$rating_sum", "$total_ratings"]}}},
        ],
    )
    if not result.matched_count:
        logger.warning("Restaurant %s not found, rating %d dropped", restaurant_id, rating)


# -------------------- Queries --------------------

def _attach(docs: List[Dict[str, Any]], key: str, name: str, as_field: str, projection: Dict[str, int]) -> None:
    """Embed the referenced document under ``as_field`` with one batched lookup."""
    ids = {d[key] for d in docs if d.get(key)}
    if not ids:
        return
    found = collection(name).find({"_id": {"$in": [to_object_id(i) for i in ids]}}, projection)
    by_id = {str(f["_id"]): f for f in found}
    for d in docs:
        d[as_field] = by_id.get(d.get(key))


def list_customer_orders(customer: Dict[str, Any], status: Optional[OrderStatus] = None) -> List[Dict[str, Any]]:
    ensure_role(customer, Role.CUSTOMER, "Only customers have purchases")
    filt: Dict[str, Any] = {"customer_id": str(customer["_id"])}
    if status:
        filt["status"] = OrderStatus(status).value
    docs = get_documents("order", filt, sort=[("created_at", DESCENDING)])
    _attach(docs, "listing_id", "listing", "listing", LISTING_SUMMARY_FIELDS)
    _attach(docs, "restaurant_id", "user", "restaurant", RESTAURANT_CONTACT_FIELDS)
    return docs


def list_restaurant_orders(restaurant: Dict[str, Any], status: Optional[OrderStatus] = None) -> List[Dict[str, Any]]:
    ensure_role(restaurant, Role.RESTAURANT, "Only restaurants receive orders")
    filt: Dict[str, Any] = {"restaurant_id": str(restaurant["_id"])}
    if status:
        filt["status"] = OrderStatus(status).value
    docs = get_documents("order", filt, sort=[("created_at", DESCENDING)])
    _attach(docs, "listing_id", "listing", "listing", LISTING_SUMMARY_FIELDS)
    _attach(docs, "customer_id", "user", "customer", CUSTOMER_CONTACT_FIELDS)
    return docs


def get_order(order_id: str, caller: Dict[str, Any]) -> Dict[str, Any]:
    doc = _load(order_id)
    caller_id = str(caller["_id"])
    if caller_id not in (doc["customer_id"], doc["restaurant_id"]):
        raise AuthorizationError("Not authorized to view this order")
    _attach([doc], "listing_id", "listing", "listing", LISTING_SUMMARY_FIELDS)
    _attach([doc], "restaurant_id", "user", "restaurant", RESTAURANT_CONTACT_FIELDS)
    _attach([doc], "customer_id", "user", "customer", CUSTOMER_CONTACT_FIELDS)
    return doc


def list_restaurant_reviews(restaurant_id: str) -> Dict[str, Any]:
    restaurant = collection("user").find_one(
        {"_id": to_object_id(restaurant_id), "role": Role.RESTAURANT.value},
        {"business_name": 1, "rating": 1, "total_ratings": 1},
    )
    if not restaurant:
        raise NotFoundError("Restaurant not found")
    reviews = get_documents(
        "order",
        {"restaurant_id": restaurant_id, "rating": {"$ne": None}},
        sort=[("reviewed_at", DESCENDING)],
        projection={"rating": 1, "review": 1, "reviewed_at": 1, "listing_title": 1},
    )
    return {"restaurant": restaurant, "reviews": reviews}

"""
Listing lifecycle: creation, edits, stock reservation and expiry.

Stock changes go through single conditional updates on the listing
document (`reserve`, `release`), so two reservations racing for the last
unit cannot both succeed.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument

import media
from auth import ensure_role
from database import as_naive_utc, collection, create_document, get_documents, to_object_id, utcnow
from errors import (
    AuthorizationError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from pricing import discount_percentage
from schemas import Listing, ListingDraft, ListingPatch, ListingStatus, OrderStatus, PickupWindow, Role

logger = logging.getLogger(__name__)

BROWSE_LIMIT = 50
RESTAURANT_PUBLIC_FIELDS = {
    "business_name": 1,
    "address": 1,
    "rating": 1,
    "total_ratings": 1,
    "phone": 1,
    "operating_hours": 1,
    "profile_picture": 1,
}


# -------------------- Validation --------------------

def _check_prices(original_price: float, discounted_price: float) -> None:
    if discounted_price >= original_price:
        raise ValidationError("Discounted price must be less than original price")


def _check_window(start, end) -> None:
    if start >= end:
        raise ValidationError("Pickup end time must be after start time")


def load_listing(listing_id: str) -> Dict[str, Any]:
    doc = collection("listing").find_one({"_id": to_object_id(listing_id)})
    if not doc:
        raise NotFoundError("Listing not found")
    return doc


def _load_owned(listing_id: str, caller: Dict[str, Any]) -> Dict[str, Any]:
    doc = load_listing(listing_id)
    if doc["restaurant_id"] != str(caller["_id"]):
        raise AuthorizationError("Not authorized to modify this listing")
    return doc


def _attach_restaurants(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = {d["restaurant_id"] for d in docs}
    if not ids:
        return docs
    owners = collection("user").find(
        {"_id": {"$in": [to_object_id(i) for i in ids]}}, RESTAURANT_PUBLIC_FIELDS
    )
    by_id = {str(o["_id"]): o for o in owners}
    for d in docs:
        d["restaurant"] = by_id.get(d["restaurant_id"])
    return docs


# -------------------- Expiry --------------------

def expire_if_past(listing: Dict[str, Any]) -> Dict[str, Any]:
    """Flip an active listing whose pickup window has closed to expired, in place."""
    if listing.get("status") != ListingStatus.ACTIVE.value or utcnow() <= listing["expires_at"]:
        return listing
    result = collection("listing").update_one(
        {"_id": listing["_id"], "status": ListingStatus.ACTIVE.value},
        {"$set": {"status": ListingStatus.EXPIRED.value, "updated_at": utcnow()}},
    )
    if result.modified_count:
        logger.info("Listing %s expired", listing["_id"])
    listing["status"] = ListingStatus.EXPIRED.value
    return listing


def expire_stale_listings(restaurant_id: Optional[str] = None) -> int:
    now = utcnow()
    filt: Dict[str, Any] = {"status": ListingStatus.ACTIVE.value, "expires_at": {"$lt": now}}
    if restaurant_id:
        filt["restaurant_id"] = restaurant_id
    result = collection("listing").update_many(
        filt, {"$set": {"status": ListingStatus.EXPIRED.value, "updated_at": now}}
    )
    if result.modified_count:
        logger.info("Expired %d stale listings", result.modified_count)
    return result.modified_count


# -------------------- Create / read --------------------

def create_listing(owner: Dict[str, Any], draft: ListingDraft, uploads: List[media.ImageUpload]) -> Dict[str, Any]:
    ensure_role(owner, Role.RESTAURANT, "Only restaurants can create listings")
    _check_prices(draft.original_price, draft.discounted_price)
    start, end = as_naive_utc(draft.pickup_start), as_naive_utc(draft.pickup_end)
    _check_window(start, end)
    if start < utcnow():
        raise ValidationError("Pickup start time cannot be in the past")
    media.validate_images(uploads)

    images = media.upload_images(uploads)
    listing = Listing(
        restaurant_id=str(owner["_id"]),
        title=draft.title,
        description=draft.description,
        cuisine=draft.cuisine,
        dietary_tags=draft.dietary_tags,
        original_price=draft.original_price,
        discounted_price=draft.discounted_price,
        discount_percentage=discount_percentage(draft.original_price, draft.discounted_price),
        quantity=draft.quantity,
        quantity_remaining=draft.quantity,
        pickup_window=PickupWindow(start=start, end=end),
        images=images,
        status=ListingStatus.ACTIVE,
        expires_at=end,
    )
    listing_id = create_document("listing", listing)
    logger.info("Restaurant %s created listing %s (qty %d)", owner["_id"], listing_id, draft.quantity)
    return get_listing(listing_id)


def get_listing(listing_id: str) -> Dict[str, Any]:
    doc = expire_if_past(load_listing(listing_id))
    return _attach_restaurants([doc])[0]


def list_listings(
    cuisine: Optional[str] = None,
    dietary_tags: Optional[List[str]] = None,
    max_price: Optional[float] = None,
    search: Optional[str] = None,
) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"status": ListingStatus.ACTIVE.value, "expires_at": {"$gt": utcnow()}}
    if cuisine:
        filt["cuisine"] = cuisine
    if dietary_tags:
        filt["dietary_tags"] = {"$in": dietary_tags}
    if max_price is not None:
        filt["discounted_price"] = {"$lte": max_price}
    if search:
        pattern = re.escape(search)
        filt["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    docs = get_documents("listing", filt, limit=BROWSE_LIMIT, sort=[("created_at", DESCENDING)])
    return _attach_restaurants(docs)


def list_owner_listings(owner: Dict[str, Any], status: Optional[ListingStatus] = None) -> Dict[str, Any]:
    ensure_role(owner, Role.RESTAURANT, "Only restaurants have listings")
    owner_id = str(owner["_id"])
    expire_stale_listings(owner_id)
    filt: Dict[str, Any] = {"restaurant_id": owner_id}
    if status:
        filt["status"] = ListingStatus(status).value
    docs = get_documents("listing", filt, sort=[("created_at", DESCENDING)])
    stats = {"total": len(docs)}
    for s in ListingStatus:
        stats[s.value] = sum(1 for d in docs if d["status"] == s.value)
    return {"stats": stats, "listings": docs}


# -------------------- Owner edits --------------------

def update_listing(
    listing_id: str,
    caller: Dict[str, Any],
    patch: ListingPatch,
    uploads: Optional[List[media.ImageUpload]] = None,
) -> Dict[str, Any]:
    uploads = uploads or []
    doc = expire_if_past(_load_owned(listing_id, caller))
    if doc["status"] != ListingStatus.ACTIVE.value:
        raise InvalidStateError("Cannot update non-active listings")

    changes = patch.model_dump(exclude_none=True)
    updates: Dict[str, Any] = {}
    for field in ("title", "description", "cuisine"):
        if field in changes:
            updates[field] = changes[field]
    if "dietary_tags" in changes:
        updates["dietary_tags"] = [getattr(t, "value", t) for t in changes["dietary_tags"]]

    original = changes.get("original_price", doc["original_price"])
    discounted = changes.get("discounted_price", doc["discounted_price"])
    if "original_price" in changes or "discounted_price" in changes:
        _check_prices(original, discounted)
        updates["original_price"] = original
        updates["discounted_price"] = discounted
        updates["discount_percentage"] = discount_percentage(original, discounted)

    if "quantity" in changes:
        # resets remaining stock; outstanding reservations are not subtracted
        updates["quantity"] = changes["quantity"]
        updates["quantity_remaining"] = changes["quantity"]

    if "pickup_start" in changes or "pickup_end" in changes:
        start = as_naive_utc(changes.get("pickup_start", doc["pickup_window"]["start"]))
        end = as_naive_utc(changes.get("pickup_end", doc["pickup_window"]["end"]))
        _check_window(start, end)
        updates["pickup_window"] = {"start": start, "end": end}
        updates["expires_at"] = end

    media.validate_images(uploads, existing=len(doc.get("images", [])))
    images = media.upload_images(uploads)

    updates["updated_at"] = utcnow()
    operation: Dict[str, Any] = {"$set": updates}
    if images:
        operation["$push"] = {"images": {"$each": images}}
    updated = collection("listing").find_one_and_update(
        {"_id": doc["_id"], "status": ListingStatus.ACTIVE.value},
        operation,
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        for image in images:
            media.destroy_image(image["public_id"])
        raise InvalidStateError("Cannot update non-active listings")
    logger.info("Listing %s updated: %s", listing_id, sorted(updates))
    return updated


def mark_sold_out(listing_id: str, caller: Dict[str, Any]) -> Dict[str, Any]:
    doc = _load_owned(listing_id, caller)
    return collection("listing").find_one_and_update(
        {"_id": doc["_id"]},
        {"$set": {"status": ListingStatus.SOLD_OUT.value, "quantity_remaining": 0, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def delete_listing(listing_id: str, caller: Dict[str, Any]) -> int:
    """Delete a listing, returning how many open orders against it were cancelled."""
    doc = _load_owned(listing_id, caller)
    for image in doc.get("images", []):
        media.destroy_image(image["public_id"])
    now = utcnow()
    cancelled = collection("order").update_many(
        {
            "listing_id": str(doc["_id"]),
            "status": {"$in": [OrderStatus.RESERVED.value, OrderStatus.PAID.value]},
        },
        {"$set": {
            "status": OrderStatus.CANCELLED.value,
            "cancelled_at": now,
            "cancel_reason": "listing_deleted",
            "updated_at": now,
        }},
    ).modified_count
    collection("listing").delete_one({"_id": doc["_id"]})
    logger.info("Listing %s deleted, %d open orders cancelled", listing_id, cancelled)
    return cancelled


def delete_listing_image(listing_id: str, caller: Dict[str, Any], public_id: str) -> Dict[str, Any]:
    doc = _load_owned(listing_id, caller)
    if not any(img.get("public_id") == public_id for img in doc.get("images", [])):
        raise NotFoundError("Image not found")
    media.destroy_image(public_id)
    return collection("listing").find_one_and_update(
        {"_id": doc["_id"]},
        {"$pull": {"images": {"public_id": public_id}}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


# -------------------- Stock --------------------

def reserve(listing_id: str, amount: int) -> Dict[str, Any]:
    """Take `amount` units in one conditional write; flips the listing to sold_out at zero."""
    oid = to_object_id(listing_id)
    updated = collection("listing").find_one_and_update(
        {"_id": oid, "status": ListingStatus.ACTIVE.value, "quantity_remaining": {"$gte": amount}},
        {"$inc": {"quantity_remaining": -amount}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = collection("listing").find_one({"_id": oid})
        if not current:
            raise NotFoundError("Listing not found")
        if current["status"] in (ListingStatus.ACTIVE.value, ListingStatus.SOLD_OUT.value):
            raise InsufficientStockError(current["quantity_remaining"])
        raise InvalidStateError("This listing is no longer available")

    if updated["quantity_remaining"] == 0:
        collection("listing").update_one(
            {"_id": oid, "quantity_remaining": 0, "status": ListingStatus.ACTIVE.value},
            {"$set": {"status": ListingStatus.SOLD_OUT.value}},
        )
        updated["status"] = ListingStatus.SOLD_OUT.value
    return updated


def release(listing_id: str, amount: int) -> Optional[Dict[str, Any]]:
    """Give `amount` units back, never above the listing's quantity."""
    oid = to_object_id(listing_id)
    current = collection("listing").find_one({"_id": oid})
    if not current:
        return None
    quantity = current["quantity"]
    now = utcnow()
    updated = collection("listing").find_one_and_update(
        {"_id": oid, "quantity": quantity, "quantity_remaining": {"$lte": quantity - amount}},
        {"$inc": {"quantity_remaining": amount}, "$set": {"updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        updated = collection("listing").find_one_and_update(
            {"_id": oid, "quantity": quantity},
            {"$set": {"quantity_remaining": quantity, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
    if updated is None:
        # quantity was edited meanwhile, which already reset the remaining stock
        return collection("listing").find_one({"_id": oid})
    if updated["status"] == ListingStatus.SOLD_OUT.value and updated["quantity_remaining"] > 0:
        collection("listing").update_one(
            {"_id": oid, "status": ListingStatus.SOLD_OUT.value},
            {"$set": {"status": ListingStatus.ACTIVE.value}},
        )
        updated["status"] = ListingStatus.ACTIVE.value
    return updated

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

import database
import listings
import media
import orders
from auth import get_current_user, login_user, public_user, register_user, require_role
from database import serialize
from errors import DuplicateError, MarketplaceError, ValidationError
from schemas import (
    CreateOrderRequest,
    ListingDraft,
    ListingPatch,
    ListingStatus,
    LoginRequest,
    OrderStatus,
    PaymentRequest,
    PickupRequest,
    RegisterRequest,
    ReviewRequest,
    Role,
    TokenResponse,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes()
    yield


app = FastAPI(title="Food Rescue API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

customer_only = require_role(Role.CUSTOMER)
restaurant_only = require_role(Role.RESTAURANT)
admin_only = require_role(Role.ADMIN)


# -------------------- Errors --------------------

@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key on %s %s", request.method, request.url.path)
    err = DuplicateError()
    return JSONResponse(status_code=err.status_code, content={"detail": err.message})


# -------------------- Form helpers --------------------

def _dietary_tags(raw: Optional[str]) -> Optional[list]:
    """Parse the dietary_tags form field: a JSON array, or a comma separated list."""
    if raw is None or raw == "":
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = [t.strip() for t in raw.split(",") if t.strip()]
    if not isinstance(parsed, list):
        raise ValidationError("dietary_tags must be a list")
    return parsed


def _form_model(model, **fields):
    try:
        return model(**fields)
    except PydanticValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"{where}: {first.get('msg')}" if where else first.get("msg"))


# -------------------- Health --------------------

@app.get("/")
def root():
    return {"name": "Food Rescue API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.db.name if hasattr(database.db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# -------------------- Auth --------------------

@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest):
    return register_user(payload)


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest):
    return login_user(payload.email, payload.password)


@app.get("/api/auth/me")
def me(current_user=Depends(get_current_user)):
    return {"user": public_user(current_user)}


# -------------------- Listings --------------------

@app.get("/api/listings")
def browse_listings(
    cuisine: Optional[str] = None,
    dietaryTags: Optional[str] = None,
    maxPrice: Optional[float] = None,
    search: Optional[str] = None,
):
    tags = [t.strip() for t in dietaryTags.split(",") if t.strip()] if dietaryTags else None
    docs = listings.list_listings(cuisine=cuisine, dietary_tags=tags, max_price=maxPrice, search=search)
    return {"count": len(docs), "listings": [serialize(d) for d in docs]}


@app.get("/api/listings/mine")
def my_listings(status: Optional[ListingStatus] = None, current_user=Depends(restaurant_only)):
    result = listings.list_owner_listings(current_user, status)
    return {"stats": result["stats"], "listings": [serialize(d) for d in result["listings"]]}


@app.get("/api/listings/{listing_id}")
def get_listing(listing_id: str):
    return {"listing": serialize(listings.get_listing(listing_id))}


@app.post("/api/listings", status_code=201)
def create_listing(
    title: str = Form(...),
    description: str = Form(...),
    cuisine: str = Form(...),
    original_price: float = Form(...),
    discounted_price: float = Form(...),
    quantity: int = Form(...),
    pickup_start: datetime = Form(...),
    pickup_end: datetime = Form(...),
    dietary_tags: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    current_user=Depends(restaurant_only),
):
    draft = _form_model(
        ListingDraft,
        title=title,
        description=description,
        cuisine=cuisine,
        dietary_tags=_dietary_tags(dietary_tags) or [],
        original_price=original_price,
        discounted_price=discounted_price,
        quantity=quantity,
        pickup_start=pickup_start,
        pickup_end=pickup_end,
    )
    listing = listings.create_listing(current_user, draft, media.read_uploads(images))
    return {"message": "Listing created successfully", "listing": serialize(listing)}


@app.put("/api/listings/{listing_id}")
def update_listing(
    listing_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    cuisine: Optional[str] = Form(None),
    original_price: Optional[float] = Form(None),
    discounted_price: Optional[float] = Form(None),
    quantity: Optional[int] = Form(None),
    pickup_start: Optional[datetime] = Form(None),
    pickup_end: Optional[datetime] = Form(None),
    dietary_tags: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    current_user=Depends(restaurant_only),
):
    patch = _form_model(
        ListingPatch,
        title=title,
        description=description,
        cuisine=cuisine,
        dietary_tags=_dietary_tags(dietary_tags),
        original_price=original_price,
        discounted_price=discounted_price,
        quantity=quantity,
        pickup_start=pickup_start,
        pickup_end=pickup_end,
    )
    listing = listings.update_listing(listing_id, current_user, patch, media.read_uploads(images))
    return {"message": "Listing updated successfully", "listing": serialize(listing)}


@app.delete("/api/listings/{listing_id}")
def delete_listing(listing_id: str, current_user=Depends(restaurant_only)):
    cancelled = listings.delete_listing(listing_id, current_user)
    return {"message": "Listing deleted successfully", "cancelled_orders": cancelled}


@app.patch("/api/listings/{listing_id}/sold-out")
def mark_sold_out(listing_id: str, current_user=Depends(restaurant_only)):
    listing = listings.mark_sold_out(listing_id, current_user)
    return {"message": "Listing marked as sold out", "listing": serialize(listing)}


@app.delete("/api/listings/{listing_id}/images/{image_id:path}")
def delete_listing_image(listing_id: str, image_id: str, current_user=Depends(restaurant_only)):
    listing = listings.delete_listing_image(listing_id, current_user, image_id)
    return {"message": "Image deleted successfully", "listing": serialize(listing)}


# -------------------- Orders --------------------

@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderRequest, current_user=Depends(customer_only)):
    order = orders.create_order(current_user, payload.listing_id, payload.quantity, payload.payment_method)
    return {"message": "Order created successfully", "order": serialize(order)}


@app.get("/api/orders/mine")
def my_orders(status: Optional[OrderStatus] = None, current_user=Depends(customer_only)):
    docs = orders.list_customer_orders(current_user, status)
    return {"count": len(docs), "orders": [serialize(d) for d in docs]}


@app.get("/api/orders/restaurant")
def restaurant_orders(status: Optional[OrderStatus] = None, current_user=Depends(restaurant_only)):
    docs = orders.list_restaurant_orders(current_user, status)
    return {"count": len(docs), "orders": [serialize(d) for d in docs]}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current_user=Depends(get_current_user)):
    return {"order": serialize(orders.get_order(order_id, current_user))}


@app.patch("/api/orders/{order_id}/pay")
def pay_order(order_id: str, payload: PaymentRequest, current_user=Depends(customer_only)):
    order = orders.record_payment(order_id, current_user, payload.payment_id)
    return {"message": "Payment recorded", "order": serialize(order)}


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, current_user=Depends(customer_only)):
    order = orders.cancel_order(order_id, current_user)
    return {"message": "Order cancelled successfully", "order": serialize(order)}


@app.patch("/api/orders/{order_id}/pickup")
def verify_pickup(order_id: str, payload: PickupRequest, current_user=Depends(restaurant_only)):
    order = orders.verify_pickup(order_id, current_user, payload.pickup_code)
    return {"message": "Order marked as picked up", "order": serialize(order)}


@app.patch("/api/orders/{order_id}/review")
def add_review(order_id: str, payload: ReviewRequest, current_user=Depends(customer_only)):
    order = orders.add_review(order_id, current_user, payload.rating, payload.review)
    return {"message": "Review added successfully", "order": serialize(order)}


# -------------------- Restaurants --------------------

@app.get("/api/restaurants/{restaurant_id}/reviews")
def restaurant_reviews(restaurant_id: str):
    result = orders.list_restaurant_reviews(restaurant_id)
    return {
        "restaurant": serialize(result["restaurant"]),
        "count": len(result["reviews"]),
        "items": [serialize(r) for r in result["reviews"]],
    }


# -------------------- Admin --------------------

@app.post("/api/admin/listings/expire")
def expire_listings(current_user=Depends(admin_only)):
    return {"expired": listings.expire_stale_listings()}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

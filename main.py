import logging
import os
from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError
from bson import ObjectId
from bson.errors import InvalidId

import orders
import reviews
from database import get_db
from errors import MarketplaceError, PersistenceFailure
from permissions import check_permission
from schemas import OrderItem, TrackingUpdate

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, LOG_LEVEL, logging.INFO)),
)
logger = structlog.get_logger(__name__)

# App setup
app = FastAPI(title="Marketplace API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security (tokens are issued by the auth service, only verified here)
SECRET_KEY = os.getenv("JWT_SECRET", "change-this-secret")
ALGORITHM = "HS256"
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login")

# Pydantic models
class OrderIn(BaseModel):
    store: str
    items: List[OrderItem]
    shippingInfo: dict = Field(default_factory=dict)

class StatusUpdateIn(BaseModel):
    status: str
    trackingUpdate: Optional[TrackingUpdate] = None

class TrackingInfoIn(BaseModel):
    trackingNumber: str = Field(..., min_length=1)
    carrier: str = Field(..., min_length=1)
    estimatedDelivery: Optional[datetime] = None

class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)

# Dependency: get current user
def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        user = db["user"].find_one({"_id": ObjectId(user_id)})
    except (JWTError, InvalidId, TypeError):
        raise credentials_exception

    if not user:
        raise credentials_exception
    return {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email"), "role": user.get("role", "shopper")}

# Capability guard
def require_permission(operation: str):
    def _guard(user=Depends(get_current_user)):
        check_permission(user, operation)
        return user
    return _guard

# Error rendering
@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"kind": exc.kind, "detail": exc.detail})

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    err = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "payload"
    return JSONResponse(status_code=422, content={"kind": "ValidationFailure", "detail": f"{field}: {err.get('msg')}"})

@app.exception_handler(PyMongoError)
async def persistence_error_handler(request: Request, exc: PyMongoError):
    logger.error("persistence_failure", path=request.url.path, error=str(exc))
    return await marketplace_error_handler(request, PersistenceFailure("Storage operation failed"))

# Routes
@app.get("/")
def root():
    return {"message": "Marketplace API"}

@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "database": "ok", "collections": collections}
    except PyMongoError as e:
        return {"backend": "ok", "database": f"error: {str(e)[:80]}"}

# Orders
@app.post("/api/orders", status_code=201)
def create_order(payload: OrderIn, user=Depends(require_permission("order:create")), db: Database = Depends(get_db)):
    items = [it.model_dump() for it in payload.items]
    return orders.create_order(db, user, payload.store, items, payload.shippingInfo)

@app.get("/api/orders")
def my_orders(user=Depends(require_permission("order:list_own")), db: Database = Depends(get_db)):
    return orders.list_orders_by_user(db, user["id"])

@app.get("/api/orders/store/{store_id}")
def store_orders(store_id: str, user=Depends(require_permission("order:list_store")), db: Database = Depends(get_db)):
    return orders.list_orders_by_store(db, store_id, user)

@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(require_permission("order:read")), db: Database = Depends(get_db)):
    return orders.get_order(db, order_id, user)

@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdateIn, user=Depends(require_permission("order:update_status")), db: Database = Depends(get_db)):
    update = payload.trackingUpdate.model_dump(exclude={"timestamp"}) if payload.trackingUpdate else None
    return orders.update_order_status(db, order_id, payload.status, user, tracking_update=update)

@app.put("/api/orders/{order_id}/tracking")
def add_tracking_info(order_id: str, payload: TrackingInfoIn, user=Depends(require_permission("order:add_tracking")), db: Database = Depends(get_db)):
    return orders.add_tracking_info(db, order_id, user, payload.trackingNumber, payload.carrier, payload.estimatedDelivery)

# Review hosts
def _review_result(message: str, host: dict) -> dict:
    return {"message": message, "rating": host["rating"], "numReviews": host["numReviews"]}

@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return reviews.get_host(db, "product", product_id)

@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_product_review(product_id: str, payload: ReviewIn, user=Depends(require_permission("review:write")), db: Database = Depends(get_db)):
    host = reviews.add_review(db, "product", product_id, user, payload.rating, payload.comment)
    return _review_result("Review added", host)

@app.put("/api/products/{product_id}/reviews")
def update_product_review(product_id: str, payload: ReviewIn, user=Depends(require_permission("review:write")), db: Database = Depends(get_db)):
    host = reviews.update_review(db, "product", product_id, user, payload.rating, payload.comment)
    return _review_result("Review updated", host)

@app.delete("/api/products/{product_id}/reviews")
def delete_product_review(product_id: str, user=Depends(require_permission("review:write")), db: Database = Depends(get_db)):
    host = reviews.delete_own_review(db, "product", product_id, user)
    return _review_result("Review deleted", host)

@app.get("/api/stores/{store_id}")
def get_store(store_id: str, db: Database = Depends(get_db)):
    return reviews.get_host(db, "store", store_id)

@app.post("/api/stores/{store_id}/reviews", status_code=201)
def add_store_review(store_id: str, payload: ReviewIn, user=Depends(require_permission("review:write")), db: Database = Depends(get_db)):
    host = reviews.add_review(db, "store", store_id, user, payload.rating, payload.comment)
    return _review_result("Review added", host)

@app.put("/api/stores/{store_id}/reviews")
def update_store_review(store_id: str, payload: ReviewIn, user=Depends(require_permission("review:write")), db: Database = Depends(get_db)):
    host = reviews.update_review(db, "store", store_id, user, payload.rating, payload.comment)
    return _review_result("Review updated", host)

@app.delete("/api/stores/{store_id}/reviews")
def delete_store_review(store_id: str, user=Depends(require_permission("review:write")), db: Database = Depends(get_db)):
    host = reviews.delete_own_review(db, "store", store_id, user)
    return _review_result("Review deleted", host)

# Admin endpoints
@app.get("/api/admin/orders")
def admin_orders(user=Depends(require_permission("order:list_all")), db: Database = Depends(get_db)):
    return orders.list_all_orders(db)

@app.get("/api/admin/reviews/products")
def admin_product_reviews(user=Depends(require_permission("review:moderate")), db: Database = Depends(get_db)):
    return reviews.list_all_reviews(db, "product")

@app.get("/api/admin/reviews/stores")
def admin_store_reviews(user=Depends(require_permission("review:moderate")), db: Database = Depends(get_db)):
    return reviews.list_all_reviews(db, "store")

@app.delete("/api/admin/reviews/products/{product_id}/{review_id}")
def admin_delete_product_review(product_id: str, review_id: str, user=Depends(require_permission("review:moderate")), db: Database = Depends(get_db)):
    host = reviews.delete_review_by_id(db, "product", product_id, review_id)
    return _review_result("Review deleted", host)

@app.delete("/api/admin/reviews/stores/{store_id}/{review_id}")
def admin_delete_store_review(store_id: str, review_id: str, user=Depends(require_permission("review:moderate")), db: Database = Depends(get_db)):
    host = reviews.delete_review_by_id(db, "store", store_id, review_id)
    return _review_result("Review deleted", host)

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

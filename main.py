import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Query, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

import auth
import carts
import catalog
import config
import database
import orders
import payments
import storage
from auth import get_current_user, require
from database import oid
from errors import Conflict, Forbidden, InvalidInput, NotFound, ServiceUnavailable, Unauthorized, register_error_handlers
from processor import get_processor
from schemas import PaymentMethod, RefundReason, ShippingAddress, User as UserSchema

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.setup_logging()
    try:
        database.connect()
        if database.db is not None:
            database.ensure_indexes()
            auth.ensure_super_admin()
    except ServiceUnavailable as e:
        log.error("Starting without a database: %s", e.message)
    yield
    database.close()


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(config.ASSETS_URL_PREFIX, StaticFiles(directory=config.UPLOAD_DIR, check_dir=False), name="assets")

register_error_handlers(app)


# Payloads
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)

class ProfilePayload(BaseModel):
    name: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)

class CategoryPayload(BaseModel):
    name: str

class ProductPayload(BaseModel):
    name: str
    description: str
    price: float
    discount: float = 0
    stock: int = 0
    status: Optional[str] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    categories: Optional[List[str]] = None

class ProductUpdatePayload(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    discount: Optional[float] = None
    stock: Optional[int] = None
    status: Optional[str] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    categories: Optional[List[str]] = None

class ReviewPayload(BaseModel):
    rating: int
    comment: str

class CartAddPayload(BaseModel):
    productId: str
    quantity: int = 1
    selectedSize: Optional[str] = None
    selectedColor: Optional[str] = None

class CartUpdatePayload(BaseModel):
    productId: str
    quantity: int
    selectedSize: Optional[str] = None
    selectedColor: Optional[str] = None

class QuantityPayload(BaseModel):
    quantity: int

class OrderLine(BaseModel):
    product: str
    qty: int = Field(..., ge=1)

class OrderPayload(BaseModel):
    items: List[OrderLine]
    shippingAddress: ShippingAddress
    paymentMethod: str

class OrderWithPaymentPayload(BaseModel):
    items: List[OrderLine]
    shippingAddress: ShippingAddress
    paymentMethod: PaymentMethod = "card"

class OrderStatusPayload(BaseModel):
    status: str

class IntentPayload(BaseModel):
    orderId: str
    paymentMethod: PaymentMethod = "card"

class RefundPayload(BaseModel):
    amount: Optional[float] = None
    reason: RefundReason = "requested_by_customer"


def public_user(user: dict) -> dict:
    out = database.serialize(user)
    out.pop("password_hash", None)
    return out


@app.get("/")
def root():
    return {"message": "Storefront API running"}


# Auth
@app.post("/api/auth/register", response_model=Token, status_code=201)
def register(payload: RegisterPayload):
    email = payload.email.lower()
    users = database.collection("user")
    if users.find_one({"email": email}):
        raise Conflict("User with email already exists")
    doc = UserSchema(name=payload.name, email=email, password_hash=auth.get_password_hash(payload.password),
                     createdAt=datetime.utcnow())
    try:
        database.create_document("user", doc)
    except DuplicateKeyError:
        raise Conflict("User with email already exists")
    return Token(access_token=auth.create_access_token({"sub": email}))


@app.post("/api/auth/login", response_model=Token)
def login(response: Response, form_data: OAuth2PasswordRequestForm = Depends()):
    user = database.collection("user").find_one({"email": form_data.username.lower()})
    if not user or not auth.verify_password(form_data.password, user.get("password_hash", "")):
        raise Unauthorized("Invalid user credentials")
    token = auth.create_access_token({"sub": user["email"]})
    response.set_cookie("accessToken", token, httponly=True, secure=config.COOKIE_SECURE, samesite="lax",
                        max_age=config.ACCESS_TOKEN_EXPIRE_MINUTES * 60)
    return Token(access_token=token)


@app.post("/api/auth/logout")
def logout(response: Response, current_user=Depends(get_current_user)):
    response.delete_cookie("accessToken")
    return {"message": "Logged out"}


# Users
@app.get("/api/users/profile")
def get_profile(current_user=Depends(get_current_user)):
    return public_user(current_user)


@app.put("/api/users/profile")
def update_profile(payload: ProfilePayload, current_user=Depends(get_current_user)):
    update = {}
    if payload.name:
        update["name"] = payload.name
    if payload.password:
        update["password_hash"] = auth.get_password_hash(payload.password)
    if update:
        update["updatedAt"] = datetime.utcnow()
        database.collection("user").update_one({"_id": current_user["_id"]}, {"$set": update})
    return public_user(database.collection("user").find_one({"_id": current_user["_id"]}))


@app.get("/api/users")
def list_users(role: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
               current_user=Depends(require("user:manage"))):
    query = {"role": role} if role else {}
    users = database.get_documents("user", query, limit=limit, sort=[("createdAt", -1)], skip=(page - 1) * limit)
    total = database.collection("user").count_documents(query)
    return {"users": [public_user(u) for u in users], "pagination": database.paginate(page, limit, total)}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, current_user=Depends(require("user:manage"))):
    target = database.collection("user").find_one({"_id": oid(user_id, "user ID")})
    if not target:
        raise NotFound("User not found")
    if target["_id"] == current_user["_id"]:
        raise Forbidden("You cannot delete your own account")
    if target.get("role") == "superadmin":
        raise Forbidden("Super admin cannot be deleted")
    if target.get("role") == "admin" and not auth.can(current_user, "admin:create"):
        raise Forbidden("Only a super admin can delete admins")
    database.collection("user").delete_one({"_id": target["_id"]})
    return {"deleted": True}


@app.post("/api/admin/create", status_code=201)
def create_admin(payload: RegisterPayload, current_user=Depends(require("admin:create"))):
    email = payload.email.lower()
    if database.collection("user").find_one({"email": email}):
        raise Conflict("User with email already exists")
    doc = UserSchema(name=payload.name, email=email, password_hash=auth.get_password_hash(payload.password),
                     role="admin", createdAt=datetime.utcnow())
    new_id = database.create_document("user", doc)
    log.info("Admin %s created by %s", email, current_user["email"])
    return public_user(database.collection("user").find_one({"_id": oid(new_id)}))


# Categories
@app.get("/api/categories")
def list_categories():
    return [database.serialize(c) for c in catalog.list_categories()]


@app.post("/api/categories", status_code=201)
def create_category(payload: CategoryPayload, current_user=Depends(require("catalog:write"))):
    return database.serialize(catalog.create_category(payload.name))


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, payload: CategoryPayload, current_user=Depends(require("catalog:write"))):
    return database.serialize(catalog.update_category(category_id, payload.name))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, current_user=Depends(require("catalog:write"))):
    catalog.delete_category(category_id)
    return {"deleted": True}


# Products
@app.get("/api/products")
def list_products(category: Optional[str] = None, search: Optional[str] = None,
                  minPrice: Optional[float] = None, maxPrice: Optional[float] = None,
                  sort: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)):
    return catalog.list_products(page, limit, category, search, minPrice, maxPrice, sort)


@app.get("/api/products/{product_id}")
def product_detail(product_id: str):
    return database.serialize(catalog.with_categories(catalog.get_product(product_id)))


@app.post("/api/products", status_code=201)
def create_product(payload: ProductPayload, current_user=Depends(require("catalog:write"))):
    return database.serialize(catalog.create_product(payload.model_dump()))


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdatePayload, current_user=Depends(require("catalog:write"))):
    return database.serialize(catalog.update_product(product_id, payload.model_dump()))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, current_user=Depends(require("catalog:write"))):
    catalog.delete_product(product_id)
    return {"deleted": True}


@app.post("/api/products/{product_id}/photos")
def upload_product_photos(product_id: str, photos: List[UploadFile] = File(...),
                          current_user=Depends(require("catalog:write"))):
    catalog.get_product(product_id)
    uploaded = storage.upload_many(photos, "products")
    return database.serialize(catalog.add_product_photos(product_id, [p["url"] for p in uploaded]))


@app.post("/api/products/{product_id}/review", status_code=201)
def add_review(product_id: str, payload: ReviewPayload, current_user=Depends(get_current_user)):
    return database.serialize(catalog.add_review(product_id, current_user, payload.rating, payload.comment))


@app.delete("/api/products/{product_id}/review/{review_id}")
def delete_review(product_id: str, review_id: str, current_user=Depends(require("review:moderate"))):
    return database.serialize(catalog.delete_review(product_id, review_id))


# Cart
@app.get("/api/cart")
def get_cart(current_user=Depends(get_current_user)):
    carts.clean_expired_items()
    cart = carts.get_or_create_cart(str(current_user["_id"]))
    return carts.cart_with_products(cart)


@app.post("/api/cart/add")
def add_to_cart(payload: CartAddPayload, current_user=Depends(get_current_user)):
    product = catalog.get_product(payload.productId)
    if product.get("status") != "active":
        raise InvalidInput("Product is not available")
    cart = carts.get_or_create_cart(str(current_user["_id"]))
    cart = carts.add_item(cart, payload.productId, payload.quantity, catalog.discounted_price(product),
                          payload.selectedSize, payload.selectedColor)
    return carts.cart_with_products(cart)


@app.put("/api/cart/update")
def update_cart_item(payload: CartUpdatePayload, current_user=Depends(get_current_user)):
    cart = carts.get_cart(str(current_user["_id"]))
    cart = carts.update_item(cart, payload.productId, payload.quantity, payload.selectedSize, payload.selectedColor)
    return carts.cart_with_products(cart)


@app.delete("/api/cart/remove/{product_id}")
def remove_from_cart(product_id: str, quantity: Optional[int] = None, size: Optional[str] = None,
                     color: Optional[str] = None, current_user=Depends(get_current_user)):
    cart = carts.get_cart(str(current_user["_id"]))
    cart = carts.remove_item(cart, product_id, quantity, size, color)
    return carts.cart_with_products(cart)


@app.delete("/api/cart/clear")
def clear_cart(current_user=Depends(get_current_user)):
    cart = carts.get_cart(str(current_user["_id"]))
    return database.serialize(carts.clear_cart(cart))


@app.get("/api/cart/summary")
def cart_summary(current_user=Depends(get_current_user)):
    return carts.cart_summary(str(current_user["_id"]))


@app.post("/api/cart/clean-expired")
def clean_expired(current_user=Depends(require("cart:clean"))):
    return carts.clean_expired_items()


@app.get("/api/cart/admin/all")
def all_carts(search: str = "", page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
              current_user=Depends(require("cart:admin"))):
    return carts.list_carts(page, limit, search)


@app.get("/api/cart/admin/user/{user_id}")
def user_cart(user_id: str, current_user=Depends(require("cart:admin"))):
    return carts.user_cart_view(user_id)


@app.delete("/api/cart/admin/user/{user_id}/clear")
def admin_clear_user_cart(user_id: str, current_user=Depends(require("cart:admin"))):
    cart = carts.get_cart(user_id)
    return database.serialize(carts.clear_cart(cart))


@app.delete("/api/cart/admin/user/{user_id}/item/{product_id}")
def admin_remove_user_cart_item(user_id: str, product_id: str, current_user=Depends(require("cart:admin"))):
    cart = carts.get_cart(user_id)
    return database.serialize(carts.remove_item(cart, product_id))


@app.put("/api/cart/admin/user/{user_id}/item/{product_id}")
def admin_update_user_cart_item(user_id: str, product_id: str, payload: QuantityPayload,
                                current_user=Depends(require("cart:admin"))):
    cart = carts.get_cart(user_id)
    return database.serialize(carts.update_item(cart, product_id, payload.quantity))


# Orders
@app.post("/api/orders", status_code=201)
def create_order(payload: OrderPayload, current_user=Depends(get_current_user)):
    order = orders.create_order(
        current_user,
        [line.model_dump() for line in payload.items],
        payload.shippingAddress.model_dump(),
        payload.paymentMethod,
    )
    return orders.render(order)


@app.post("/api/orders/with-payment", status_code=201)
def create_order_with_payment(payload: OrderWithPaymentPayload, current_user=Depends(get_current_user),
                              processor=Depends(get_processor)):
    order, payment = orders.create_order_with_payment(
        current_user,
        [line.model_dump() for line in payload.items],
        payload.shippingAddress.model_dump(),
        processor,
        payload.paymentMethod,
    )
    return {
        "order": orders.render(order),
        "payment": {
            "paymentId": str(payment["_id"]),
            "clientSecret": payment["stripeClientSecret"],
            "amount": payment["amount"],
            "currency": payment["currency"],
            "status": payment["status"],
            "stripePaymentIntentId": payment["stripePaymentIntentId"],
        },
    }


@app.get("/api/orders/myorders")
def my_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
              current_user=Depends(get_current_user)):
    return orders.list_orders(page, limit, user_id=str(current_user["_id"]))


@app.get("/api/orders")
def all_orders(status: Optional[str] = None, startDate: Optional[datetime] = None, endDate: Optional[datetime] = None,
               page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
               current_user=Depends(require("order:read_any"))):
    return orders.list_orders(page, limit, status=status, start_date=startDate, end_date=endDate)


@app.get("/api/orders/status/{order_id}")
def order_status(order_id: str, current_user=Depends(get_current_user)):
    order = orders.get_order_for(current_user, order_id)
    return {
        "orderId": str(order["_id"]),
        "status": order["status"],
        "paymentStatus": order.get("paymentStatus"),
        "createdAt": order.get("createdAt"),
        "updatedAt": order.get("updatedAt"),
    }


@app.put("/api/orders/status/{order_id}")
def update_order_status(order_id: str, payload: OrderStatusPayload,
                        current_user=Depends(require("order:update_status"))):
    return orders.render(orders.update_order_status(order_id, payload.status), with_user=True)


@app.get("/api/orders/{order_id}")
def order_detail(order_id: str, current_user=Depends(get_current_user)):
    return orders.render(orders.get_order_for(current_user, order_id), with_user=True)


@app.post("/api/orders/{order_id}/photos")
def upload_order_photos(order_id: str, photos: List[UploadFile] = File(...),
                        current_user=Depends(get_current_user)):
    order = orders.get_order_for(current_user, order_id)
    uploaded = storage.upload_many(photos, "orders", best_effort=True)
    return orders.render(orders.add_photos(order, uploaded))


# Payments
@app.post("/api/payments/webhook")
async def payment_webhook(request: Request, processor=Depends(get_processor)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    return await run_in_threadpool(payments.handle_webhook, payload, signature, processor)


@app.post("/api/payments/create-intent", status_code=201)
def create_payment_intent(payload: IntentPayload, current_user=Depends(get_current_user),
                          processor=Depends(get_processor)):
    payment = payments.create_payment_intent(current_user, payload.orderId, processor, payload.paymentMethod)
    return {
        "paymentId": str(payment["_id"]),
        "clientSecret": payment["stripeClientSecret"],
        "amount": payment["amount"],
        "currency": payment["currency"],
        "status": payment["status"],
        "orderId": payload.orderId,
    }


@app.get("/api/payments/history")
def payment_history(status: Optional[str] = None, paymentMethod: Optional[str] = None,
                    page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                    current_user=Depends(get_current_user)):
    return payments.list_payments(page, limit, user_id=str(current_user["_id"]), status=status,
                                  payment_method=paymentMethod)


@app.post("/api/payments/confirm/{payment_id}")
def confirm_payment(payment_id: str, current_user=Depends(get_current_user), processor=Depends(get_processor)):
    payment = payments.confirm_payment(current_user, payment_id, processor)
    order = orders.get_order(payment["orderId"])
    return {
        "paymentId": str(payment["_id"]),
        "status": payment["status"],
        "amount": payment["amount"],
        "currency": payment["currency"],
        "orderId": payment["orderId"],
        "orderStatus": order["status"],
    }


@app.get("/api/payments/admin/all")
def all_payments(status: Optional[str] = None, paymentMethod: Optional[str] = None, search: Optional[str] = None,
                 page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                 current_user=Depends(require("payment:read_any"))):
    return payments.list_payments(page, limit, status=status, payment_method=paymentMethod, search=search)


@app.get("/api/payments/admin/stats")
def payment_stats(userId: Optional[str] = None, current_user=Depends(require("payment:stats"))):
    return payments.payment_stats(userId)


@app.post("/api/payments/admin/refund/{payment_id}")
def refund_payment(payment_id: str, payload: RefundPayload, current_user=Depends(require("payment:refund")),
                   processor=Depends(get_processor)):
    return payments.refund_payment(payment_id, processor, payload.amount, payload.reason)


@app.get("/api/payments/{payment_id}")
def payment_detail(payment_id: str, current_user=Depends(get_current_user)):
    return payments.render(payments.get_payment(current_user, payment_id), include_secret=True)


# Diagnostics
@app.get("/health")
def health():
    ok = database.ping()
    return {"status": "ok" if ok else "degraded", "database": ok}


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
            response["database_url"] = "✅ Set" if config.DATABASE_URL else "❌ Not Set"
            response["database_name"] = "✅ Set" if config.DATABASE_NAME else "❌ Not Set"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
                response["connection_status"] = "Connected"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)

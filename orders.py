"""
Order Engine.

Checkout prices every requested line from the catalog, checks all of them
before touching stock, then reserves stock line by line. A failed
reservation releases the ones already made, so no partial order or stray
stock decrement survives a failed checkout.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import List, Optional

import auth
import catalog
import config
import database
import payments
from database import oid
from errors import Forbidden, InsufficientStock, InvalidInput, NotFound
from schemas import Order as OrderSchema, ShippingAddress

log = logging.getLogger(__name__)

ORDER_STATUSES = ["pending", "processing", "shipped", "out-for-delivery", "delivered", "cancelled"]


def shipping_price(items_price: float) -> float:
    return 0 if items_price > config.FREE_SHIPPING_THRESHOLD else config.SHIPPING_FEE


def order_totals(items_price: float, with_tax: bool = False) -> dict:
    shipping = shipping_price(items_price)
    tax = round(items_price * config.TAX_RATE, 2) if with_tax else 0
    return {
        "itemsPrice": round(items_price, 2),
        "shippingPrice": shipping,
        "taxPrice": tax,
        "totalPrice": round(items_price + shipping + tax, 2),
    }


def price_lines(items: List[dict]):
    """Snapshot each requested line at current prices. Checks stock for every line first."""
    if not items:
        raise InvalidInput("Order items are required")
    lines = []
    products = {}
    for item in items:
        product_id, qty = str(item["product"]), item["qty"]
        if not isinstance(qty, int) or qty < 1:
            raise InvalidInput("Quantity must be at least 1")
        if product_id not in products:
            try:
                products[product_id] = catalog.get_product(product_id)
            except NotFound:
                raise NotFound(f"Product with ID {product_id} not found")
        product = products[product_id]
        lines.append({
            "productId": product_id,
            "name": product["name"],
            "price": product["price"],
            "qty": qty,
            "total": round(product["price"] * qty, 2),
        })

    wanted = Counter()
    for line in lines:
        wanted[line["productId"]] += line["qty"]
    for product_id, qty in wanted.items():
        if products[product_id].get("stock", 0) < qty:
            raise InsufficientStock(f"Insufficient stock for product {products[product_id]['name']}")

    return lines, sum(line["total"] for line in lines)


def reserve_lines(lines: List[dict]):
    reserved = []
    try:
        for line in lines:
            catalog.reserve_stock(line["productId"], line["qty"])
            reserved.append(line)
    except Exception:
        log.warning("Checkout reservation failed; releasing %d reserved lines", len(reserved))
        release_lines(reserved)
        raise


def release_lines(lines: List[dict]):
    for line in lines:
        catalog.release_stock(line["productId"], line["qty"])


def _place(user: dict, items: List[dict], shipping_address: dict, payment_method: str, with_tax: bool) -> dict:
    if not shipping_address:
        raise InvalidInput("Shipping address is required")
    if not payment_method:
        raise InvalidInput("Payment method is required")
    lines, items_price = price_lines(items)
    totals = order_totals(items_price, with_tax)
    doc = OrderSchema(
        userId=str(user["_id"]),
        items=lines,
        shippingAddress=ShippingAddress(**shipping_address),
        paymentMethod=payment_method,
        **totals,
    )
    reserve_lines(lines)
    try:
        order_id = database.create_document("order", doc)
    except Exception:
        release_lines(lines)
        raise
    log.info("Order %s placed by %s: %d lines, total %.2f", order_id, user.get("email"), len(lines), totals["totalPrice"])
    return database.collection("order").find_one({"_id": oid(order_id)})


def create_order(user: dict, items: List[dict], shipping_address: dict, payment_method: str) -> dict:
    """Pay-later checkout: no payment intent is created."""
    return _place(user, items, shipping_address, payment_method, with_tax=False)


def create_order_with_payment(user: dict, items: List[dict], shipping_address: dict,
                              processor, payment_method: str = "card"):
    """Checkout with tax and an immediate payment intent. Rolls the order back if the intent fails."""
    order = _place(user, items, shipping_address, payment_method, with_tax=True)
    try:
        payment = payments.open_payment(order, user, processor, payment_method)
    except Exception:
        log.warning("Payment intent failed for order %s; rolling the order back", order["_id"])
        database.collection("order").delete_one({"_id": order["_id"]})
        release_lines(order["items"])
        raise
    return order, payment


def get_order(order_id: str) -> dict:
    order = database.collection("order").find_one({"_id": oid(order_id, "order ID")})
    if not order:
        raise NotFound("Order not found")
    return order


def get_order_for(actor: dict, order_id: str) -> dict:
    order = get_order(order_id)
    if not auth.can(actor, "order:read_any", owner_id=order["userId"]):
        raise Forbidden("Access denied")
    return order


def update_order_status(order_id: str, status: str) -> dict:
    if status not in ORDER_STATUSES:
        raise InvalidInput("Invalid order status")
    order = get_order(order_id)
    now = datetime.utcnow()
    fields = {"status": status, "updatedAt": now}
    if status == "delivered":
        fields["isDelivered"] = True
        fields["deliveredAt"] = now
    database.collection("order").update_one({"_id": order["_id"]}, {"$set": fields})
    order.update(fields)
    log.info("Order %s status set to %s", order_id, status)
    return order


def add_photos(order: dict, photos: List[dict]) -> dict:
    if photos:
        database.collection("order").update_one(
            {"_id": order["_id"]},
            {"$push": {"photos": {"$each": photos}}, "$set": {"updatedAt": datetime.utcnow()}},
        )
    return get_order(str(order["_id"]))


def render(order: dict, with_user: bool = False) -> dict:
    out = database.serialize(order)
    if with_user:
        user = database.collection("user").find_one({"_id": oid(order["userId"])}, {"name": 1, "email": 1})
        out["user"] = database.serialize(user)
    return out


def list_orders(page: int = 1, limit: int = 10, user_id: Optional[str] = None,
                status: Optional[str] = None, start_date: Optional[datetime] = None,
                end_date: Optional[datetime] = None) -> dict:
    query = {}
    if user_id:
        query["userId"] = user_id
    if status:
        query["status"] = status
    if start_date or end_date:
        query["createdAt"] = {}
        if start_date:
            query["createdAt"]["$gte"] = start_date
        if end_date:
            query["createdAt"]["$lte"] = end_date
    orders = database.with_retry(lambda: database.get_documents(
        "order", query, limit=limit, sort=[("createdAt", -1)], skip=(page - 1) * limit,
    ))
    total = database.collection("order").count_documents(query)
    return {
        "orders": [render(o, with_user=user_id is None) for o in orders],
        "pagination": database.paginate(page, limit, total),
    }

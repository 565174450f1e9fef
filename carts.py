"""
Cart Engine.

A cart borrows stock from the catalog: adding a line reserves the units,
removing, clearing or expiring it gives them back. Every cart write is
conditional on the cart's `version`; when a write fails (a lost race
raises Conflict) the stock movement made for it is undone.
"""
import logging
import re
from datetime import datetime, timedelta
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

import catalog
import config
import database
from errors import Conflict, InsufficientStock, InvalidInput, NotFound
from schemas import Cart as CartSchema

log = logging.getLogger(__name__)


def compute_totals(items: List[dict]) -> dict:
    return {
        "totalItems": sum(i["quantity"] for i in items),
        "totalPrice": round(sum(i["price"] * i["quantity"] for i in items), 2),
    }


def get_or_create_cart(user_id: str) -> dict:
    carts = database.collection("cart")
    cart = carts.find_one({"userId": user_id})
    if cart:
        return cart
    try:
        database.create_document("cart", CartSchema(userId=user_id, lastUpdated=datetime.utcnow()))
    except DuplicateKeyError:
        # created by a concurrent request
        pass
    return carts.find_one({"userId": user_id})


def get_cart(user_id: str) -> dict:
    cart = database.collection("cart").find_one({"userId": user_id})
    if not cart:
        raise NotFound("Cart not found")
    return cart


def _save(cart: dict, items: List[dict]) -> dict:
    now = datetime.utcnow()
    fields = {"items": items, **compute_totals(items), "lastUpdated": now, "updatedAt": now}
    version = cart.get("version", 0)
    result = database.collection("cart").update_one(
        {"_id": cart["_id"], "version": version},
        {"$set": fields, "$inc": {"version": 1}},
    )
    if result.matched_count == 0:
        raise Conflict("Cart was modified by another request, please retry")
    cart.update(fields)
    cart["version"] = version + 1
    return cart


def _find_line(items: List[dict], product_id: str, size=None, color=None, exact=True) -> Optional[int]:
    for idx, item in enumerate(items):
        if item["productId"] != product_id:
            continue
        if not exact or (item.get("selectedSize") == size and item.get("selectedColor") == color):
            return idx
    return None


def _locate(items: List[dict], product_id: str, size=None, color=None, fallback: bool = False) -> int:
    """Index of the (product, size, color) line, or of the first line for the
    product when no variant is given. With `fallback`, an unmatched variant
    also falls back to the first line for the product."""
    idx = None
    variant = size is not None or color is not None
    if variant:
        idx = _find_line(items, product_id, size, color)
    if idx is None and (fallback or not variant):
        idx = _find_line(items, product_id, exact=False)
    if idx is None:
        raise NotFound("Item not found in cart")
    return idx


def _check_variant(product: dict, size: Optional[str], color: Optional[str]):
    sizes = product.get("sizes") or []
    if size and sizes and size not in sizes:
        raise InvalidInput(f"Invalid size. Available sizes: {', '.join(sizes)}")
    colors = product.get("colors") or []
    if color and colors and color not in colors:
        raise InvalidInput(f"Invalid color. Available colors: {', '.join(colors)}")


def _check_quantity(quantity, low: int):
    if not isinstance(quantity, int) or quantity < low or quantity > config.MAX_CART_QUANTITY:
        raise InvalidInput(f"Quantity must be between {low} and {config.MAX_CART_QUANTITY}")


def add_item(cart: dict, product_id: str, quantity: int, price: float,
             size: Optional[str] = None, color: Optional[str] = None) -> dict:
    """Add a line or merge into the matching (product, size, color) line, reserving stock."""
    _check_quantity(quantity, 1)
    product = catalog.get_product(product_id)
    if product.get("stock", 0) < quantity:
        raise InsufficientStock()
    _check_variant(product, size, color)

    items = [dict(i) for i in cart.get("items", [])]
    idx = _find_line(items, product_id, size, color)
    if idx is not None:
        merged = items[idx]["quantity"] + quantity
        if merged > config.MAX_CART_QUANTITY:
            raise InvalidInput(f"Maximum {config.MAX_CART_QUANTITY} items per product allowed in cart")
        items[idx]["quantity"] = merged
        items[idx]["price"] = price
    else:
        now = datetime.utcnow()
        items.append({
            "productId": product_id,
            "quantity": quantity,
            "price": price,
            "selectedSize": size,
            "selectedColor": color,
            "addedAt": now,
            "expiresAt": now + timedelta(hours=config.CART_ITEM_TTL_HOURS),
        })

    catalog.reserve_stock(product_id, quantity)
    try:
        return _save(cart, items)
    except Exception:
        log.warning("Cart %s save failed; releasing %d of %s", cart["_id"], quantity, product_id)
        catalog.release_stock(product_id, quantity)
        raise


def update_item(cart: dict, product_id: str, quantity: int,
                size: Optional[str] = None, color: Optional[str] = None) -> dict:
    """Set a line's quantity (0 removes it) and optionally its size/color."""
    _check_quantity(quantity, 0)
    items = [dict(i) for i in cart.get("items", [])]
    if quantity == 0:
        return _remove_at(cart, items, _locate(items, product_id, size, color))
    idx = _locate(items, product_id, size, color, fallback=True)

    line = items[idx]
    if size is not None or color is not None:
        product = catalog.get_product(product_id)
        _check_variant(product, size, color)
        new_size = size if size is not None else line.get("selectedSize")
        new_color = color if color is not None else line.get("selectedColor")
        clash = _find_line(items, product_id, new_size, new_color)
        if clash is not None and clash != idx:
            raise InvalidInput("An item with this size and color is already in the cart")
        line["selectedSize"] = new_size
        line["selectedColor"] = new_color

    delta = quantity - line["quantity"]
    line["quantity"] = quantity
    if delta > 0:
        catalog.reserve_stock(product_id, delta)
        try:
            return _save(cart, items)
        except Exception:
            log.warning("Cart %s save failed; releasing %d of %s", cart["_id"], delta, product_id)
            catalog.release_stock(product_id, delta)
            raise
    cart = _save(cart, items)
    if delta < 0:
        catalog.release_stock(product_id, -delta)
    return cart


def remove_item(cart: dict, product_id: str, quantity: Optional[int] = None,
                size: Optional[str] = None, color: Optional[str] = None) -> dict:
    """Remove a whole line, or `quantity` units of it, returning the units to stock."""
    if quantity is not None and quantity <= 0:
        raise InvalidInput("Quantity to remove must be positive")
    items = [dict(i) for i in cart.get("items", [])]
    return _remove_at(cart, items, _locate(items, product_id, size, color), quantity)


def _remove_at(cart: dict, items: List[dict], idx: int, quantity: Optional[int] = None) -> dict:
    line = items[idx]
    removed = min(quantity or line["quantity"], line["quantity"])
    if removed >= line["quantity"]:
        items.pop(idx)
    else:
        line["quantity"] -= removed
    cart = _save(cart, items)
    catalog.release_stock(line["productId"], removed)
    return cart


def clear_cart(cart: dict) -> dict:
    """Empty the cart and give every line's units back, best effort per line."""
    items = list(cart.get("items", []))
    cart = _save(cart, [])
    for item in items:
        try:
            catalog.release_stock(item["productId"], item["quantity"])
        except Exception:
            log.exception("Failed to restore %s units of %s while clearing cart %s",
                          item["quantity"], item["productId"], cart["_id"])
    return cart


def clean_expired_items(now: Optional[datetime] = None) -> dict:
    """Drop expired lines from every cart and return their units to stock."""
    now = now or datetime.utcnow()
    carts = list(database.collection("cart").find({"items.expiresAt": {"$lt": now}}))
    modified = 0
    restored = 0
    for cart in carts:
        expired = [i for i in cart["items"] if i["expiresAt"] < now]
        kept = [i for i in cart["items"] if i["expiresAt"] >= now]
        try:
            _save(cart, kept)
        except Conflict:
            log.info("Cart %s changed during expiry sweep; leaving it for the next run", cart["_id"])
            continue
        modified += 1
        for item in expired:
            if catalog.release_stock(item["productId"], item["quantity"]):
                restored += 1
    if carts:
        log.info("Expiry sweep: %d carts matched, %d cleaned, %d lines restored", len(carts), modified, restored)
    return {"matchedCount": len(carts), "modifiedCount": modified, "restoredItems": restored}


def cart_with_products(cart: dict, fields: Optional[dict] = None) -> dict:
    """Read-only view of a cart with each line joined to a narrow product view."""
    fields = fields or catalog.CART_PRODUCT_FIELDS
    out = database.serialize(cart)
    ids = list({i["productId"] for i in cart.get("items", [])})
    products = {}
    if ids:
        found = database.collection("product").find({"_id": {"$in": [database.oid(i) for i in ids]}}, fields)
        products = {str(p["_id"]): database.serialize(p) for p in found}
    for item in out.get("items", []):
        item["product"] = products.get(item["productId"])
    return out


def cart_summary(user_id: str) -> dict:
    cart = database.collection("cart").find_one({"userId": user_id})
    if not cart:
        return {"totalItems": 0, "totalPrice": 0, "itemCount": 0}
    return {
        "totalItems": cart.get("totalItems", 0),
        "totalPrice": cart.get("totalPrice", 0),
        "itemCount": len(cart.get("items", [])),
    }


ADMIN_PRODUCT_FIELDS = {"name": 1, "price": 1, "photos": 1, "sizes": 1, "colors": 1, "stock": 1}


def _with_user(view: dict) -> dict:
    user = database.collection("user").find_one(
        {"_id": database.oid(view["userId"], "user ID")}, {"name": 1, "email": 1, "role": 1}
    )
    view["user"] = database.serialize(user)
    return view


def list_carts(page: int = 1, limit: int = 10, search: str = "") -> dict:
    query = {}
    if search:
        pattern = re.escape(search)
        users = database.collection("user").find(
            {"$or": [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"email": {"$regex": pattern, "$options": "i"}},
            ]},
            {"_id": 1},
        )
        query["userId"] = {"$in": [str(u["_id"]) for u in users]}
    carts = database.get_documents("cart", query, limit=limit, sort=[("lastUpdated", -1)], skip=(page - 1) * limit)
    total = database.collection("cart").count_documents(query)
    return {
        "carts": [_with_user(cart_with_products(c, ADMIN_PRODUCT_FIELDS)) for c in carts],
        "pagination": database.paginate(page, limit, total),
    }


def user_cart_view(user_id: str) -> dict:
    database.oid(user_id, "user ID")
    cart = database.collection("cart").find_one({"userId": user_id})
    if not cart:
        raise NotFound("User cart not found")
    return _with_user(cart_with_products(cart, ADMIN_PRODUCT_FIELDS))

"""
Products, categories and reviews.

Stock is only ever moved through reserve_stock/release_stock, each a single
atomic update, so a product's stock can never be driven below zero.
"""
import json
import logging
import re
from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import database
from database import oid
from errors import Conflict, Forbidden, InsufficientStock, InvalidInput, NotFound
from schemas import Category as CategorySchema, Product as ProductSchema

log = logging.getLogger(__name__)

REVIEWABLE_ORDER_STATUSES = ["shipped", "out-for-delivery", "delivered"]

SORTS = {
    "price-low": [("price", 1)],
    "price-high": [("price", -1)],
    "rating": [("rating", -1)],
    "newest": [("createdAt", -1)],
}

# Narrow product view joined into cart lines
CART_PRODUCT_FIELDS = {"name": 1, "slug": 1, "photos": 1, "price": 1, "discount": 1, "stock": 1, "status": 1}


def slugify(name: str) -> str:
    slug = re.sub(r"\s+", "-", name.strip().lower())
    return re.sub(r"[^\w\-]+", "", slug)


def parse_string_list(value) -> List[str]:
    """Accept a list, a JSON array string or a comma separated string."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    try:
        parsed = json.loads(value)
        if isinstance(parsed, list):
            return [str(v).strip() for v in parsed if str(v).strip()]
    except ValueError:
        pass
    return [v.strip() for v in str(value).split(",") if v.strip()]


def discounted_price(product: dict) -> float:
    discount = product.get("discount") or 0
    if discount > 0:
        return round(product["price"] * (1 - discount / 100), 2)
    return product["price"]


def compute_rating(reviews: List[dict]):
    if not reviews:
        return 0, 0
    total = sum(r["rating"] for r in reviews)
    return total / len(reviews), len(reviews)


# Stock

def reserve_stock(product_id: str, qty: int) -> dict:
    """Take `qty` units out of stock, failing if fewer are available."""
    if not isinstance(qty, int) or qty <= 0:
        raise InvalidInput("Quantity must be a positive integer")
    products = database.collection("product")
    _id = oid(product_id, "product ID")
    doc = products.find_one_and_update(
        {"_id": _id, "stock": {"$gte": qty}},
        {"$inc": {"stock": -qty}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        current = products.find_one({"_id": _id}, {"name": 1, "stock": 1})
        if not current:
            raise NotFound(f"Product with ID {product_id} not found")
        log.info("Stock reservation of %d failed for %s (stock=%s)", qty, product_id, current.get("stock"))
        raise InsufficientStock(f"Insufficient stock for product {current.get('name')}")
    if doc["stock"] <= 0:
        products.update_one({"_id": _id, "stock": {"$lte": 0}}, {"$set": {"inStock": False}})
    return doc


def release_stock(product_id: str, qty: int) -> bool:
    """Put `qty` units back. Returns False when the product no longer exists."""
    if qty <= 0:
        return True
    result = database.collection("product").update_one(
        {"_id": oid(product_id, "product ID")},
        {"$inc": {"stock": qty}, "$set": {"inStock": True}},
    )
    if result.matched_count == 0:
        log.warning("Could not restore %d units to missing product %s", qty, product_id)
        return False
    return True


# Categories

def list_categories():
    return database.get_documents("category", sort=[("createdAt", -1)])


def create_category(name: str) -> dict:
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Category name is required")
    try:
        new_id = database.create_document("category", CategorySchema(name=name, slug=slugify(name)))
    except DuplicateKeyError:
        raise Conflict("Category already exists")
    return database.collection("category").find_one({"_id": ObjectId(new_id)})


def update_category(category_id: str, name: str) -> dict:
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Category name is required")
    try:
        doc = database.collection("category").find_one_and_update(
            {"_id": oid(category_id, "category ID")},
            {"$set": {"name": name, "slug": slugify(name), "updatedAt": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise Conflict("Category already exists")
    if not doc:
        raise NotFound("Category not found")
    return doc


def delete_category(category_id: str):
    res = database.collection("category").delete_one({"_id": oid(category_id, "category ID")})
    if res.deleted_count == 0:
        raise NotFound("Category not found")
    database.collection("product").update_many({"categories": category_id}, {"$pull": {"categories": category_id}})


def existing_category_ids(ids: List[str]) -> List[str]:
    if not ids:
        return []
    found = database.collection("category").find(
        {"_id": {"$in": [oid(i, "category ID") for i in ids]}}, {"_id": 1}
    )
    return [str(c["_id"]) for c in found]


# Products

def _validated_product(**fields) -> ProductSchema:
    try:
        return ProductSchema(**fields)
    except ValidationError as e:
        raise InvalidInput("Invalid product data", [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()
        ])


def get_product(product_id: str) -> dict:
    product = database.collection("product").find_one({"_id": oid(product_id, "product ID")})
    if not product:
        raise NotFound("Product not found")
    return product


def with_categories(product: dict) -> dict:
    ids = product.get("categories") or []
    if ids:
        cats = database.collection("category").find({"_id": {"$in": [ObjectId(i) for i in ids]}}, {"name": 1, "slug": 1})
        product["categories"] = [database.serialize(c) for c in cats]
    return product


def list_products(page: int = 1, limit: int = 10, category: Optional[str] = None,
                  search: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, sort: Optional[str] = None) -> dict:
    query = {"status": "active"}
    if category:
        cat = database.collection("category").find_one({"slug": category})
        if cat:
            query["categories"] = str(cat["_id"])
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price

    skip = (page - 1) * limit
    products = database.with_retry(lambda: database.get_documents(
        "product", query, limit=limit, sort=SORTS.get(sort, SORTS["newest"]), skip=skip,
    ))
    total = database.collection("product").count_documents(query)
    return {
        "products": [database.serialize(with_categories(p)) for p in products],
        "pagination": database.paginate(page, limit, total),
    }


def create_product(data: dict) -> dict:
    name = (data.get("name") or "").strip()
    if not name or not data.get("description") or data.get("price") is None:
        raise InvalidInput("Name, description and price are required")
    stock = int(data.get("stock") or 0)
    doc = _validated_product(
        name=name,
        slug=slugify(name),
        description=data["description"],
        price=float(data["price"]),
        discount=float(data.get("discount") or 0),
        stock=stock,
        inStock=stock > 0,
        status=data.get("status") or "active",
        sizes=parse_string_list(data.get("sizes")),
        colors=parse_string_list(data.get("colors")),
        categories=existing_category_ids(parse_string_list(data.get("categories"))),
    )
    try:
        new_id = database.create_document("product", doc)
    except DuplicateKeyError:
        raise Conflict("A product with this name already exists")
    log.info("Product %s created (%s)", new_id, doc.slug)
    return get_product(new_id)


def update_product(product_id: str, data: dict) -> dict:
    product = get_product(product_id)
    update = {}
    if data.get("name"):
        update["name"] = data["name"].strip()
        update["slug"] = slugify(data["name"])
    for key in ("description", "status"):
        if data.get(key):
            update[key] = data[key]
    if data.get("price") is not None:
        update["price"] = float(data["price"])
    if data.get("discount") is not None:
        update["discount"] = float(data["discount"])
    if data.get("stock") is not None:
        update["stock"] = int(data["stock"])
        update["inStock"] = update["stock"] > 0
    if data.get("sizes") is not None:
        update["sizes"] = parse_string_list(data["sizes"])
    if data.get("colors") is not None:
        update["colors"] = parse_string_list(data["colors"])
    if data.get("categories"):
        update["categories"] = existing_category_ids(parse_string_list(data["categories"]))

    if update:
        # validate the merged document before writing it
        merged = {**product, **update}
        merged.pop("_id", None)
        _validated_product(**{k: v for k, v in merged.items() if k in ProductSchema.model_fields})
        update["updatedAt"] = datetime.utcnow()
        try:
            database.collection("product").update_one({"_id": product["_id"]}, {"$set": update})
        except DuplicateKeyError:
            raise Conflict("A product with this name already exists")
    return get_product(product_id)


def add_product_photos(product_id: str, urls: List[str]) -> dict:
    product = get_product(product_id)
    if urls:
        database.collection("product").update_one(
            {"_id": product["_id"]},
            {"$push": {"photos": {"$each": urls}}, "$set": {"updatedAt": datetime.utcnow()}},
        )
    return get_product(product_id)


def delete_product(product_id: str):
    res = database.collection("product").delete_one({"_id": oid(product_id, "product ID")})
    if res.deleted_count == 0:
        raise NotFound("Product not found")


# Reviews

def add_review(product_id: str, user: dict, rating: int, comment: str) -> dict:
    if not comment or not rating:
        raise InvalidInput("Rating and comment are required")
    if rating < 1 or rating > 5:
        raise InvalidInput("Rating must be between 1 and 5")
    product = get_product(product_id)
    user_id = str(user["_id"])

    purchased = database.collection("order").find_one({
        "userId": user_id,
        "items.productId": product_id,
        "status": {"$in": REVIEWABLE_ORDER_STATUSES},
    })
    if not purchased:
        raise Forbidden("You can only review products you have purchased")

    reviews = product.get("reviews", [])
    if any(r["userId"] == user_id for r in reviews):
        raise Conflict("You have already reviewed this product")

    reviews.append({
        "id": str(ObjectId()),
        "userId": user_id,
        "name": user.get("name", ""),
        "rating": int(rating),
        "comment": comment,
        "createdAt": datetime.utcnow(),
    })
    return _save_reviews(product, reviews)


def delete_review(product_id: str, review_id: str) -> dict:
    product = get_product(product_id)
    reviews = product.get("reviews", [])
    remaining = [r for r in reviews if r["id"] != review_id]
    if len(remaining) == len(reviews):
        raise NotFound("Review not found")
    return _save_reviews(product, remaining)


def _save_reviews(product: dict, reviews: List[dict]) -> dict:
    rating, count = compute_rating(reviews)
    database.collection("product").update_one(
        {"_id": product["_id"]},
        {"$set": {"reviews": reviews, "rating": rating, "numReviews": count, "updatedAt": datetime.utcnow()}},
    )
    return get_product(str(product["_id"]))

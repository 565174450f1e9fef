"""
Payment reconciliation.

A Payment mirrors one processor payment intent. Its status only moves along
TRANSITIONS, and every write is conditional on the document's `version`, so
a webhook and a client confirmation racing on the same payment cannot both
apply: the loser gets Conflict.
"""
import logging
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pymongo.errors import DuplicateKeyError

import config
import database
from database import oid
from errors import ApiError, Conflict, InvalidInput, InvalidStatusTransition, NotFound
from processor import intent_view
from schemas import Payment as PaymentSchema, WebhookEvent

log = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": {"processing", "succeeded", "failed", "canceled"},
    "processing": {"succeeded", "failed", "canceled"},
    "succeeded": {"refunded"},
    "failed": {"pending"},
    "canceled": {"pending"},
    "refunded": set(),
}

INTENT_STATUS_MAP = {
    "succeeded": "succeeded",
    "requires_payment_method": "pending",
    "requires_confirmation": "pending",
    "requires_action": "pending",
    "processing": "processing",
    "canceled": "canceled",
    "payment_failed": "failed",
}

# fields a status update may carry along
STATUS_FIELDS = {"processedAt", "paymentMethodDetails", "failureCode", "failureMessage", "refundReason"}

WEBHOOK_TARGETS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
}


def to_cents(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def remaining_amount(payment: dict) -> float:
    return round(payment["amount"] - payment.get("refundedAmount", 0), 2)


def render(payment: dict, include_secret: bool = False) -> dict:
    out = database.serialize(payment)
    if not include_secret:
        out.pop("stripeClientSecret", None)
    refunded = payment.get("refundedAmount", 0)
    out["remainingAmount"] = remaining_amount(payment)
    out["isRefunded"] = refunded > 0
    out["refundPercentage"] = round(refunded / payment["amount"] * 100) if payment["amount"] else 0
    return out


# State machine

def apply_status(payment: dict, status: str, extra: Optional[dict] = None,
                 now: Optional[datetime] = None) -> dict:
    """Return the field changes for moving `payment` to `status`, or raise."""
    current = payment["status"]
    if status not in TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(current, status)
    changes = {"status": status}
    for key, value in (extra or {}).items():
        if key in STATUS_FIELDS:
            changes[key] = value
    if status == "succeeded" and not payment.get("processedAt") and not changes.get("processedAt"):
        changes["processedAt"] = now or datetime.utcnow()
    return changes


def apply_refund(payment: dict, amount: Optional[float] = None,
                 reason: str = "requested_by_customer", now: Optional[datetime] = None) -> dict:
    """Return the field changes for refunding `amount` (default: all that remains)."""
    if payment["status"] != "succeeded":
        raise InvalidInput("Only succeeded payments can be refunded")
    remaining = remaining_amount(payment)
    refund = remaining if amount is None else round(amount, 2)
    if refund <= 0:
        raise InvalidInput("No amount available for refund" if amount is None else "Refund amount must be positive")
    if refund > remaining:
        raise InvalidInput("Refund amount exceeds remaining amount")
    refunded = round(payment.get("refundedAmount", 0) + refund, 2)
    changes = {"refundedAmount": refunded, "refundReason": reason}
    if refunded >= payment["amount"]:
        changes.update(apply_status(payment, "refunded"))
        changes["refundedAt"] = now or datetime.utcnow()
    return changes


def _write(payment: dict, changes: dict) -> dict:
    version = payment.get("version", 0)
    fields = {**changes, "updatedAt": datetime.utcnow()}
    result = database.collection("payment").update_one(
        {"_id": payment["_id"], "version": version},
        {"$set": fields, "$inc": {"version": 1}},
    )
    if result.matched_count == 0:
        raise Conflict("Payment was modified by another request, please retry")
    payment.update(fields)
    payment["version"] = version + 1
    return payment


def update_status(payment: dict, status: str, extra: Optional[dict] = None) -> dict:
    return _write(payment, apply_status(payment, status, extra))


def process_refund(payment: dict, amount: Optional[float] = None,
                   reason: str = "requested_by_customer") -> dict:
    return _write(payment, apply_refund(payment, amount, reason))


def _set_order(order_id: str, fields: dict):
    database.collection("order").update_one(
        {"_id": oid(order_id, "order ID")},
        {"$set": {**fields, "updatedAt": datetime.utcnow()}},
    )


def _mark_order_paid(order_id: str):
    """Confirm a still-unpaid order. Safe to repeat: orders already paid are left alone."""
    database.collection("order").update_one(
        {"_id": oid(order_id, "order ID"), "paymentStatus": "pending"},
        {"$set": {"paymentStatus": "paid", "status": "confirmed", "updatedAt": datetime.utcnow()}},
    )


# Intents

def open_payment(order: dict, user: dict, processor, payment_method: str = "card") -> dict:
    """Create a processor intent for the order's total and record a pending Payment."""
    cents = to_cents(order["totalPrice"])
    if cents < config.MIN_CHARGE_CENTS:
        raise InvalidInput(f"Minimum payment amount is ${config.MIN_CHARGE_CENTS / 100:.2f}")
    order_id = str(order["_id"])
    description = f"Payment for Order #{order_id}"
    intent = processor.create_intent(
        cents,
        config.CURRENCY,
        {"orderId": order_id, "userId": str(user["_id"]), "userEmail": user.get("email", "")},
        description,
    )
    doc = PaymentSchema(
        userId=str(user["_id"]),
        orderId=order_id,
        stripePaymentIntentId=intent["id"],
        stripeClientSecret=intent["clientSecret"],
        amount=order["totalPrice"],
        currency=config.CURRENCY.upper(),
        paymentMethod=payment_method,
        description=description,
        metadata={
            "orderNumber": order_id,
            "userEmail": user.get("email", ""),
            "userName": user.get("name", ""),
        },
    )
    try:
        payment_id = database.create_document("payment", doc)
    except DuplicateKeyError:
        raise Conflict("Payment intent already recorded")
    log.info("Payment %s opened for order %s (%d cents)", payment_id, order_id, cents)
    return database.collection("payment").find_one({"_id": oid(payment_id)})


def create_payment_intent(user: dict, order_id: str, processor, payment_method: str = "card") -> dict:
    order = database.collection("order").find_one({"_id": oid(order_id, "order ID"), "userId": str(user["_id"])})
    if not order:
        raise NotFound("Order not found or doesn't belong to you")
    if order.get("paymentStatus") == "paid":
        raise Conflict("Order is already paid")
    if database.collection("payment").find_one({"orderId": order_id, "status": "succeeded"}):
        raise Conflict("Payment already exists for this order")
    return open_payment(order, user, processor, payment_method)


def reconcile(payment: dict, intent: dict) -> dict:
    """Bring a Payment (and its order) in line with the processor's view of the intent."""
    status = INTENT_STATUS_MAP.get(intent.get("status"), payment["status"])
    extra = {}
    if status == "succeeded":
        extra = {"processedAt": datetime.utcnow(), "paymentMethodDetails": intent.get("card")}
    elif status == "failed":
        extra = {"failureCode": intent.get("failureCode"), "failureMessage": intent.get("failureMessage")}

    if status != payment["status"]:
        update_status(payment, status, extra)
        log.info("Payment %s moved to %s", payment["_id"], status)
    if payment["status"] == "succeeded":
        _mark_order_paid(payment["orderId"])
    return payment


def confirm_payment(user: dict, payment_id: str, processor) -> dict:
    payment = database.collection("payment").find_one({"_id": oid(payment_id, "payment ID"), "userId": str(user["_id"])})
    if not payment:
        raise NotFound("Payment not found")
    intent = processor.retrieve_intent(payment["stripePaymentIntentId"])
    return reconcile(payment, intent)


def handle_webhook(payload: bytes, signature: Optional[str], processor) -> dict:
    """Verify and apply one webhook delivery. Redelivered events are acknowledged only."""
    event = processor.construct_event(payload, signature)
    events = database.collection("webhook_event")
    try:
        events.insert_one(WebhookEvent(eventId=event["id"], type=event["type"], receivedAt=datetime.utcnow()).model_dump())
    except DuplicateKeyError:
        log.info("Webhook event %s already processed", event["id"])
        return {"received": True, "duplicate": True}

    target = WEBHOOK_TARGETS.get(event["type"])
    if target is None:
        log.info("Unhandled webhook event type %s", event["type"])
        return {"received": True}

    intent = intent_view(event["object"])
    payment = database.collection("payment").find_one({"stripePaymentIntentId": intent["id"]})
    if not payment:
        log.warning("Webhook %s for unknown intent %s", event["type"], intent["id"])
        return {"received": True}
    try:
        reconcile(payment, {**intent, "status": "succeeded" if target == "succeeded" else "payment_failed"})
    except InvalidStatusTransition as e:
        log.error("Webhook %s ignored for payment %s: %s", event["type"], payment["_id"], e.message)
    except Exception:
        # let the processor redeliver
        events.delete_one({"eventId": event["id"]})
        raise
    return {"received": True}


def refund_payment(payment_id: str, processor, amount: Optional[float] = None,
                   reason: str = "requested_by_customer") -> dict:
    payment = database.collection("payment").find_one({"_id": oid(payment_id, "payment ID")})
    if not payment:
        raise NotFound("Payment not found")
    planned = apply_refund(payment, amount, reason)
    refund_amount = round(planned["refundedAmount"] - payment.get("refundedAmount", 0), 2)

    refund = processor.create_refund(
        payment["stripePaymentIntentId"],
        to_cents(refund_amount),
        reason,
        {"paymentId": payment_id, "orderId": payment["orderId"]},
    )
    try:
        process_refund(payment, refund_amount, reason)
    except ApiError:
        log.error("Refund %s issued at processor but not recorded for payment %s", refund["id"], payment_id)
        raise
    if payment["status"] == "refunded":
        _set_order(payment["orderId"], {"paymentStatus": "refunded", "status": "cancelled"})
    log.info("Refunded %.2f on payment %s (%s)", refund_amount, payment_id, refund["id"])
    return {
        "refundId": refund["id"],
        "paymentId": payment_id,
        "refundedAmount": refund_amount,
        "remainingAmount": remaining_amount(payment),
        "status": payment["status"],
    }


# Reads

def get_payment(user: dict, payment_id: str) -> dict:
    payment = database.collection("payment").find_one({"_id": oid(payment_id, "payment ID"), "userId": str(user["_id"])})
    if not payment:
        raise NotFound("Payment not found")
    return payment


def list_payments(page: int = 1, limit: int = 10, user_id: Optional[str] = None,
                  status: Optional[str] = None, payment_method: Optional[str] = None,
                  search: Optional[str] = None) -> dict:
    query = {}
    if user_id:
        query["userId"] = user_id
    if status:
        query["status"] = status
    if payment_method:
        query["paymentMethod"] = payment_method
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {f"metadata.{key}": {"$regex": pattern, "$options": "i"}}
            for key in ("userEmail", "userName", "orderNumber")
        ]
    payments = database.get_documents("payment", query, limit=limit, sort=[("createdAt", -1)], skip=(page - 1) * limit)
    total = database.collection("payment").count_documents(query)
    return {
        "payments": [render(p) for p in payments],
        "pagination": database.paginate(page, limit, total),
    }


def payment_stats(user_id: Optional[str] = None) -> dict:
    match = {"userId": user_id} if user_id else {}
    payments = database.collection("payment")
    by_status = list(payments.aggregate([
        {"$match": match},
        {"$group": {
            "_id": "$status",
            "count": {"$sum": 1},
            "totalAmount": {"$sum": "$amount"},
            "avgAmount": {"$avg": "$amount"},
        }},
    ]))
    totals = list(payments.aggregate([
        {"$match": match},
        {"$group": {
            "_id": None,
            "totalPayments": {"$sum": 1},
            "totalAmount": {"$sum": "$amount"},
            "totalRefunded": {"$sum": "$refundedAmount"},
            "avgAmount": {"$avg": "$amount"},
        }},
    ]))
    summary = totals[0] if totals else {"totalPayments": 0, "totalAmount": 0, "totalRefunded": 0, "avgAmount": 0}
    summary.pop("_id", None)
    return {
        "byStatus": [{"status": s.pop("_id"), **s} for s in by_status],
        "totals": summary,
    }

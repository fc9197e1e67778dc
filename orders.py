"""
Order Workflow: cart -> order conversion and the order/payment lifecycle.

Checkout reserves stock with guarded decrements before anything is written.
The order header and its items are stored as one document, so a failure leaves
either no order at all (with the reservations released) or a complete one.

Status flow:

    pending -> confirmed -> processing -> shipped -> delivered
    pending | confirmed -> cancelled

cancelled and delivered are terminal. Payment status moves independently
(pending -> paid | failed, paid -> refunded | partially_refunded); a payment
marked paid on a pending order confirms it.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from accounts import AccountStore
from cart import CartEngine
from catalog import CatalogStore
from database import ORDERS, get_documents, get_page, object_id, utcnow
from errors import (
    Conflict,
    EmptyCart,
    Forbidden,
    InvalidTransition,
    NotFound,
    ProductUnavailable,
    ValidationError,
)
from payments import PaymentGateway
from schemas import (
    CreateOrder,
    OrderOut,
    OrderStatus,
    PaymentIntentOut,
    PaymentStatus,
    money,
)

logger = logging.getLogger(__name__)

CANCELLABLE = (OrderStatus.PENDING, OrderStatus.CONFIRMED)
TERMINAL = (OrderStatus.CANCELLED, OrderStatus.DELIVERED)
REFUNDABLE = (PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED)


def _token(prefix: str) -> str:
    millis = int(utcnow().timestamp() * 1000)
    return f"{prefix}-{millis}-{uuid.uuid4().hex[:8].upper()}"


def generate_order_number() -> str:
    return _token("ORD")


def generate_tracking_number() -> str:
    return _token("TRK")


class OrderWorkflow:
    def __init__(self, db: Database, catalog: CatalogStore, cart: CartEngine, accounts: AccountStore,
                 gateway: PaymentGateway, tax_rate: Decimal = Decimal("0.08"),
                 shipping_fee: Decimal = Decimal("10.00")):
        self.orders = db[ORDERS]
        self.catalog = catalog
        self.cart = cart
        self.accounts = accounts
        self.gateway = gateway
        self.tax_rate = Decimal(str(tax_rate))
        self.shipping_fee = money(shipping_fee)

    # -----------------
    # Checkout
    # -----------------

    def create_order(self, firebase_uid: str, details: CreateOrder) -> OrderOut:
        user = self.accounts.resolve_caller(firebase_uid)
        cart = self.cart.find_cart(str(user["_id"]))
        if cart is None or not cart.get("items"):
            raise EmptyCart()
        cart_items = cart["items"]

        # The cart may be stale relative to other buyers
        products = {}
        for item in cart_items:
            product = self.catalog.find_product(item["product_id"])
            if product is None or not self.catalog.is_product_available(item["product_id"], item["quantity"]):
                raise ProductUnavailable(product["name"] if product else item["product_id"])
            products[item["product_id"]] = product

        subtotal = money(cart["total_amount"])
        tax = money(subtotal * self.tax_rate)
        shipping_cost = self.shipping_fee
        total = subtotal + tax + shipping_cost

        order_items = []
        for item in cart_items:
            product = products[item["product_id"]]
            unit_price = money(item["unit_price"])
            order_items.append({
                "id": uuid.uuid4().hex,
                "product_id": item["product_id"],
                "product_name": product["name"],
                "product_sku": product.get("sku"),
                "product_image_url": (product.get("image_urls") or [None])[0],
                "unit_price": float(unit_price),
                "quantity": item["quantity"],
                "total_price": float(money(unit_price * item["quantity"])),
            })

        now = utcnow()
        doc = {
            "user_id": str(user["_id"]),
            "firebase_uid": user["firebase_uid"],
            "items": order_items,
            "status": OrderStatus.PENDING.value,
            "payment_method": details.payment_method.value,
            "payment_status": PaymentStatus.PENDING.value,
            "payment_intent_id": details.payment_intent_id,
            "tracking_number": None,
            "shipping_address": details.shipping_address.model_dump(),
            "billing_address": details.billing_address.model_dump(),
            "notes": details.notes,
            "subtotal": float(subtotal),
            "tax": float(tax),
            "shipping_cost": float(shipping_cost),
            "total_amount": float(total),
            "refunded_amount": 0.0,
            "shipped_at": None,
            "delivered_at": None,
            "created_at": now,
            "updated_at": now,
        }

        reserved = []
        try:
            for item in cart_items:
                self.catalog.update_stock(item["product_id"], item["quantity"])
                reserved.append(item)
            order_id = self._insert(doc)
        except Exception:
            self._release(reserved)
            raise

        self.cart.clear(firebase_uid, user=user)
        logger.info("Created order %s for user %s", doc["order_number"], firebase_uid)
        return OrderOut.from_doc(self.orders.find_one({"_id": order_id}))

    def _insert(self, doc: dict):
        # a third collision in a row is not a numbering problem
        for attempt in range(3):
            doc["order_number"] = generate_order_number()
            try:
                return self.orders.insert_one(doc).inserted_id
            except DuplicateKeyError:
                doc.pop("_id", None)
                if attempt == 2:
                    raise
                logger.warning("Order number %s already taken, generating another", doc["order_number"])

    def _release(self, items) -> None:
        for item in items:
            logger.warning("Releasing %d units of product %s after failed checkout",
                           item["quantity"], item["product_id"])
            self.catalog.restore_stock(item["product_id"], item["quantity"])

    def _restore_stock(self, order: dict) -> None:
        for item in order.get("items", []):
            self.catalog.restore_stock(item["product_id"], item["quantity"])

    # -----------------
    # Reads
    # -----------------

    def _find(self, order_id: str) -> dict:
        oid = object_id(order_id)
        doc = self.orders.find_one({"_id": oid}) if oid else None
        if doc is None:
            raise NotFound("Order", order_id)
        return doc

    def _owned(self, firebase_uid: str, order_id: str) -> dict:
        user = self.accounts.resolve_caller(firebase_uid)
        order = self._find(order_id)
        if order["user_id"] != str(user["_id"]):
            raise Forbidden("Order does not belong to user")
        return order

    def get_order(self, order_id: str) -> OrderOut:
        return OrderOut.from_doc(self._find(order_id))

    def get_order_by_number(self, order_number: str) -> OrderOut:
        doc = self.orders.find_one({"order_number": order_number})
        if doc is None:
            raise NotFound("Order", order_number)
        return OrderOut.from_doc(doc)

    def user_orders(self, firebase_uid: str, page: int = 0, size: int = 10) -> dict:
        self.accounts.require_by_uid(firebase_uid)
        return get_page(self.orders.database, ORDERS, {"firebase_uid": firebase_uid}, page, size,
                        [("created_at", DESCENDING), ("_id", DESCENDING)], OrderOut.from_doc)

    def all_orders(self) -> List[OrderOut]:
        docs = get_documents(self.orders.database, ORDERS, sort=[("created_at", DESCENDING), ("_id", DESCENDING)])
        return [OrderOut.from_doc(d) for d in docs]

    def orders_by_status(self, status: OrderStatus, page: int = 0, size: int = 10) -> dict:
        return get_page(self.orders.database, ORDERS, {"status": status.value}, page, size,
                        [("created_at", DESCENDING), ("_id", DESCENDING)], OrderOut.from_doc)

    def count_by_status(self) -> dict:
        return {s.value: self.orders.count_documents({"status": s.value}) for s in OrderStatus}

    def revenue_since(self, since: datetime) -> Decimal:
        paid = self.orders.find({"payment_status": PaymentStatus.PAID.value, "created_at": {"$gte": since}},
                                {"total_amount": 1})
        return money(sum((money(d["total_amount"]) for d in paid), Decimal("0.00")))

    # -----------------
    # Lifecycle
    # -----------------

    @staticmethod
    def _check_transition(old: OrderStatus, new: OrderStatus) -> None:
        if old in TERMINAL:
            raise InvalidTransition(old.value, new.value)
        if new is OrderStatus.CANCELLED and old not in CANCELLABLE:
            raise InvalidTransition(old.value, new.value)

    def update_order_status(self, order_id: str, status: OrderStatus) -> OrderOut:
        order = self._find(order_id)
        old = OrderStatus(order["status"])
        if old is status:
            # repeating the current status has no side effects, cancelled -> cancelled included
            return OrderOut.from_doc(order)
        self._check_transition(old, status)

        now = utcnow()
        changes = {"status": status.value, "updated_at": now}
        if status is OrderStatus.SHIPPED:
            changes["shipped_at"] = now
            changes["tracking_number"] = generate_tracking_number()
        elif status is OrderStatus.DELIVERED:
            changes["delivered_at"] = now

        # compare-and-set on the old status; stock is restored at most once
        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "status": old.value},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            current = self._find(order_id)["status"]
            raise InvalidTransition(current, status.value)
        if status is OrderStatus.CANCELLED:
            self._restore_stock(updated)
        logger.info("Updated order %s status from %s to %s", order_id, old.value, status.value)
        return OrderOut.from_doc(updated)

    def update_payment_status(self, order_id: str, payment_status: PaymentStatus) -> OrderOut:
        order = self._find(order_id)
        self.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"payment_status": payment_status.value, "updated_at": utcnow()}},
        )
        if payment_status is PaymentStatus.PAID:
            # payment success confirms an order that is still pending
            self.orders.update_one(
                {"_id": order["_id"], "status": OrderStatus.PENDING.value},
                {"$set": {"status": OrderStatus.CONFIRMED.value}},
            )
        logger.info("Updated order %s payment status to %s", order_id, payment_status.value)
        return OrderOut.from_doc(self._find(order_id))

    def cancel_order(self, firebase_uid: str, order_id: str) -> OrderOut:
        order = self._owned(firebase_uid, order_id)
        cancelled = self.orders.find_one_and_update(
            {"_id": order["_id"], "status": {"$in": [s.value for s in CANCELLABLE]}},
            {"$set": {"status": OrderStatus.CANCELLED.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if cancelled is None:
            current = self._find(order_id)["status"]
            raise InvalidTransition(current, OrderStatus.CANCELLED.value)
        self._restore_stock(cancelled)
        logger.info("Cancelled order %s for user %s", order_id, firebase_uid)
        return OrderOut.from_doc(cancelled)

    # -----------------
    # Payments
    # -----------------

    def create_payment_intent(self, firebase_uid: str, order_id: str) -> PaymentIntentOut:
        order = self._owned(firebase_uid, order_id)
        if OrderStatus(order["status"]) is OrderStatus.CANCELLED:
            raise InvalidTransition(order["status"], "payment")
        if PaymentStatus(order["payment_status"]) is not PaymentStatus.PENDING:
            raise ValidationError(f"Order payment is already {order['payment_status']}")
        intent = self.gateway.create_payment_intent(order)
        self.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"payment_intent_id": intent.id, "updated_at": utcnow()}},
        )
        return intent

    def get_payment_intent(self, firebase_uid: str, order_id: str) -> PaymentIntentOut:
        order = self._owned(firebase_uid, order_id)
        if not order.get("payment_intent_id"):
            raise NotFound("Payment intent for order", order_id)
        return self.gateway.retrieve_payment_intent(order["payment_intent_id"])

    def confirm_payment(self, firebase_uid: str, order_id: str) -> OrderOut:
        order = self._owned(firebase_uid, order_id)
        if OrderStatus(order["status"]) is OrderStatus.CANCELLED:
            raise InvalidTransition(order["status"], "payment")
        if not order.get("payment_intent_id"):
            raise ValidationError("Order has no payment intent")
        intent = self.gateway.confirm_payment(order["payment_intent_id"], money(order["total_amount"]))
        if intent.status == "succeeded":
            return self.update_payment_status(order_id, PaymentStatus.PAID)
        if intent.status in ("canceled", "requires_payment_method"):
            return self.update_payment_status(order_id, PaymentStatus.FAILED)
        # processing / requires_action: the gateway has not settled yet
        return OrderOut.from_doc(order)

    def refund(self, order_id: str, amount: Optional[Decimal] = None) -> OrderOut:
        order = self._find(order_id)
        if PaymentStatus(order["payment_status"]) not in REFUNDABLE:
            raise InvalidTransition(order["payment_status"], PaymentStatus.REFUNDED.value)
        if not order.get("payment_intent_id"):
            raise ValidationError("Order has no payment intent")
        total = money(order["total_amount"])
        already = money(order.get("refunded_amount", 0))
        amount = money(amount) if amount is not None else total - already
        if amount <= 0 or already + amount > total:
            raise ValidationError(f"Refund amount must be between 0.01 and {total - already}")

        refunded = already + amount
        status = PaymentStatus.REFUNDED if refunded >= total else PaymentStatus.PARTIALLY_REFUNDED
        # claim the amount against the refunded total that was read, then ask the gateway
        claimed = self.orders.update_one(
            {"_id": order["_id"], "refunded_amount": order.get("refunded_amount"),
             "payment_status": order["payment_status"]},
            {"$set": {"refunded_amount": float(refunded), "payment_status": status.value, "updated_at": utcnow()}},
        )
        if not claimed.matched_count:
            raise Conflict(f"Order {order['order_number']} was refunded concurrently, try again")
        try:
            self.gateway.refund_payment(order["payment_intent_id"], amount)
        except Exception:
            self.orders.update_one(
                {"_id": order["_id"], "refunded_amount": float(refunded)},
                {"$set": {"refunded_amount": order.get("refunded_amount", 0.0),
                          "payment_status": order["payment_status"], "updated_at": utcnow()}},
            )
            raise
        logger.info("Refunded %s on order %s, payment status %s", amount, order["order_number"], status.value)
        return OrderOut.from_doc(self._find(order_id))

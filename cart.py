"""
Cart Engine: one cart per user, one line per product.

Line items are embedded in the cart document. After every mutation the totals
are summed again from the full item list, never adjusted in place.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from accounts import AccountStore
from catalog import CatalogStore
from database import CARTS, utcnow
from errors import Conflict, Forbidden, NotFound, OutOfStock, ValidationError
from schemas import Cart, CartItem, CartItemOut, CartOut, money

logger = logging.getLogger(__name__)

MERGE_ATTEMPTS = 5


def new_item_id() -> str:
    return uuid.uuid4().hex


def cart_totals(items) -> tuple:
    """(total_amount, total_items) for a list of item documents."""
    amount = sum((money(i["unit_price"]) * i["quantity"] for i in items), Decimal("0.00"))
    count = sum(i["quantity"] for i in items)
    return money(amount), count


class CartEngine:
    def __init__(self, db: Database, catalog: CatalogStore, accounts: AccountStore):
        self.carts = db[CARTS]
        self.catalog = catalog
        self.accounts = accounts

    # -----------------
    # Internals
    # -----------------

    def find_cart(self, user_id: str) -> Optional[dict]:
        return self.carts.find_one({"user_id": user_id})

    def cart_for_user(self, user_id: str) -> dict:
        """The user's cart document, created on first use."""
        now = utcnow()
        return self.carts.find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": dict(Cart(user_id=user_id).model_dump(), created_at=now, updated_at=now)},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def _recompute(self, cart_id) -> dict:
        cart = self.carts.find_one({"_id": cart_id})
        amount, count = cart_totals(cart.get("items", []))
        return self.carts.find_one_and_update(
            {"_id": cart_id},
            {"$set": {"total_amount": float(amount), "total_items": count, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def _owned_item(self, user: dict, item_id: str) -> dict:
        cart = self.carts.find_one({"items.id": item_id})
        if cart is None:
            raise NotFound("Cart item", item_id)
        if cart["user_id"] != str(user["_id"]):
            raise Forbidden("Cart item does not belong to user")
        return cart

    def _snapshot(self, cart: dict) -> CartOut:
        items = []
        for item in cart.get("items", []):
            product = self.catalog.find_product(item["product_id"])
            items.append(CartItemOut(
                id=item["id"],
                product_id=item["product_id"],
                product_name=product["name"] if product else None,
                product_slug=product["slug"] if product else None,
                product_image_url=(product.get("image_urls") or [None])[0] if product else None,
                unit_price=float(money(item["unit_price"])),
                quantity=item["quantity"],
                total_price=float(money(item["unit_price"]) * item["quantity"]),
                is_available=bool(product) and product["stock_quantity"] >= item["quantity"],
            ))
        return CartOut(
            id=str(cart["_id"]),
            items=items,
            total_amount=cart.get("total_amount", 0.0),
            total_items=cart.get("total_items", 0),
            created_at=cart.get("created_at"),
            updated_at=cart.get("updated_at"),
        )

    # -----------------
    # Operations
    # -----------------

    def get_cart(self, firebase_uid: str) -> CartOut:
        user = self.accounts.resolve_caller(firebase_uid)
        return self._snapshot(self.cart_for_user(str(user["_id"])))

    def add_item(self, firebase_uid: str, product_id: str, quantity: int) -> CartOut:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        user = self.accounts.resolve_caller(firebase_uid)
        product = self.catalog.find_product(product_id)
        if product is None:
            raise NotFound("Product", product_id)
        product_id = str(product["_id"])
        cart = self.cart_for_user(str(user["_id"]))
        unit_price = product.get("sale_price")
        if unit_price is None:
            unit_price = product["price"]

        for _ in range(MERGE_ATTEMPTS):
            existing = next((i for i in cart["items"] if i["product_id"] == product_id), None)
            seen = existing["quantity"] if existing else 0
            if not self.catalog.is_product_available(product_id, seen + quantity):
                raise OutOfStock(f"Product {product['name']} is not available or has insufficient stock")

            # both writes only apply to the line as it was when stock was checked
            if existing is None:
                result = self.carts.update_one(
                    {"_id": cart["_id"], "items.product_id": {"$ne": product_id}},
                    {"$push": {"items": dict(
                        CartItem(id=new_item_id(), product_id=product_id, quantity=quantity,
                                 unit_price=float(money(unit_price))).model_dump(),
                        added_at=utcnow(),
                    )}},
                )
            else:
                result = self.carts.update_one(
                    {"_id": cart["_id"], "items": {"$elemMatch": {"id": existing["id"], "quantity": seen}}},
                    {"$set": {"items.$.quantity": seen + quantity}},
                )
            if result.matched_count:
                break
            logger.info("Cart for user %s changed during add, checking stock again", firebase_uid)
            cart = self.carts.find_one({"_id": cart["_id"]})
        else:
            raise Conflict("Cart is being modified concurrently, try again")

        cart = self._recompute(cart["_id"])
        logger.info("Added product %s x%d to cart for user %s", product_id, quantity, firebase_uid)
        return self._snapshot(cart)

    def update_item(self, firebase_uid: str, item_id: str, quantity: int) -> CartOut:
        user = self.accounts.resolve_caller(firebase_uid)
        cart = self._owned_item(user, item_id)
        if quantity <= 0:
            self.carts.update_one({"_id": cart["_id"]}, {"$pull": {"items": {"id": item_id}}})
            logger.info("Removed cart item %s for user %s", item_id, firebase_uid)
        else:
            item = next(i for i in cart["items"] if i["id"] == item_id)
            if not self.catalog.is_product_available(item["product_id"], quantity):
                raise OutOfStock("Insufficient stock for requested quantity")
            self.carts.update_one(
                {"_id": cart["_id"], "items.id": item_id},
                {"$set": {"items.$.quantity": quantity}},
            )
            logger.info("Updated cart item %s quantity to %d for user %s", item_id, quantity, firebase_uid)
        return self._snapshot(self._recompute(cart["_id"]))

    def remove_item(self, firebase_uid: str, item_id: str) -> CartOut:
        user = self.accounts.resolve_caller(firebase_uid)
        cart = self._owned_item(user, item_id)
        self.carts.update_one({"_id": cart["_id"]}, {"$pull": {"items": {"id": item_id}}})
        logger.info("Removed cart item %s for user %s", item_id, firebase_uid)
        return self._snapshot(self._recompute(cart["_id"]))

    def clear(self, firebase_uid: str, user: Optional[dict] = None) -> CartOut:
        if user is None:
            user = self.accounts.resolve_caller(firebase_uid)
        cart = self.cart_for_user(str(user["_id"]))
        self.carts.update_one({"_id": cart["_id"]}, {"$set": {"items": []}})
        logger.info("Cleared cart for user %s", firebase_uid)
        return self._snapshot(self._recompute(cart["_id"]))

"""
Catalog Store: categories, products, availability and stock arithmetic.

Public read paths only ever see products with status "active". The two stock
mutators are single conditional updates so concurrent buyers cannot push stock
below zero.
"""

import logging
import re
from typing import Dict, List, Optional, Set

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import CATEGORIES, PRODUCTS, create_document, get_page, object_id, utcnow
from errors import Conflict, InsufficientStock, NotFound, ValidationError
from schemas import (
    Category,
    CategoryIn,
    CategoryOut,
    CategorySummary,
    Product,
    ProductIn,
    ProductOut,
    ProductStatus,
)

logger = logging.getLogger(__name__)

# Accepted sort keys for product listings, camelCase kept for older clients
SORT_FIELDS = {
    "created_at": "created_at",
    "createdAt": "created_at",
    "name": "name",
    "price": "price",
    "average_rating": "average_rating",
    "averageRating": "average_rating",
    "stock_quantity": "stock_quantity",
}


def slugify(name: str) -> str:
    slug = name.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


class CatalogStore:
    def __init__(self, db: Database):
        self.db = db
        self.products = db[PRODUCTS]
        self.categories = db[CATEGORIES]

    # -----------------
    # Categories
    # -----------------

    def _category_out(self, doc: dict, depth: int = 0) -> CategoryOut:
        parent_name = None
        if doc.get("parent_id"):
            parent = self.categories.find_one({"_id": object_id(doc["parent_id"])}, {"name": 1})
            parent_name = parent["name"] if parent else None
        children = []
        # depth cap: stored parent links are not trusted to be acyclic
        if depth < 8:
            children = [
                self._category_out(c, depth + 1)
                for c in self.categories.find({"parent_id": str(doc["_id"]), "is_active": True})
                .sort("sort_order", ASCENDING)
            ]
        return CategoryOut(
            id=str(doc["_id"]),
            name=doc["name"],
            slug=doc["slug"],
            description=doc.get("description"),
            image_url=doc.get("image_url"),
            is_active=doc.get("is_active", True),
            sort_order=doc.get("sort_order", 0),
            parent_id=doc.get("parent_id"),
            parent_name=parent_name,
            children=children,
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )

    def _find_category(self, category_id: str) -> dict:
        doc = self.categories.find_one({"_id": object_id(category_id)}) if object_id(category_id) else None
        if doc is None:
            raise NotFound("Category", category_id)
        return doc

    def list_categories(self) -> List[CategoryOut]:
        docs = self.categories.find({"is_active": True}).sort("sort_order", ASCENDING)
        return [self._category_out(d) for d in docs]

    def top_level_categories(self) -> List[CategoryOut]:
        docs = self.categories.find({"parent_id": None, "is_active": True}).sort("sort_order", ASCENDING)
        return [self._category_out(d) for d in docs]

    def get_category(self, category_id: str) -> CategoryOut:
        doc = self._find_category(category_id)
        if not doc.get("is_active", True):
            raise NotFound("Category", category_id)
        return self._category_out(doc)

    def get_category_by_slug(self, slug: str) -> CategoryOut:
        doc = self.categories.find_one({"slug": slug, "is_active": True})
        if doc is None:
            raise NotFound("Category", slug)
        return self._category_out(doc)

    def subcategories(self, parent_id: str) -> List[CategoryOut]:
        docs = self.categories.find({"parent_id": parent_id, "is_active": True}).sort("sort_order", ASCENDING)
        return [self._category_out(d) for d in docs]

    def descendant_ids(self, category_id: str) -> Set[str]:
        """Ids of every category below category_id, walked level by level."""
        found: Set[str] = set()
        frontier = [category_id]
        while frontier:
            children = [str(c["_id"]) for c in self.categories.find({"parent_id": {"$in": frontier}}, {"_id": 1})]
            frontier = [c for c in children if c not in found]
            found.update(frontier)
        return found

    def product_count(self, category_id: str) -> int:
        return self.products.count_documents({"category_id": category_id, "status": ProductStatus.ACTIVE.value})

    def _check_parent(self, category_id: Optional[str], parent_id: Optional[str]) -> None:
        if parent_id is None:
            return
        self._find_category(parent_id)
        if category_id is not None and (parent_id == category_id or parent_id in self.descendant_ids(category_id)):
            raise ValidationError("A category cannot be placed under itself or one of its subcategories")

    def create_category(self, data: CategoryIn) -> CategoryOut:
        self._check_parent(None, data.parent_id)
        category = Category(**data.model_dump(), slug=slugify(data.name))
        try:
            category_id = create_document(self.db, CATEGORIES, category)
        except DuplicateKeyError:
            raise Conflict(f"Category '{data.name}' already exists")
        logger.info("Created category: %s", data.name)
        return self._category_out(self._find_category(category_id))

    def update_category(self, category_id: str, data: CategoryIn) -> CategoryOut:
        existing = self._find_category(category_id)
        self._check_parent(category_id, data.parent_id)
        changes = data.model_dump()
        if existing["name"] != data.name:
            changes["slug"] = slugify(data.name)
        changes["updated_at"] = utcnow()
        try:
            self.categories.update_one({"_id": existing["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise Conflict(f"Category '{data.name}' already exists")
        logger.info("Updated category: %s", data.name)
        return self._category_out(self.categories.find_one({"_id": existing["_id"]}))

    def delete_category(self, category_id: str) -> None:
        # Soft delete; children keep their own flag
        existing = self._find_category(category_id)
        self.categories.update_one({"_id": existing["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
        logger.info("Deactivated category: %s", existing["name"])

    # -----------------
    # Products
    # -----------------

    def _summaries(self, category_ids: Set[str]) -> Dict[str, CategorySummary]:
        oids = [object_id(c) for c in category_ids if object_id(c)]
        return {
            str(c["_id"]): CategorySummary(
                id=str(c["_id"]),
                name=c["name"],
                slug=c["slug"],
                description=c.get("description"),
                image_url=c.get("image_url"),
            )
            for c in self.categories.find({"_id": {"$in": oids}})
        }

    def _product_out(self, doc: dict, summaries: Optional[Dict[str, CategorySummary]] = None) -> ProductOut:
        if summaries is None:
            summaries = self._summaries({doc.get("category_id")})
        d = {k: v for k, v in doc.items() if k not in ("_id", "category_id")}
        return ProductOut(id=str(doc["_id"]), category=summaries.get(doc.get("category_id")), **d)

    def _products_out(self, docs) -> List[ProductOut]:
        docs = list(docs)
        summaries = self._summaries({d.get("category_id") for d in docs})
        return [self._product_out(d, summaries) for d in docs]

    def _page(self, filter_dict: dict, page: int, size: int, sort) -> dict:
        result = get_page(self.db, PRODUCTS, filter_dict, page, size, sort, lambda d: d)
        result["content"] = self._products_out(result["content"])
        return result

    def _find_product(self, product_id: str) -> dict:
        oid = object_id(product_id)
        doc = self.products.find_one({"_id": oid}) if oid else None
        if doc is None:
            raise NotFound("Product", product_id)
        return doc

    def find_product(self, product_id: str) -> Optional[dict]:
        """Raw product document regardless of status, None when absent."""
        oid = object_id(product_id)
        return self.products.find_one({"_id": oid}) if oid else None

    def list_products(self, page: int = 0, size: int = 12, sort_by: str = "created_at",
                      sort_dir: str = "desc") -> dict:
        field = SORT_FIELDS.get(sort_by)
        if field is None:
            raise ValidationError(f"Cannot sort products by '{sort_by}'")
        direction = DESCENDING if sort_dir.lower() == "desc" else ASCENDING
        return self._page({"status": ProductStatus.ACTIVE.value}, page, size, [(field, direction), ("_id", direction)])

    def get_product(self, product_id: str) -> ProductOut:
        doc = self._find_product(product_id)
        if doc["status"] != ProductStatus.ACTIVE.value:
            raise NotFound("Product", product_id)
        return self._product_out(doc)

    def get_product_by_slug(self, slug: str) -> ProductOut:
        doc = self.products.find_one({"slug": slug, "status": ProductStatus.ACTIVE.value})
        if doc is None:
            raise NotFound("Product", slug)
        return self._product_out(doc)

    def products_by_category(self, category_id: str, page: int = 0, size: int = 12) -> dict:
        filt = {"category_id": category_id, "status": ProductStatus.ACTIVE.value}
        return self._page(filt, page, size, [("created_at", DESCENDING), ("_id", DESCENDING)])

    def featured_products(self, limit: int = 8) -> List[ProductOut]:
        docs = self.products.find({"status": ProductStatus.ACTIVE.value, "is_featured": True}).limit(limit)
        return self._products_out(docs)

    def search_products(self, keyword: str, page: int = 0, size: int = 12) -> dict:
        pattern = {"$regex": re.escape(keyword), "$options": "i"}
        filt = {
            "status": ProductStatus.ACTIVE.value,
            "$or": [{"name": pattern}, {"description": pattern}, {"brand": pattern}],
        }
        return self._page(filt, page, size, [("created_at", DESCENDING), ("_id", DESCENDING)])

    def products_by_price_range(self, min_price: float, max_price: float, page: int = 0, size: int = 12) -> dict:
        if min_price > max_price:
            raise ValidationError("min_price must not be greater than max_price")
        filt = {"status": ProductStatus.ACTIVE.value, "price": {"$gte": min_price, "$lte": max_price}}
        return self._page(filt, page, size, [("price", ASCENDING), ("_id", ASCENDING)])

    def products_by_brand(self, brand: str, page: int = 0, size: int = 12) -> dict:
        filt = {"status": ProductStatus.ACTIVE.value, "brand": brand}
        return self._page(filt, page, size, [("created_at", DESCENDING), ("_id", DESCENDING)])

    def brands(self) -> List[str]:
        values = self.products.distinct("brand", {"status": ProductStatus.ACTIVE.value})
        return sorted(b for b in values if b)

    def latest_products(self, limit: int = 8) -> List[ProductOut]:
        docs = self.products.find({"status": ProductStatus.ACTIVE.value}).sort(
            [("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        return self._products_out(docs)

    def top_rated_products(self, limit: int = 8) -> List[ProductOut]:
        docs = self.products.find({"status": ProductStatus.ACTIVE.value}).sort(
            [("average_rating", DESCENDING), ("review_count", DESCENDING)]).limit(limit)
        return self._products_out(docs)

    def low_stock_products(self, threshold: int = 5) -> List[ProductOut]:
        docs = self.products.find({"stock_quantity": {"$lte": threshold}}).sort("stock_quantity", ASCENDING)
        return self._products_out(docs)

    def active_product_count(self) -> int:
        return self.products.count_documents({"status": ProductStatus.ACTIVE.value})

    # -----------------
    # Availability & stock
    # -----------------

    def is_product_available(self, product_id: str, quantity: int) -> bool:
        doc = self.find_product(product_id)
        if doc is None:
            return False
        return doc["status"] == ProductStatus.ACTIVE.value and doc["stock_quantity"] >= quantity

    def update_stock(self, product_id: str, quantity: int) -> dict:
        """Take quantity units out of stock, only if that many are on hand."""
        oid = object_id(product_id)
        doc = None
        if oid is not None:
            doc = self.products.find_one_and_update(
                {"_id": oid, "stock_quantity": {"$gte": quantity}},
                {"$inc": {"stock_quantity": -quantity}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            existing = self._find_product(product_id)
            raise InsufficientStock(
                f"Insufficient stock for {existing['name']}: {existing['stock_quantity']} left, {quantity} needed")
        if doc["stock_quantity"] == 0 and doc["status"] == ProductStatus.ACTIVE.value:
            self.products.update_one(
                {"_id": oid, "stock_quantity": 0, "status": ProductStatus.ACTIVE.value},
                {"$set": {"status": ProductStatus.OUT_OF_STOCK.value}},
            )
            doc["status"] = ProductStatus.OUT_OF_STOCK.value
        logger.info("Updated stock for product %s: -%d units", product_id, quantity)
        return doc

    def restore_stock(self, product_id: str, quantity: int) -> dict:
        oid = object_id(product_id)
        doc = None
        if oid is not None:
            doc = self.products.find_one_and_update(
                {"_id": oid},
                {"$inc": {"stock_quantity": quantity}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise NotFound("Product", product_id)
        if doc["status"] == ProductStatus.OUT_OF_STOCK.value and doc["stock_quantity"] > 0:
            self.products.update_one(
                {"_id": oid, "status": ProductStatus.OUT_OF_STOCK.value, "stock_quantity": {"$gt": 0}},
                {"$set": {"status": ProductStatus.ACTIVE.value}},
            )
            doc["status"] = ProductStatus.ACTIVE.value
        logger.info("Restored stock for product %s: +%d units", product_id, quantity)
        return doc

    # -----------------
    # Admin
    # -----------------

    @staticmethod
    def _stock_status(data: ProductIn) -> str:
        if data.stock_quantity == 0 and data.status == ProductStatus.ACTIVE:
            return ProductStatus.OUT_OF_STOCK.value
        if data.stock_quantity > 0 and data.status == ProductStatus.OUT_OF_STOCK:
            return ProductStatus.ACTIVE.value
        return data.status.value

    def create_product(self, data: ProductIn) -> ProductOut:
        self._find_category(data.category_id)
        fields = data.model_dump()
        fields.update(slug=slugify(data.name), status=self._stock_status(data))
        product = Product(**fields)
        try:
            product_id = create_document(self.db, PRODUCTS, product)
        except DuplicateKeyError:
            raise Conflict(f"A product with slug '{product.slug}' already exists")
        logger.info("Created product: %s", data.name)
        return self._product_out(self._find_product(product_id))

    def update_product(self, product_id: str, data: ProductIn) -> ProductOut:
        existing = self._find_product(product_id)
        self._find_category(data.category_id)
        changes = data.model_dump(mode="json")
        changes["status"] = self._stock_status(data)
        if existing["name"] != data.name:
            changes["slug"] = slugify(data.name)
        changes["updated_at"] = utcnow()
        try:
            self.products.update_one({"_id": existing["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise Conflict(f"A product with slug '{changes.get('slug', existing['slug'])}' already exists")
        logger.info("Updated product: %s", data.name)
        return self._product_out(self.products.find_one({"_id": existing["_id"]}))

    def delete_product(self, product_id: str) -> None:
        existing = self._find_product(product_id)
        self.products.update_one(
            {"_id": existing["_id"]},
            {"$set": {"status": ProductStatus.INACTIVE.value, "updated_at": utcnow()}},
        )
        logger.info("Deactivated product: %s", existing["name"])

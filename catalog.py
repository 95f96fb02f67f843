import logging
import re
from typing import Any, Dict, Optional

import pydantic
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, now, oid, parse_document
from errors import NotFoundError, ValidationError
from schemas import Product

logger = logging.getLogger(__name__)

PAGE_SIZE = 20
LOW_STOCK_THRESHOLD = 10


class ProductCatalog:
    def __init__(self, db: Database):
        self.db = db

    def list_products(self, category: Optional[str] = None, q: Optional[str] = None, page: int = 1,
                      include_inactive: bool = False) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if not include_inactive:
            query["is_active"] = True
        if category:
            query["category"] = category
        if q and q.strip():
            pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"description": pattern}]
        page = max(page, 1)
        total = self.db["product"].count_documents(query)
        cursor = (self.db["product"].find(query)
                  .sort("created_at", DESCENDING)
                  .skip((page - 1) * PAGE_SIZE)
                  .limit(PAGE_SIZE))
        items = [parse_document(Product, d) for d in cursor]
        return {"items": items, "page": page, "page_size": PAGE_SIZE, "total": total}

    def get_product(self, product_id: str, include_inactive: bool = False) -> Product:
        doc = self.db["product"].find_one({"_id": oid(product_id, "Product")})
        if not doc or (not include_inactive and not doc.get("is_active", True)):
            raise NotFoundError("Product not found")
        return parse_document(Product, doc)

    def create_product(self, product: Product) -> Product:
        product.id = create_document(self.db, "product", product)
        logger.info("Created product %s (%s)", product.id, product.name)
        return product

    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Product:
        current = self.get_product(product_id, include_inactive=True)
        # revalidate the merged row so price/stock constraints hold after the update
        try:
            merged = Product.model_validate({**current.model_dump(), **changes})
        except pydantic.ValidationError:
            raise ValidationError("Invalid product fields")
        update = {k: getattr(merged, k) for k in changes}
        update["updated_at"] = now()
        doc = self.db["product"].find_one_and_update(
            {"_id": oid(product_id, "Product")},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFoundError("Product not found")
        return parse_document(Product, doc)

    def delete_product(self, product_id: str) -> Dict[str, Any]:
        """Deletes the product, or deactivates it if any order references it."""
        product = self.get_product(product_id, include_inactive=True)
        if self.db["order"].find_one({"items.product_id": product.id}, {"_id": 1}):
            self.db["product"].update_one(
                {"_id": oid(product_id, "Product")},
                {"$set": {"is_active": False, "updated_at": now()}},
            )
            logger.info("Product %s is referenced by orders, deactivated instead of deleted", product.id)
            return {"deleted": False, "deactivated": True}
        self.db["product"].delete_one({"_id": oid(product_id, "Product")})
        logger.info("Deleted product %s", product.id)
        return {"deleted": True, "deactivated": False}

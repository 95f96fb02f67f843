"""
Order workflow

Orders are created `pending` with their line items embedded, so the order and
its items are written by a single insert. Status changes go through
`update_status`, which only accepts the transitions below and writes with a
compare-and-swap on (status, version).
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, now, oid, parse_document
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Order, OrderItem, Product

logger = logging.getLogger(__name__)

PAGE_SIZE = 20

TERMINAL_STATUSES = {"delivered", "cancelled"}

# Happy-path successor of each status. Any non-terminal status may also go to cancelled.
NEXT_STATUS = {
    "pending": "processing",
    "processing": "shipped",
    "shipped": "delivered",
}


def can_transition(current: str, new: str) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if new == "cancelled":
        return True
    return NEXT_STATUS.get(current) == new


class OrderWorkflow:
    def __init__(self, db: Database):
        self.db = db

    def create_order(self, customer_id: str, cart_items: Iterable[Dict[str, Any]], shipping_address: str) -> Order:
        lines = self._merge_cart(cart_items)
        if not shipping_address or not shipping_address.strip():
            raise ValidationError("Shipping address is required")

        items: List[OrderItem] = []
        for product_id, quantity in lines:
            product = self._get_product(product_id)
            if not product.is_active:
                raise ValidationError(f"Product {product.name} is not available")
            items.append(OrderItem(
                product_id=product_id,
                product_name=product.name,
                quantity=quantity,
                unit_price=product.price,
            ))

        reserved = self._reserve_stock(items)
        order = Order(
            customer_id=customer_id,
            items=items,
            total_amount=round(sum(i.unit_price * i.quantity for i in items), 2),
            status="pending",
            shipping_address=shipping_address.strip(),
        )
        try:
            order.id = create_document(self.db, "order", order)
        except PyMongoError:
            self._release_stock(reserved)
            raise
        logger.info("Created order %s for customer %s (%d items, total %.2f)",
                    order.id, customer_id, len(items), order.total_amount)
        return order

    def get_order(self, order_id: str) -> Order:
        doc = self.db["order"].find_one({"_id": oid(order_id, "Order")})
        if not doc:
            raise NotFoundError("Order not found")
        return parse_document(Order, doc)

    def update_status(self, order_id: str, new_status: str, expected_version: Optional[int] = None,
                      tracking_number: Optional[str] = None) -> Order:
        order = self.get_order(order_id)
        if expected_version is not None and expected_version != order.version:
            raise ConflictError("Order was modified by someone else, reload and try again")
        if not can_transition(order.status, new_status):
            raise ConflictError(f"Cannot change order status from {order.status} to {new_status}")

        update: Dict[str, Any] = {"status": new_status, "updated_at": now()}
        if tracking_number:
            update["tracking_number"] = tracking_number
        doc = self.db["order"].find_one_and_update(
            {"_id": ObjectId(order.id), "status": order.status, "version": order.version},
            {"$set": update, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise ConflictError("Order was modified by someone else, reload and try again")
        if new_status == "cancelled":
            self._release_stock([(i.product_id, i.quantity) for i in order.items])
        logger.info("Order %s: %s -> %s", order.id, order.status, new_status)
        return parse_document(Order, doc)

    def mark_paid(self, order_id: str) -> bool:
        """Move a pending order to processing. Returns False if it was not pending."""
        doc = self.db["order"].find_one_and_update(
            {"_id": ObjectId(order_id), "status": "pending"},
            {"$set": {"status": "processing", "updated_at": now()}, "$inc": {"version": 1}},
        )
        if doc:
            logger.info("Order %s: pending -> processing (payment confirmed)", order_id)
        return doc is not None

    def list_orders(self, customer_id: Optional[str] = None, status: Optional[str] = None,
                    search: Optional[str] = None, page: int = 1) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if customer_id:
            query["customer_id"] = customer_id
        if status:
            query["status"] = status
        if search and search.strip():
            query["$or"] = self._search_clauses(search.strip())

        page = max(page, 1)
        total = self.db["order"].count_documents(query)
        cursor = (self.db["order"].find(query)
                  .sort("created_at", DESCENDING)
                  .skip((page - 1) * PAGE_SIZE)
                  .limit(PAGE_SIZE))
        orders = [parse_document(Order, d) for d in cursor]

        customers = self._customers({o.customer_id for o in orders})
        items = []
        for o in orders:
            data = o.model_dump()
            customer = customers.get(o.customer_id, {})
            data["customer_name"] = customer.get("full_name")
            data["customer_email"] = customer.get("email")
            items.append(data)
        return {"items": items, "page": page, "page_size": PAGE_SIZE, "total": total}

    # helpers

    @staticmethod
    def _merge_cart(cart_items: Iterable[Dict[str, Any]]) -> List[Tuple[str, int]]:
        merged: Dict[str, int] = {}
        for item in cart_items or []:
            product_id = item.get("product_id")
            quantity = item.get("quantity", 1)
            if not product_id:
                raise ValidationError("Cart item is missing product_id")
            if not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError("Cart item quantity must be a positive integer")
            merged[product_id] = merged.get(product_id, 0) + quantity
        if not merged:
            raise ValidationError("Cart is empty")
        return list(merged.items())

    def _get_product(self, product_id: str) -> Product:
        doc = self.db["product"].find_one({"_id": oid(product_id, "Product")})
        if not doc:
            raise NotFoundError("Product not found")
        return parse_document(Product, doc)

    def _reserve_stock(self, items: List[OrderItem]) -> List[Tuple[str, int]]:
        reserved: List[Tuple[str, int]] = []
        for item in items:
            result = self.db["product"].update_one(
                {"_id": ObjectId(item.product_id), "is_active": True, "stock_quantity": {"$gte": item.quantity}},
                {"$inc": {"stock_quantity": -item.quantity}},
            )
            if result.modified_count != 1:
                self._release_stock(reserved)
                raise ConflictError(f"Not enough stock for {item.product_name}")
            reserved.append((item.product_id, item.quantity))
        return reserved

    def _release_stock(self, reserved: List[Tuple[str, int]]) -> None:
        for product_id, quantity in reserved:
            self.db["product"].update_one({"_id": ObjectId(product_id)}, {"$inc": {"stock_quantity": quantity}})

    def _search_clauses(self, search: str) -> List[Dict[str, Any]]:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        user_ids = [str(u["_id"]) for u in self.db["user"].find(
            {"$or": [{"full_name": pattern}, {"email": pattern}]}, {"_id": 1})]
        clauses: List[Dict[str, Any]] = [{"customer_id": {"$in": user_ids}}]
        try:
            clauses.append({"_id": ObjectId(search)})
        except InvalidId:
            pass
        return clauses

    def _customers(self, ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        object_ids = []
        for i in ids:
            try:
                object_ids.append(ObjectId(i))
            except InvalidId:
                continue
        if not object_ids:
            return {}
        users = self.db["user"].find({"_id": {"$in": object_ids}}, {"full_name": 1, "email": 1})
        return {str(u["_id"]): u for u in users}

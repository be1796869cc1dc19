"""
Order workflow: placement with stock reservation, per-item status transitions
and buyer-initiated deletion.

Placement is all-or-nothing. Every line is validated first, then stock is
reserved line by line with a conditional decrement; if a reservation or the
order insert fails, reservations already taken are handed back before the
error propagates. Order documents carry a `version` counter and every write is
conditioned on it, so two concurrent transitions on one order cannot both
apply their stock side effects.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import now, to_object_id
from schemas import ItemStatus, Order, OrderItem, PaymentMethod

logger = logging.getLogger("plantify.orders")

ACTIVE_ORDER_STATUSES = ("processing", "pending")
UNDELETABLE_ORDER_STATUSES = ("completed", "shipped")

ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("shipped", "cancelled"),
    "shipped": ("delivered", "cancelled"),
    "delivered": (),
    "cancelled": (),
}


class OrderError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(OrderError):
    status_code = 400


class NotFound(OrderError):
    status_code = 404


class Forbidden(OrderError):
    status_code = 403


class Conflict(OrderError):
    status_code = 409


class InsufficientStock(OrderError):
    status_code = 400


class InvalidTransition(OrderError):
    status_code = 400


def aggregate_status(items: List[Dict[str, Any]]) -> str:
    statuses = [i.get("itemStatus") for i in items]
    if statuses and all(s == "delivered" for s in statuses):
        return "completed"
    if statuses and all(s == "cancelled" for s in statuses):
        return "cancelled"
    return "processing"


def _money(value: float) -> str:
    return f"₹{value:g}"


class OrderWorkflow:
    """Order operations over a Mongo database and a notifier exposing `notify(phone, message)`."""

    def __init__(self, db: Database, notifier):
        self.db = db
        self.notifier = notifier

    # Lookups

    def _user(self, user_id: Any) -> Optional[Dict[str, Any]]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        return self.db["user"].find_one({"_id": oid}, {"name": 1, "phone": 1, "email": 1})

    def _order(self, order_id: Any) -> Dict[str, Any]:
        oid = to_object_id(order_id)
        order = self.db["order"].find_one({"_id": oid}) if oid else None
        if not order:
            raise NotFound("Order not found")
        return order

    def _restock(self, product_id: ObjectId, quantity: int) -> Optional[Dict[str, Any]]:
        return self.db["product"].find_one_and_update(
            {"_id": product_id},
            {"$inc": {"stock": quantity}, "$set": {"updatedAt": now()}},
            return_document=ReturnDocument.AFTER,
        )

    def _release(self, reserved: List[Tuple[ObjectId, int]]) -> None:
        for product_id, quantity in reserved:
            self._restock(product_id, quantity)
        if reserved:
            logger.warning("Released %d stock reservation(s) after failed placement", len(reserved))

    def _notify(self, phone: Optional[str], message: str) -> None:
        try:
            self.notifier.notify(phone, message)
        except Exception:
            logger.exception("Notifier failed for %s", phone)

    # Placement

    def place_order(self, buyer_id: Any, items: List[Dict[str, Any]], shipping_address: Optional[str],
                    payment_method: PaymentMethod = "COD", total_amount: Optional[float] = None) -> Dict[str, Any]:
        """Validate every line, reserve stock for all of them, then persist the order."""
        if not items:
            raise ValidationFailed("No items provided.")
        if not shipping_address or not str(shipping_address).strip():
            raise ValidationFailed("Shipping address is required.")

        buyer = self._user(buyer_id)
        if not buyer:
            raise NotFound("Buyer not found.")

        lines = []
        seen = set()
        for item in items:
            product_id = to_object_id(item.get("productId"))
            quantity = item.get("quantity")
            if product_id is None:
                raise ValidationFailed(f"Invalid product id: {item.get('productId')}")
            if not isinstance(quantity, int) or quantity < 1:
                raise ValidationFailed("Quantity must be at least 1")
            if product_id in seen:
                raise ValidationFailed("Each product may appear only once per order.")
            seen.add(product_id)

            product = self.db["product"].find_one({"_id": product_id})
            if not product:
                raise NotFound(f"Product not found: {product_id}")
            # a cancelled line (canReorder) no longer holds the product
            existing = self.db["order"].find_one({
                "userId": buyer["_id"],
                "orderStatus": {"$in": list(ACTIVE_ORDER_STATUSES)},
                "items": {"$elemMatch": {"productId": product_id, "itemStatus": {"$ne": "cancelled"}}},
            })
            if existing:
                raise Conflict(f'You already have an active order for "{product["name"]}".')
            if product.get("stock", 0) < quantity:
                raise InsufficientStock(f"Insufficient stock for {product['name']}")
            lines.append((product, quantity))

        reserved: List[Tuple[ObjectId, int]] = []
        reserved_products = []
        for product, quantity in lines:
            updated = self.db["product"].find_one_and_update(
                {"_id": product["_id"], "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}, "$set": {"updatedAt": now()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                self._release(reserved)
                raise InsufficientStock(f"Insufficient stock for {product['name']}")
            reserved.append((product["_id"], quantity))
            reserved_products.append((updated, quantity))

        sellers = self._sellers(p.get("sellerId") for p, _ in reserved_products)
        for product, _ in reserved_products:
            seller = sellers.get(product.get("sellerId"))
            if product["stock"] == 0 and seller:
                self._notify(
                    seller.get("phone"),
                    f'Hello {seller.get("name")}, your product "{product["name"]}" is OUT OF STOCK! Please restock.',
                )

        order_items = [
            OrderItem(
                product_id=product["_id"],
                seller_id=product.get("sellerId"),
                quantity=quantity,
                price_at_time=product["price"],
            )
            for product, quantity in reserved_products
        ]
        calculated_total = round(sum(i.price_at_time * i.quantity for i in order_items), 2)
        order = Order(
            user_id=buyer["_id"],
            items=order_items,
            total_amount=total_amount if total_amount else calculated_total,
            shipping_address=shipping_address,
            payment_method=payment_method,
            payment_status="completed" if payment_method == "Online" else "pending",
            order_status="processing",
        )
        doc = order.model_dump(by_alias=True)
        stamp = now()
        doc["createdAt"] = stamp
        doc["updatedAt"] = stamp
        try:
            doc["_id"] = self.db["order"].insert_one(doc).inserted_id
        except Exception:
            self._release(reserved)
            raise
        logger.info("Order %s placed by %s with %d item(s)", doc["_id"], buyer["_id"], len(order_items))

        for product, quantity in reserved_products:
            seller = sellers.get(product.get("sellerId"))
            amount = _money(product["price"] * quantity)
            if seller:
                self._notify(
                    seller.get("phone"),
                    "New Order Received!\n"
                    f"Buyer: {buyer.get('name')} ({buyer.get('phone') or 'N/A'})\n"
                    f"Product: {product['name']}\n"
                    f"Quantity: {quantity}\n"
                    f"Total: {amount}\n"
                    f"Updated Stock: {product['stock']}",
                )
            self._notify(
                buyer.get("phone"),
                "Order Placed Successfully!\n"
                f"Product: {product['name']}\n"
                f"Seller: {(seller or {}).get('name') or 'N/A'} ({(seller or {}).get('phone') or 'N/A'})\n"
                f"Amount: {amount}\n"
                f"Shipping: {shipping_address}\n"
                "Status: Processing",
            )
        return doc

    def _sellers(self, seller_ids) -> Dict[ObjectId, Dict[str, Any]]:
        ids = list({sid for sid in seller_ids if sid is not None})
        if not ids:
            return {}
        return {u["_id"]: u for u in self.db["user"].find({"_id": {"$in": ids}}, {"name": 1, "phone": 1})}

    # Item status transitions

    def update_item_status(self, order_id: Any, item_id: Any, status: ItemStatus, requester_id: Any) -> Dict[str, Any]:
        """Move one item along pending -> shipped -> delivered, or to cancelled, restoring its stock."""
        order = self._order(order_id)
        item_oid = to_object_id(item_id)
        item = next((i for i in order["items"] if i["_id"] == item_oid), None)
        if item is None:
            raise NotFound("Order item not found")

        requester = to_object_id(requester_id)
        is_seller = item.get("sellerId") is not None and item["sellerId"] == requester
        is_buyer = order["userId"] == requester
        if not (is_seller or is_buyer):
            raise Forbidden("Not authorized")

        current = item.get("itemStatus", "pending")
        if status not in ALLOWED_TRANSITIONS.get(current, ()):
            raise InvalidTransition(f"Cannot change item status from {current} to {status}")

        item["itemStatus"] = status
        if status == "cancelled":
            item["canReorder"] = True
        order["orderStatus"] = aggregate_status(order["items"])
        version = order.get("version", 0)
        order["version"] = version + 1
        order["updatedAt"] = now()
        result = self.db["order"].update_one(
            {"_id": order["_id"], "version": version},
            {"$set": {
                "items": order["items"],
                "orderStatus": order["orderStatus"],
                "version": order["version"],
                "updatedAt": order["updatedAt"],
            }},
        )
        if result.matched_count == 0:
            raise Conflict("Order was modified by another request, please retry")

        product = None
        if status == "cancelled":
            product = self._restock(item["productId"], item["quantity"])
        else:
            product = self.db["product"].find_one({"_id": item["productId"]}, {"name": 1, "stock": 1})
        logger.info("Order %s item %s: %s -> %s", order["_id"], item_oid, current, status)

        buyer = self._user(order["userId"]) or {}
        seller = self._user(item.get("sellerId")) or {}
        product_name = (product or {}).get("name", "N/A")
        if buyer.get("phone"):
            self._notify(
                buyer["phone"],
                "Order Update\n"
                f"Product: {product_name}\n"
                f"Seller: {seller.get('name') or 'N/A'}\n"
                f"Status: {status.upper()}",
            )
        if status == "cancelled" and seller.get("phone"):
            self._notify(
                seller["phone"],
                "Order Item Cancelled\n"
                f"Buyer: {buyer.get('name') or 'N/A'}\n"
                f"Product: {product_name}\n"
                f"Quantity: {item['quantity']}\n"
                f"Updated Stock: {(product or {}).get('stock', 'N/A')}",
            )
        return order

    # Deletion

    def delete_order(self, order_id: Any, requester_id: Any, requester_name: Optional[str] = None) -> None:
        """Remove a buyer's order that has not completed or shipped, returning its reserved stock."""
        order = self._order(order_id)
        if order["userId"] != to_object_id(requester_id):
            raise Forbidden("Unauthorized.")
        if order.get("orderStatus") in UNDELETABLE_ORDER_STATUSES:
            raise ValidationFailed("Cannot delete completed or shipped orders.")

        result = self.db["order"].delete_one({"_id": order["_id"], "version": order.get("version", 0)})
        if result.deleted_count == 0:
            raise Conflict("Order was modified by another request, please retry")
        logger.info("Order %s deleted by buyer %s", order["_id"], order["userId"])

        for item in order["items"]:
            # cancelled items already had their stock returned
            if item.get("itemStatus") == "cancelled":
                continue
            product = self._restock(item["productId"], item["quantity"])
            if not product:
                continue
            seller = self._user(product.get("sellerId")) or {}
            if seller.get("phone"):
                self._notify(
                    seller["phone"],
                    "Order Canceled\n"
                    f'Buyer {requester_name or "N/A"} canceled their order for "{product["name"]}".\n'
                    f"Restocked Quantity: {item['quantity']}\n"
                    f"Updated Stock: {product['stock']}",
                )

    # Reads

    def attach_details(self, orders: List[Dict[str, Any]], buyers: bool = False,
                       sellers: bool = False) -> List[Dict[str, Any]]:
        """Embed each item's product summary and, on request, the buyer and item sellers (name, email)."""
        items = [i for o in orders for i in o.get("items", [])]
        products = {
            p["_id"]: p
            for p in self.db["product"].find(
                {"_id": {"$in": list({i["productId"] for i in items})}}, {"name": 1, "price": 1, "images": 1})
        }
        user_ids = set()
        if buyers:
            user_ids.update(o["userId"] for o in orders)
        if sellers:
            user_ids.update(i.get("sellerId") for i in items)
        user_ids.discard(None)
        users = {}
        if user_ids:
            users = {u["_id"]: u for u in self.db["user"].find({"_id": {"$in": list(user_ids)}}, {"name": 1, "email": 1})}
        for order in orders:
            if buyers:
                order["buyer"] = users.get(order["userId"])
            for item in order.get("items", []):
                item["product"] = products.get(item["productId"])
                if sellers:
                    item["seller"] = users.get(item.get("sellerId"))
        return orders

    def buyer_orders(self, buyer_id: Any) -> List[Dict[str, Any]]:
        cursor = self.db["order"].find({"userId": to_object_id(buyer_id)}).sort("createdAt", -1)
        return self.attach_details(list(cursor))

    def seller_orders(self, seller_id: Any) -> List[Dict[str, Any]]:
        cursor = self.db["order"].find({"items.sellerId": to_object_id(seller_id)}).sort("createdAt", -1)
        return self.attach_details(list(cursor), buyers=True)

    def all_orders(self) -> List[Dict[str, Any]]:
        return self.attach_details(list(self.db["order"].find().sort("createdAt", -1)), buyers=True, sellers=True)

    def get_order(self, order_id: Any, requester: Dict[str, Any]) -> Dict[str, Any]:
        """Fetch one order; buyers see their own, sellers see orders holding their items, admins see all."""
        order = self._order(order_id)
        role = requester.get("role")
        uid = requester["_id"]
        if role == "buyer" and order["userId"] != uid:
            raise Forbidden("Not authorized to view this order")
        if role == "seller" and order["userId"] != uid and not any(i.get("sellerId") == uid for i in order["items"]):
            raise Forbidden("Not authorized to view this order")
        return self.attach_details([order], buyers=True, sellers=True)[0]

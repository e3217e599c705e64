"""Order creation, payment reconciliation and the order lifecycle.

Amounts sent to the gateway are integer subunits (paise); the currency-unit
values stored next to them are derived from those integers, never the other
way round.
"""

import logging
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .catalog import find_product, is_in_stock
from .errors import (
    AlreadyRated,
    Conflict,
    InvalidSignature,
    InvalidTransition,
    NotFound,
    OrderNotFound,
    OutOfStock,
    PersistenceError,
    ValidationError,
    field_error,
)
from .helpers import check_length, is_valid_email, isoformat, normalize_email, to_object_id

ORDER_STATUSES = ("pending", "paid", "processing", "delivered", "cancelled")
ADMIN_STATUSES = {"processing", "delivered", "cancelled"}
ALLOWED_TRANSITIONS = {
    "pending": {"paid", "cancelled"},
    "paid": {"processing", "cancelled"},
    "processing": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}
ACTIVE_ORDER_STATUSES = ("paid", "processing")

TAX_RATE_PERCENT = 18
MAX_ORDER_ITEMS = 20
MAX_ITEM_QUANTITY = 10

SHIPPING_FIELDS = (
    ("name", 2, 30, "Name"),
    ("phone", 10, 15, "Phone"),
    ("address", 10, 100, "Address"),
    ("city", 2, 50, "City"),
    ("state", 2, 50, "State"),
    ("pincode", 6, 10, "Pincode"),
)


def to_subunits(amount) -> int:
    return int(
        (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


def from_subunits(subunits: int) -> float:
    return float(Decimal(int(subunits)) / 100)


def calculate_totals(line_items: List[Dict]) -> Dict[str, int]:
    """Subtotal, tax and total for snapshotted line items, in subunits."""
    subtotal = sum(
        to_subunits(item["price"]) * int(item["quantity"]) for item in line_items
    )
    total = int(
        (Decimal(subtotal) * (100 + TAX_RATE_PERCENT) / 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )
    return {"subtotal": subtotal, "tax": total - subtotal, "total": total}


def parse_whole_number(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def parse_order_request(payload: Dict) -> Tuple[List[Dict], Dict[str, str], str]:
    errors: List[Dict[str, str]] = []

    raw_items = payload.get("items")
    items: List[Dict] = []
    if not isinstance(raw_items, list) or not raw_items:
        errors.append(field_error("items", "Items must be a non-empty array"))
        raw_items = []
    elif len(raw_items) > MAX_ORDER_ITEMS:
        errors.append(field_error("items", "Too many items in order"))
        raw_items = []

    for index, entry in enumerate(raw_items):
        prefix = f"items[{index}]"
        if not isinstance(entry, dict):
            errors.append(field_error(prefix, "Each item must be an object"))
            continue

        product_id = str(entry.get("productId") or entry.get("product_id") or "").strip()
        if not to_object_id(product_id):
            errors.append(field_error(f"{prefix}.productId", "Valid product ID required"))

        quantity = parse_whole_number(entry.get("quantity", 1))
        if quantity is None or quantity < 1:
            errors.append(field_error(f"{prefix}.quantity", "Quantity must be at least 1"))
        elif quantity > MAX_ITEM_QUANTITY:
            errors.append(field_error(f"{prefix}.quantity", "Quantity too high for item"))

        selected_size = check_length(
            errors,
            f"{prefix}.selectedSize",
            entry.get("selectedSize") or entry.get("selected_size") or "",
            0,
            50,
            "Selected size",
        )
        items.append(
            {
                "product_id": product_id,
                "quantity": quantity,
                "selected_size": selected_size,
            }
        )

    raw_shipping = payload.get("shippingAddress") or payload.get("shipping_address")
    shipping: Dict[str, str] = {}
    if not isinstance(raw_shipping, dict):
        errors.append(field_error("shippingAddress", "Shipping address is required"))
    else:
        for field, minimum, maximum, label in SHIPPING_FIELDS:
            shipping[field] = check_length(
                errors,
                f"shippingAddress.{field}",
                raw_shipping.get(field),
                minimum,
                maximum,
                label,
            )
        email = normalize_email(raw_shipping.get("email"))
        if not is_valid_email(email):
            errors.append(field_error("shippingAddress.email", "Valid email is required"))
        elif len(email) > 50:
            errors.append(
                field_error("shippingAddress.email", "Email must be at most 50 characters")
            )
        shipping["email"] = email

    notes = check_length(errors, "notes", payload.get("notes") or "", 0, 500, "Notes")

    if errors:
        raise ValidationError("Validation failed", errors)

    return items, shipping, notes


def serialize_order(order_document, include_customer: bool = True):
    if not order_document:
        return None

    items = []
    for entry in order_document.get("items") or []:
        price = float(entry.get("price") or 0)
        quantity = int(entry.get("quantity") or 0)
        items.append(
            {
                "productId": entry.get("product_id", ""),
                "name": entry.get("name", "") or "Item",
                "image": entry.get("image", "") or "",
                "quantity": quantity,
                "price": price,
                "lineTotal": from_subunits(to_subunits(price) * quantity),
                "selectedSize": entry.get("selected_size", "") or "",
                "rating": entry.get("rating"),
            }
        )

    serialized = {
        "id": str(order_document.get("_id")),
        "items": items,
        "itemCount": sum(item["quantity"] for item in items),
        "subtotal": order_document.get("subtotal"),
        "taxAmount": order_document.get("tax_amount"),
        "totalAmount": order_document.get("total_amount"),
        "amount": order_document.get("amount"),
        "currency": order_document.get("currency", ""),
        "status": order_document.get("status", ""),
        "gatewayOrderId": order_document.get("gateway_order_id", ""),
        "paymentId": order_document.get("payment_id") or None,
        "notes": order_document.get("notes", "") or "",
        "paidAt": isoformat(order_document.get("paid_at")),
        "createdAt": isoformat(order_document.get("created_at")),
        "updatedAt": isoformat(order_document.get("updated_at")),
    }
    if include_customer:
        serialized["userId"] = str(order_document.get("user_id") or "")
        serialized["shippingAddress"] = order_document.get("shipping_address") or {}
    return serialized


class OrderService:
    """Turns carts into orders and reconciles them with the payment gateway."""

    def __init__(
        self,
        db,
        gateway,
        notifier,
        currency: str = "INR",
        logger: Optional[logging.Logger] = None,
        clock=None,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.currency = currency
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock or datetime.utcnow

    def create_order(self, user: Dict, payload: Dict) -> Dict[str, object]:
        items, shipping, notes = parse_order_request(payload)

        line_items: List[Dict] = []
        for item in items:
            product = find_product(self.db, item["product_id"])
            if not is_in_stock(product):
                raise OutOfStock(f"Product out of stock: {product.get('name', '')}")

            image = product.get("image") or {}
            line_items.append(
                {
                    "product_id": str(product["_id"]),
                    "name": product.get("name", ""),
                    "image": image.get("url", "") if isinstance(image, dict) else "",
                    "quantity": item["quantity"],
                    "price": round(float(product.get("price") or 0), 2),
                    "selected_size": item["selected_size"],
                    "rating": None,
                }
            )

        totals = calculate_totals(line_items)
        receipt = f"order_{int(time.time() * 1000)}"
        session = self.gateway.create_session(
            totals["total"],
            self.currency,
            receipt,
            {"userId": str(user["_id"]), "itemCount": str(len(line_items))},
        )
        gateway_order_id = str(session["id"])

        now = self.clock()
        order_document = {
            "user_id": user["_id"],
            "items": line_items,
            "subtotal": from_subunits(totals["subtotal"]),
            "tax_amount": from_subunits(totals["tax"]),
            "total_amount": from_subunits(totals["total"]),
            "amount": totals["total"],
            "currency": self.currency,
            "gateway_order_id": gateway_order_id,
            "receipt": receipt,
            "shipping_address": shipping,
            "notes": notes,
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = self.db.orders.insert_one(order_document)
        except PyMongoError as exc:
            self.logger.error(
                "Gateway order %s was created but the order for user %s could not be "
                "saved: %s",
                gateway_order_id,
                user["_id"],
                exc,
            )
            raise PersistenceError("Failed to create order") from exc
        order_document["_id"] = result.inserted_id

        self.logger.info(
            "Created order %s (gateway order %s, %s %s)",
            result.inserted_id,
            gateway_order_id,
            totals["total"],
            self.currency,
        )
        return {
            "gateway_order_id": gateway_order_id,
            "amount": totals["total"],
            "currency": self.currency,
            "key_id": self.gateway.key_id,
            "order": order_document,
        }

    def verify_payment(
        self,
        gateway_order_id: str,
        payment_id: str,
        signature: str,
        user_id=None,
    ) -> Dict:
        errors = []
        for field, value in (
            ("razorpay_order_id", gateway_order_id),
            ("razorpay_payment_id", payment_id),
            ("razorpay_signature", signature),
        ):
            if not str(value or "").strip():
                errors.append(field_error(field, f"{field} is required"))
        if errors:
            raise ValidationError("Validation failed", errors)

        if not self.gateway.verify_signature(gateway_order_id, payment_id, signature):
            self.logger.warning(
                "Rejected payment signature for gateway order %s", gateway_order_id
            )
            raise InvalidSignature()

        query: Dict[str, object] = {"gateway_order_id": gateway_order_id}
        if user_id is not None:
            query["user_id"] = user_id
        order = self.db.orders.find_one(query)
        if not order:
            raise OrderNotFound()

        if order.get("status") != "pending":
            self.logger.info(
                "Order %s already %s; skipping payment transition",
                order["_id"],
                order.get("status"),
            )
            return order

        now = self.clock()
        updated = self.db.orders.find_one_and_update(
            {"_id": order["_id"], "status": "pending"},
            {
                "$set": {
                    "status": "paid",
                    "payment_id": payment_id,
                    "payment_signature": signature,
                    "paid_at": now,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            return self.db.orders.find_one({"_id": order["_id"]})

        self.logger.info("Payment %s verified for order %s", payment_id, order["_id"])
        self.notify("order-confirmation", updated)
        return updated

    def update_status(self, order_id, new_status: str) -> Dict:
        status = str(new_status or "").strip().lower()
        if status not in ORDER_STATUSES:
            raise ValidationError(
                "Validation failed", [field_error("status", "Invalid order status")]
            )
        if status not in ADMIN_STATUSES:
            raise InvalidTransition(
                "Only processing, delivered or cancelled can be set manually."
            )

        order = self.get_order(order_id)
        current = order.get("status")
        if current == status:
            return order
        if status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Cannot move an order from {current} to {status}.")

        now = self.clock()
        updated = self.db.orders.find_one_and_update(
            {"_id": order["_id"], "status": current},
            {"$set": {"status": status, "updated_at": now, f"{status}_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise Conflict("The order changed while updating. Please reload and retry.")

        if status == "delivered":
            self.notify("delivery", updated)
        return updated

    def rate_item(
        self,
        user_id,
        order_id,
        product_id: str,
        rating,
        item_index: Optional[int] = None,
    ) -> Dict:
        errors = []
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            errors.append(field_error("rating", "Rating must be between 1 and 5"))
        product_id = str(product_id or "").strip()
        if not to_object_id(product_id):
            errors.append(field_error("productId", "Valid product ID required"))
        if errors:
            raise ValidationError("Validation failed", errors)

        order = self.get_order(order_id, user_id=user_id)
        if order.get("status") != "delivered":
            raise Conflict("Order not delivered yet")

        items = order.get("items") or []
        if item_index is not None:
            if (
                not 0 <= item_index < len(items)
                or items[item_index].get("product_id") != product_id
            ):
                raise NotFound("Product not found in this order")
            if items[item_index].get("rating") is not None:
                raise AlreadyRated()
        else:
            matching = [
                index
                for index, item in enumerate(items)
                if item.get("product_id") == product_id
            ]
            if not matching:
                raise NotFound("Product not found in this order")
            unrated = [index for index in matching if items[index].get("rating") is None]
            if not unrated:
                raise AlreadyRated()
            item_index = unrated[0]

        now = self.clock()
        result = self.db.orders.update_one(
            {
                "_id": order["_id"],
                "status": "delivered",
                f"items.{item_index}.rating": None,
            },
            {
                "$set": {
                    f"items.{item_index}.rating": rating,
                    f"items.{item_index}.rated_at": now,
                    "updated_at": now,
                }
            },
        )
        if result.modified_count == 0:
            raise AlreadyRated()

        self.recompute_product_rating(product_id)
        return self.db.orders.find_one({"_id": order["_id"]})

    def recompute_product_rating(self, product_id: str) -> Tuple[float, int]:
        """Recompute a product's rating from every rated line item."""
        total = 0
        count = 0
        for order in self.db.orders.find({"items.product_id": product_id}, {"items": 1}):
            for item in order.get("items") or []:
                if item.get("product_id") == product_id and item.get("rating") is not None:
                    total += int(item["rating"])
                    count += 1

        average = 0.0
        if count:
            average = float(
                (Decimal(total) / Decimal(count)).quantize(
                    Decimal("0.1"), rounding=ROUND_HALF_UP
                )
            )

        self.db.products.update_one(
            {"_id": to_object_id(product_id)},
            {"$set": {"rating": average, "reviews": count, "updated_at": self.clock()}},
        )
        return average, count

    def get_order(self, order_id, user_id=None) -> Dict:
        object_id = to_object_id(order_id)
        if not object_id:
            raise OrderNotFound()
        query: Dict[str, object] = {"_id": object_id}
        if user_id is not None:
            query["user_id"] = user_id
        order = self.db.orders.find_one(query)
        if not order:
            raise OrderNotFound()
        return order

    def list_orders(self, user_id, page: int = 1, limit: int = 10):
        return self._page_orders({"user_id": user_id}, page, limit)

    def list_all_orders(self, status: Optional[str] = None, page: int = 1, limit: int = 50):
        query: Dict[str, object] = {}
        status = str(status or "").strip().lower()
        if status:
            if status not in ORDER_STATUSES:
                raise ValidationError(
                    "Validation failed", [field_error("status", "Invalid order status")]
                )
            query["status"] = status
        return self._page_orders(query, page, limit)

    def _page_orders(self, query: Dict, page: int, limit: int):
        total = self.db.orders.count_documents(query)
        cursor = (
            self.db.orders.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return list(cursor), total

    def notify(self, template_name: str, order_document: Dict) -> bool:
        shipping = order_document.get("shipping_address") or {}
        recipient = shipping.get("email", "")
        try:
            result = self.notifier.send(
                template_name,
                recipient,
                {"name": shipping.get("name", ""), "order": serialize_order(order_document)},
            )
        except Exception:
            self.logger.exception(
                "Failed to send %s email for order %s", template_name, order_document.get("_id")
            )
            return False

        if not result.get("success"):
            self.logger.error(
                "Failed to send %s email for order %s: %s",
                template_name,
                order_document.get("_id"),
                result.get("error"),
            )
            return False
        return True

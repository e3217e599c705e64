import re
from typing import Dict, List, Optional

from .errors import ProductNotFound, ValidationError, field_error
from .helpers import check_length, isoformat, parse_bool, safe_float, to_object_id

PRODUCT_CATEGORIES = ("painting", "apparel", "accessories")
MAX_ADDITIONAL_IMAGES = 2
FEATURED_LIST_LIMIT = 8

PRODUCT_SORT_OPTIONS = {
    "price-low": [("price", 1)],
    "price-high": [("price", -1)],
    "rating": [("rating", -1)],
    "name": [("name", 1)],
}
DEFAULT_PRODUCT_SORT = [("created_at", -1), ("_id", -1)]


def parse_price(errors: List[Dict[str, str]], field: str, raw_value, label: str):
    if raw_value is None or (isinstance(raw_value, str) and not raw_value.strip()):
        return None
    try:
        value = round(float(raw_value), 2)
    except (TypeError, ValueError):
        errors.append(field_error(field, f"{label} must be a valid number"))
        return None
    if value <= 0:
        errors.append(field_error(field, f"{label} must be greater than zero"))
        return None
    return value


def validate_product_fields(payload: Dict, additional_image_count: int = 0) -> Dict:
    """Validate product fields and return the normalized values.

    Enforces every product invariant before anything is persisted: bounded
    text fields, a positive price, ``discount_price < price``, the closed
    category set and at most two additional images.
    """
    errors: List[Dict[str, str]] = []

    name = check_length(errors, "name", payload.get("name"), 1, 100, "Name")
    description = check_length(
        errors, "description", payload.get("description"), 1, 2000, "Description"
    )

    price = parse_price(errors, "price", payload.get("price"), "Price")
    if price is None and not any(error["field"] == "price" for error in errors):
        errors.append(field_error("price", "Price is required"))

    discount_price = parse_price(
        errors, "discount_price", payload.get("discount_price"), "Discount price"
    )
    if price is not None and discount_price is not None and discount_price >= price:
        errors.append(
            field_error(
                "discount_price", "Discount price must be less than regular price"
            )
        )

    category = str(payload.get("category") or "").strip().lower()
    if category not in PRODUCT_CATEGORIES:
        errors.append(field_error("category", "Invalid category"))

    size = check_length(errors, "size", payload.get("size") or "", 0, 50, "Size")
    material = check_length(
        errors, "material", payload.get("material") or "", 0, 100, "Material"
    )

    if additional_image_count > MAX_ADDITIONAL_IMAGES:
        errors.append(
            field_error(
                "additional_images",
                "Maximum 2 additional images allowed (total 3 images including primary)",
            )
        )

    if errors:
        raise ValidationError("Validation failed", errors)

    return {
        "name": name,
        "description": description,
        "price": price,
        "discount_price": discount_price,
        "category": category,
        "size": size,
        "material": material,
        "featured": parse_bool(payload.get("featured"), False),
        "in_stock": parse_bool(payload.get("in_stock"), True),
    }


def find_product(db, product_id) -> Dict:
    object_id = to_object_id(product_id)
    product_document = db.products.find_one({"_id": object_id}) if object_id else None
    if not product_document:
        raise ProductNotFound(f"Product not found: {product_id}")
    return product_document


def is_in_stock(product_document: Optional[Dict]) -> bool:
    return bool(product_document and product_document.get("in_stock", True))


def build_product_query(args, include_out_of_stock: bool = False) -> Dict:
    query: Dict[str, object] = {}

    category = str(args.get("category") or "").strip().lower()
    if category:
        query["category"] = category

    search = str(args.get("search") or "").strip()
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]

    price_filter: Dict[str, float] = {}
    if args.get("minPrice") not in (None, ""):
        price_filter["$gte"] = safe_float(args.get("minPrice"), 0.0)
    if args.get("maxPrice") not in (None, ""):
        price_filter["$lte"] = safe_float(args.get("maxPrice"), 0.0)
    if price_filter:
        query["price"] = price_filter

    if parse_bool(args.get("featured"), False):
        query["featured"] = True

    if not include_out_of_stock:
        query["in_stock"] = True

    return query


def product_sort(value: Optional[str]):
    return PRODUCT_SORT_OPTIONS.get(str(value or "").strip(), DEFAULT_PRODUCT_SORT)


def serialize_media(entry) -> Optional[Dict[str, object]]:
    if not isinstance(entry, dict) or not entry.get("url"):
        return None
    return {key: value for key, value in entry.items() if value is not None}


def serialize_product(product_document):
    if not product_document:
        return None

    additional_images = [
        serialized
        for serialized in (
            serialize_media(entry)
            for entry in product_document.get("additional_images") or []
        )
        if serialized
    ]
    primary_image = serialize_media(product_document.get("image"))
    all_images = ([primary_image] if primary_image else []) + additional_images

    return {
        "id": str(product_document.get("_id")),
        "name": product_document.get("name", "") or "",
        "description": product_document.get("description", "") or "",
        "price": round(safe_float(product_document.get("price"), 0.0), 2),
        "discountPrice": product_document.get("discount_price"),
        "image": primary_image.get("url") if primary_image else "",
        "additionalImages": additional_images,
        "allImages": all_images,
        "video": serialize_media(product_document.get("video")),
        "category": product_document.get("category", "") or "",
        "size": product_document.get("size", "") or "",
        "material": product_document.get("material", "") or "",
        "inStock": is_in_stock(product_document),
        "rating": round(safe_float(product_document.get("rating"), 0.0), 1),
        "reviews": int(product_document.get("reviews") or 0),
        "featured": bool(product_document.get("featured")),
        "createdAt": isoformat(product_document.get("created_at")),
        "updatedAt": isoformat(product_document.get("updated_at")),
    }

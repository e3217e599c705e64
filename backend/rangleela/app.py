import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from urllib.parse import urlparse

from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
    set_access_cookies,
    unset_jwt_cookies,
)
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .accounts import (
    OTP_EXPIRATION_MINUTES,
    AdminPolicy,
    GoogleIdentityVerifier,
    authenticate_password,
    check_password,
    confirm_pending_registration,
    hash_password,
    record_successful_login,
    serialize_user,
    start_pending_registration,
    validate_credentials,
    validate_password_field,
    validate_signup,
)
from .catalog import (
    FEATURED_LIST_LIMIT,
    build_product_query,
    find_product,
    product_sort,
    serialize_product,
    validate_product_fields,
)
from .config import Settings
from .errors import (
    AuthenticationError,
    NotFound,
    PermissionDenied,
    PersistenceError,
    StoreError,
    UpstreamError,
    ValidationError,
    field_error,
)
from .helpers import (
    build_pagination,
    check_length,
    is_valid_email,
    isoformat,
    normalize_email,
    pagination_args,
    to_object_id,
)
from .media import MediaStore, media_ids_of
from .notifications import Notifier
from .orders import (
    ACTIVE_ORDER_STATUSES,
    OrderService,
    parse_whole_number,
    serialize_order,
)
from .payments import RazorpayGateway

CONTACT_SUBJECTS = (
    "general",
    "order",
    "shipping",
    "return",
    "custom",
    "artist",
    "wholesale",
    "press",
    "other",
)
CONTACT_STATUSES = ("new", "read", "replied", "resolved")
MAX_CONTACT_IMAGES = 3
HERO_CATEGORIES = ("gallery", "painting", "apparel", "accessories")
REVENUE_STATUSES = ("paid", "processing", "delivered")


def create_app(
    settings: Optional[Settings] = None,
    db=None,
    gateway=None,
    notifier=None,
    media_store=None,
    google_verifier=None,
) -> Flask:
    """Create and configure the Flask application.

    Collaborators (database, payment gateway, notifier, media store, Google
    verifier) are built from ``settings`` unless passed in explicitly.
    """
    settings = settings or Settings.from_env()
    app = Flask(__name__)
    app.logger.setLevel(settings.log_level)

    # Honor proxy headers so cookies and upload links keep the public origin.
    if settings.trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=settings.trusted_proxy_hops,
            x_proto=settings.trusted_proxy_hops,
            x_host=settings.trusted_proxy_hops,
            x_port=settings.trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = settings.jwt_secret_key
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=settings.jwt_expires_days)
    app.config["JWT_TOKEN_LOCATION"] = ["headers", "cookies"]
    app.config["JWT_ACCESS_COOKIE_NAME"] = "authToken"
    app.config["JWT_COOKIE_SECURE"] = settings.is_production
    app.config["JWT_COOKIE_SAMESITE"] = "Lax"
    app.config["JWT_SESSION_COOKIE"] = False
    app.config["MONGO_URI"] = settings.mongo_uri
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_size_mb * 1024 * 1024

    upload_directory = settings.upload_folder or os.path.join(app.root_path, "uploads")

    # --- Initialize extensions ---
    CORS(app, supports_credentials=True, origins=settings.cors_origins or "*")
    jwt = JWTManager(app)

    if db is None:
        mongo = PyMongo(app)
        db = mongo.db

    try:
        db.users.create_index("email", unique=True)
        db.email_verifications.create_index("email", unique=True)
        db.email_verifications.create_index("expires_at", expireAfterSeconds=0)
        db.orders.create_index("gateway_order_id", unique=True)
        db.orders.create_index([("user_id", 1), ("created_at", -1)])
        db.orders.create_index("items.product_id")
        db.products.create_index([("category", 1), ("featured", 1)])
        db.products.create_index([("created_at", -1)])
        db.contacts.create_index([("status", 1), ("created_at", -1)])
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    def render_email(template_name: str, **context) -> str:
        template = app.jinja_env.get_template(f"emails/{template_name}.html")
        return template.render(**context)

    media_store = media_store or MediaStore(
        upload_directory, settings.public_base_url, logger=app.logger
    )
    notifier = notifier or Notifier(
        settings.resend_api_key,
        settings.resend_sender_email,
        render_email,
        logger=app.logger,
        timeout=settings.notification_timeout_seconds,
    )
    gateway = gateway or RazorpayGateway(
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        base_url=settings.razorpay_base_url,
        timeout=settings.gateway_timeout_seconds,
        logger=app.logger,
    )
    google_verifier = google_verifier or GoogleIdentityVerifier(
        settings.google_client_id,
        timeout=settings.gateway_timeout_seconds,
        logger=app.logger,
    )
    admin_policy = AdminPolicy(settings.admin_emails)
    order_service = OrderService(
        db,
        gateway,
        notifier,
        currency=settings.payment_currency,
        logger=app.logger,
    )

    # --- Error handling ---

    @jwt.unauthorized_loader
    def missing_token_response(reason: str):
        return jsonify({"message": "Access token required"}), 401

    @jwt.invalid_token_loader
    def invalid_token_response(reason: str):
        return jsonify({"message": "Invalid token"}), 401

    @jwt.expired_token_loader
    def expired_token_response(jwt_header, jwt_payload):
        return jsonify({"message": "Token expired"}), 401

    @app.errorhandler(StoreError)
    def handle_store_error(exc: StoreError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return jsonify({"message": exc.description}), exc.code
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        message = "Internal server error" if settings.is_production else str(exc)
        return jsonify({"message": message}), 500

    # --- Helpers ---

    def request_payload() -> Dict:
        payload = request.form.to_dict() if request.form else {}
        if not payload:
            payload = request.get_json(silent=True) or {}
        return payload

    def load_current_user() -> Dict:
        user_id = to_object_id(get_jwt_identity())
        user = db.users.find_one({"_id": user_id}) if user_id else None
        if not user:
            raise AuthenticationError("User not found")
        if not user.get("is_verified"):
            raise AuthenticationError("Account not verified")
        return user

    def require_admin_user() -> Dict:
        user = load_current_user()
        if not admin_policy.is_admin(user):
            raise PermissionDenied("Admin access required")
        return user

    def issue_session(user_document: Dict, message: str, status: int = 200):
        token = create_access_token(identity=str(user_document["_id"]))
        response = jsonify(
            {
                "message": message,
                "access_token": token,
                "user": serialize_user(
                    user_document, admin_policy.is_admin(user_document)
                ),
            }
        )
        set_access_cookies(response, token)
        return response, status

    def send_best_effort(template_name: str, recipient: str, data: Dict) -> bool:
        result = notifier.send(template_name, recipient, data)
        if not result.get("success"):
            app.logger.error(
                "Failed to send %s email to %s: %s",
                template_name,
                recipient,
                result.get("error"),
            )
            return False
        return True

    def upload_files(files: List, kind: str, field: str) -> List[Dict]:
        uploaded: List[Dict] = []
        for file_storage in files:
            try:
                uploaded.append(media_store.upload(file_storage, kind, field))
            except StoreError:
                media_store.delete_many(entry["id"] for entry in uploaded)
                raise
        return uploaded

    def present_files(field: str) -> List:
        return [
            file_storage
            for file_storage in request.files.getlist(field)
            if file_storage and getattr(file_storage, "filename", "")
        ]

    def media_reference(entry: Dict, extended: bool = False) -> Dict:
        reference = {"url": entry["url"], "id": entry["id"]}
        if extended:
            reference["file_size"] = entry.get("file_size")
            reference["mime_type"] = entry.get("mime_type")
        return reference

    def insert_with_media(collection, document: Dict, uploaded: List[Dict]):
        try:
            result = collection.insert_one(document)
        except PyMongoError as exc:
            app.logger.error("Insert into %s failed: %s", collection.name, exc)
            media_store.delete_many(entry["id"] for entry in uploaded)
            raise PersistenceError() from exc
        document["_id"] = result.inserted_id
        return document

    def release_and_delete(collection, document: Dict) -> None:
        media_store.delete_many(media_ids_of(document))
        collection.delete_one({"_id": document["_id"]})

    def serialize_contact(contact_document):
        if not contact_document:
            return None
        return {
            "id": str(contact_document.get("_id")),
            "name": contact_document.get("name", "") or "",
            "email": contact_document.get("email", "") or "",
            "subject": contact_document.get("subject", "") or "",
            "message": contact_document.get("message", "") or "",
            "images": [
                {
                    "url": entry.get("url", ""),
                    "id": entry.get("id", ""),
                    "filename": entry.get("filename", ""),
                }
                for entry in contact_document.get("images") or []
            ],
            "status": contact_document.get("status", "new"),
            "createdAt": isoformat(contact_document.get("created_at")),
            "updatedAt": isoformat(contact_document.get("updated_at")),
        }

    def serialize_hero_image(hero_document):
        if not hero_document:
            return None
        image = hero_document.get("image") or {}
        return {
            "id": str(hero_document.get("_id")),
            "title": hero_document.get("title", "") or "",
            "subtitle": hero_document.get("subtitle", "") or "",
            "category": hero_document.get("category", "painting"),
            "image": image.get("url", ""),
            "link": hero_document.get("link", "") or "",
            "order": int(hero_document.get("order") or 0),
            "createdAt": isoformat(hero_document.get("created_at")),
        }

    def serialize_orders_with_customers(order_documents) -> List[Dict]:
        user_ids = {
            order.get("user_id") for order in order_documents if order.get("user_id")
        }
        users: Dict = {}
        if user_ids:
            cursor = db.users.find(
                {"_id": {"$in": list(user_ids)}}, {"name": 1, "email": 1}
            )
            users = {user["_id"]: user for user in cursor}
        serialized_orders = []
        for order in order_documents:
            serialized = serialize_order(order)
            customer = users.get(order.get("user_id")) or {}
            serialized["customer"] = {
                "name": customer.get("name", ""),
                "email": customer.get("email", ""),
            }
            serialized_orders.append(serialized)
        return serialized_orders

    def validate_hero_fields(payload: Dict, existing: Optional[Dict] = None) -> Dict:
        existing = existing or {}
        errors: List[Dict[str, str]] = []

        category = str(
            payload.get("category") or existing.get("category") or "painting"
        ).strip().lower()
        if category not in HERO_CATEGORIES:
            errors.append(field_error("category", "Invalid category"))

        title_source = payload.get("title", existing.get("title", ""))
        title = check_length(errors, "title", title_source or "", 0, 100, "Title")
        if not title and category != "gallery":
            errors.append(field_error("title", "Title is required"))

        subtitle = check_length(
            errors,
            "subtitle",
            payload.get("subtitle", existing.get("subtitle", "")) or "",
            0,
            200,
            "Subtitle",
        )
        link = check_length(
            errors,
            "link",
            payload.get("link", existing.get("link", "")) or "",
            0,
            500,
            "Link",
        )

        raw_order = payload.get("order", existing.get("order", 0))
        order_value = parse_whole_number(raw_order if raw_order not in (None, "") else 0)
        if order_value is None:
            errors.append(field_error("order", "Order must be a whole number"))

        if errors:
            raise ValidationError("Validation failed", errors)

        return {
            "title": title,
            "subtitle": subtitle,
            "category": category,
            "link": link,
            "order": order_value,
        }

    # --- ROUTES ---

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(media_store.upload_folder, filename)

    @app.route("/health")
    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok"}), 200

    # Auth
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        fields = validate_signup(payload)
        email = fields["email"]

        if db.users.find_one({"email": email}):
            return jsonify({"message": "User already exists with this email"}), 400

        otp, expires_at = start_pending_registration(
            db, email, fields["name"], fields["password"]
        )
        result = notifier.send(
            "verification-code",
            email,
            {
                "name": fields["name"],
                "code": otp,
                "expires_in_minutes": OTP_EXPIRATION_MINUTES,
            },
        )
        if not result.get("success"):
            db.email_verifications.delete_one({"email": email})
            app.logger.error(
                "Verification email failed for %s: %s", email, result.get("error")
            )
            return (
                jsonify(
                    {
                        "message": "Failed to send verification email. Please try again."
                    }
                ),
                502,
            )

        return (
            jsonify(
                {
                    "message": "Registration successful! Please check your email for verification code.",
                    "email": email,
                    "requires_verification": True,
                    "expires_in_seconds": OTP_EXPIRATION_MINUTES * 60,
                    "expires_at": isoformat(expires_at),
                }
            ),
            201,
        )

    @app.route("/api/auth/verify", methods=["POST"])
    def verify_registration():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        code = str(payload.get("code", "")).strip()

        if not is_valid_email(email):
            raise ValidationError(
                "Validation failed", [field_error("email", "Valid email required")]
            )

        record = confirm_pending_registration(db, email, code)
        if db.users.find_one({"email": email}):
            return jsonify({"message": "User already exists with this email"}), 400

        now = datetime.utcnow()
        user_document = {
            "email": email,
            "name": record.get("name", ""),
            "password_hash": record.get("password_hash"),
            "avatar": "",
            "is_verified": True,
            "login_attempts": 0,
            "last_login_at": now,
            "created_at": now,
            "updated_at": now,
        }
        try:
            user_document["_id"] = db.users.insert_one(user_document).inserted_id
        except DuplicateKeyError:
            return jsonify({"message": "User already exists with this email"}), 400

        send_best_effort("welcome", email, {"name": user_document["name"]})

        return issue_session(
            user_document, "Email verified successfully! Welcome to RangLeela!", 201
        )

    @app.route("/api/auth/resend-verification", methods=["POST"])
    def resend_verification():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        if not is_valid_email(email):
            raise ValidationError(
                "Valid email required", [field_error("email", "Valid email required")]
            )

        record = db.email_verifications.find_one({"email": email})
        if not record:
            raise NotFound("No pending registration found for this email.")

        otp, expires_at = start_pending_registration(
            db, email, record.get("name", ""), None
        )
        result = notifier.send(
            "verification-code",
            email,
            {
                "name": record.get("name", ""),
                "code": otp,
                "expires_in_minutes": OTP_EXPIRATION_MINUTES,
            },
        )
        if not result.get("success"):
            app.logger.error(
                "Verification email resend failed for %s: %s",
                email,
                result.get("error"),
            )
            return jsonify({"message": "Failed to send verification email"}), 502

        return jsonify(
            {
                "message": "Verification code sent successfully!",
                "expires_in_seconds": OTP_EXPIRATION_MINUTES * 60,
                "expires_at": isoformat(expires_at),
            }
        )

    @app.route("/api/auth/google", methods=["POST"])
    def google_login():
        payload = request.get_json(silent=True) or {}
        credential = str(payload.get("credential") or "").strip()
        if not credential:
            return jsonify({"message": "Google credential required"}), 400

        identity = google_verifier.verify(credential)
        now = datetime.utcnow()

        user = db.users.find_one(
            {"$or": [{"email": identity["email"]}, {"google_id": identity["google_id"]}]}
        )
        if user:
            updates: Dict[str, object] = {
                "last_login_at": now,
                "login_attempts": 0,
                "updated_at": now,
            }
            if not user.get("google_id"):
                updates["google_id"] = identity["google_id"]
                updates["is_verified"] = True
                updates["avatar"] = identity["picture"] or user.get("avatar", "")
            user = db.users.find_one_and_update(
                {"_id": user["_id"]},
                {"$set": updates, "$unset": {"lock_until": ""}},
                return_document=ReturnDocument.AFTER,
            )
            return issue_session(user, "Login successful!")

        user = {
            "email": identity["email"],
            "name": identity["name"],
            "google_id": identity["google_id"],
            "avatar": identity["picture"],
            "is_verified": True,
            "login_attempts": 0,
            "last_login_at": now,
            "created_at": now,
            "updated_at": now,
        }
        user["_id"] = db.users.insert_one(user).inserted_id
        send_best_effort("welcome", user["email"], {"name": user["name"]})
        return issue_session(user, "Account created successfully!", 201)

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        credentials = validate_credentials(payload)

        user = authenticate_password(db, credentials["email"], credentials["password"])
        if not user.get("is_verified"):
            return (
                jsonify(
                    {
                        "message": "Please verify your email before logging in",
                        "needs_verification": True,
                        "email": user.get("email"),
                    }
                ),
                401,
            )

        user = record_successful_login(db, user)
        app.logger.info("User %s signed in", user["_id"])
        return issue_session(user, "Login successful!")

    @app.route("/api/auth/profile", methods=["GET", "PUT"])
    @jwt_required()
    def manage_profile():
        user = load_current_user()

        if request.method == "GET":
            return jsonify({"user": serialize_user(user, admin_policy.is_admin(user))})

        payload = request.get_json(silent=True) or {}
        errors: List[Dict[str, str]] = []
        name = check_length(errors, "name", payload.get("name"), 2, 50, "Name")
        avatar = str(payload.get("avatar") or "").strip()
        if avatar:
            parsed = urlparse(avatar)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(field_error("avatar", "Avatar must be a valid URL"))
        if errors:
            raise ValidationError("Validation failed", errors)

        updates: Dict[str, object] = {"name": name, "updated_at": datetime.utcnow()}
        if avatar:
            updates["avatar"] = avatar
        user = db.users.find_one_and_update(
            {"_id": user["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        return jsonify(
            {
                "message": "Profile updated successfully",
                "user": serialize_user(user, admin_policy.is_admin(user)),
            }
        )

    @app.route("/api/auth/change-password", methods=["PUT"])
    @jwt_required()
    def change_password():
        user = load_current_user()
        payload = request.get_json(silent=True) or {}

        errors: List[Dict[str, str]] = []
        new_password = validate_password_field(
            errors, payload.get("newPassword"), "newPassword", "New password"
        )
        if errors:
            raise ValidationError("Validation failed", errors)

        current_password = str(payload.get("currentPassword") or "")
        now = datetime.utcnow()

        if user.get("google_id") and not user.get("password_hash") and not current_password:
            db.users.update_one(
                {"_id": user["_id"]},
                {"$set": {"password_hash": hash_password(new_password), "updated_at": now}},
            )
            return jsonify({"message": "Password created successfully"})

        if not current_password:
            return jsonify({"message": "Current password is required"}), 400

        if not check_password(current_password, user.get("password_hash")):
            return jsonify({"message": "Current password is incorrect"}), 400

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password_hash": hash_password(new_password), "updated_at": now}},
        )
        return jsonify({"message": "Password changed successfully"})

    @app.route("/api/auth/logout", methods=["POST"])
    def logout():
        response = jsonify({"message": "Logged out successfully"})
        unset_jwt_cookies(response)
        return response

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        page, limit = pagination_args(request.args, default_limit=12)
        query = build_product_query(request.args)
        total = db.products.count_documents(query)
        cursor = (
            db.products.find(query)
            .sort(product_sort(request.args.get("sort")))
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return jsonify(
            {
                "products": [serialize_product(document) for document in cursor],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/products/featured/list", methods=["GET"])
    def list_featured_products():
        cursor = (
            db.products.find({"featured": True, "in_stock": True})
            .sort([("created_at", -1), ("_id", -1)])
            .limit(FEATURED_LIST_LIMIT)
        )
        return jsonify({"products": [serialize_product(document) for document in cursor]})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document = find_product(db, product_id)
        return jsonify({"product": serialize_product(product_document)})

    # Orders
    @app.route("/api/orders", methods=["POST"])
    @app.route("/api/payment/create-order", methods=["POST"])
    @jwt_required()
    def create_order():
        user = load_current_user()
        payload = request.get_json(silent=True) or {}
        result = order_service.create_order(user, payload)
        return (
            jsonify(
                {
                    "message": "Order created",
                    "orderId": result["gateway_order_id"],
                    "amount": result["amount"],
                    "currency": result["currency"],
                    "key": result["key_id"],
                    "order": serialize_order(result["order"]),
                }
            ),
            201,
        )

    @app.route("/api/orders/verify", methods=["POST"])
    @app.route("/api/payment/verify-payment", methods=["POST"])
    @jwt_required()
    def verify_payment():
        user = load_current_user()
        payload = request.get_json(silent=True) or {}
        order_document = order_service.verify_payment(
            str(payload.get("razorpay_order_id") or "").strip(),
            str(payload.get("razorpay_payment_id") or "").strip(),
            str(payload.get("razorpay_signature") or "").strip(),
            user_id=user["_id"],
        )
        return jsonify(
            {
                "message": "Payment verified successfully",
                "order": serialize_order(order_document),
            }
        )

    @app.route("/api/orders", methods=["GET"])
    @app.route("/api/payment/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        user = load_current_user()
        page, limit = pagination_args(request.args, default_limit=10)
        documents, total = order_service.list_orders(user["_id"], page, limit)
        return jsonify(
            {
                "orders": [serialize_order(document) for document in documents],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @app.route("/api/payment/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order_detail(order_id: str):
        user = load_current_user()
        order_document = order_service.get_order(order_id, user_id=user["_id"])
        return jsonify({"order": serialize_order(order_document)})

    @app.route("/api/orders/<order_id>/rate-item", methods=["POST"])
    @app.route("/api/payment/rate-item", methods=["POST"])
    @jwt_required()
    def rate_order_item(order_id: Optional[str] = None):
        user = load_current_user()
        payload = request.get_json(silent=True) or {}
        order_id = order_id or str(payload.get("orderId") or "").strip()

        raw_index = payload.get("itemIndex")
        item_index = None
        if raw_index is not None:
            item_index = parse_whole_number(raw_index)
            if item_index is None:
                raise ValidationError(
                    "Validation failed",
                    [field_error("itemIndex", "Item index must be a whole number")],
                )

        rating = parse_whole_number(payload.get("rating"))
        order_document = order_service.rate_item(
            user["_id"],
            order_id,
            payload.get("productId"),
            rating,
            item_index=item_index,
        )
        return jsonify(
            {
                "message": "Rating submitted successfully",
                "order": serialize_order(order_document),
            }
        )

    # Contact
    @app.route("/api/contact", methods=["POST"])
    def submit_contact():
        payload = request_payload()
        errors: List[Dict[str, str]] = []

        name = check_length(errors, "name", payload.get("name"), 2, 50, "Name")
        email = normalize_email(payload.get("email"))
        if not is_valid_email(email):
            errors.append(field_error("email", "Valid email required"))
        elif len(email) > 50:
            errors.append(field_error("email", "Email must be at most 50 characters"))
        subject = str(payload.get("subject") or "").strip().lower()
        if subject not in CONTACT_SUBJECTS:
            errors.append(field_error("subject", "Invalid subject"))
        message = check_length(
            errors, "message", payload.get("message"), 10, 500, "Message"
        )

        image_files = present_files("images")
        if len(image_files) > MAX_CONTACT_IMAGES:
            errors.append(
                field_error("images", f"At most {MAX_CONTACT_IMAGES} images allowed")
            )
        if errors:
            raise ValidationError("Validation failed", errors)

        uploaded = upload_files(image_files, "image", "images")
        now = datetime.utcnow()
        contact_document = {
            "name": name,
            "email": email,
            "subject": subject,
            "message": message,
            "images": [
                {"url": entry["url"], "id": entry["id"], "filename": entry["filename"]}
                for entry in uploaded
            ],
            "status": "new",
            "created_at": now,
            "updated_at": now,
        }
        insert_with_media(db.contacts, contact_document, uploaded)

        return (
            jsonify(
                {
                    "message": "Message sent successfully! We will get back to you soon.",
                    "contact": serialize_contact(contact_document),
                }
            ),
            201,
        )

    # Hero images
    @app.route("/api/hero-images", methods=["GET"])
    def list_hero_images():
        cursor = db.hero_images.find().sort([("order", 1), ("created_at", -1)])
        return jsonify({"images": [serialize_hero_image(document) for document in cursor]})

    @app.route("/api/hero-images", methods=["POST"])
    @jwt_required()
    def create_hero_image():
        require_admin_user()
        fields = validate_hero_fields(request_payload())

        image_files = present_files("image")
        if not image_files:
            return jsonify({"message": "Image is required"}), 400

        uploaded = upload_files(image_files[:1], "image", "image")
        now = datetime.utcnow()
        hero_document = {
            **fields,
            "image": media_reference(uploaded[0]),
            "created_at": now,
            "updated_at": now,
        }
        insert_with_media(db.hero_images, hero_document, uploaded)
        return jsonify({"image": serialize_hero_image(hero_document)}), 201

    @app.route("/api/hero-images/<image_id>", methods=["PUT"])
    @jwt_required()
    def update_hero_image(image_id: str):
        require_admin_user()
        object_id = to_object_id(image_id)
        existing = db.hero_images.find_one({"_id": object_id}) if object_id else None
        if not existing:
            raise NotFound("Hero image not found")

        fields = validate_hero_fields(request_payload(), existing)
        fields["updated_at"] = datetime.utcnow()
        updated = db.hero_images.find_one_and_update(
            {"_id": object_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFound("Hero image not found")
        return jsonify({"image": serialize_hero_image(updated)})

    @app.route("/api/hero-images/<image_id>", methods=["DELETE"])
    @jwt_required()
    def delete_hero_image(image_id: str):
        require_admin_user()
        object_id = to_object_id(image_id)
        existing = db.hero_images.find_one({"_id": object_id}) if object_id else None
        if not existing:
            raise NotFound("Hero image not found")

        release_and_delete(db.hero_images, existing)
        return jsonify({"message": "Hero image removed"})

    # --- Admin Routes ---

    @app.route("/api/admin/analytics", methods=["GET"])
    @jwt_required()
    def admin_analytics():
        require_admin_user()
        now = datetime.utcnow()
        thirty_days_ago = now - timedelta(days=30)

        overview = {
            "totalProducts": db.products.count_documents({}),
            "totalUsers": db.users.count_documents({}),
            "monthlyUsers": db.users.count_documents(
                {"created_at": {"$gte": thirty_days_ago}}
            ),
            "totalContacts": db.contacts.count_documents({}),
            "newContacts": db.contacts.count_documents({"status": "new"}),
            "totalOrders": db.orders.count_documents({}),
            "pendingOrders": db.orders.count_documents(
                {"status": {"$in": list(ACTIVE_ORDER_STATUSES)}}
            ),
        }

        products_by_category = [
            {"category": entry["_id"], "count": entry["count"]}
            for entry in db.products.aggregate(
                [{"$group": {"_id": "$category", "count": {"$sum": 1}}}]
            )
        ]
        contacts_by_subject = [
            {"subject": entry["_id"], "count": entry["count"]}
            for entry in db.contacts.aggregate(
                [{"$group": {"_id": "$subject", "count": {"$sum": 1}}}]
            )
        ]

        month_index = now.year * 12 + now.month - 1 - 5
        window_start = datetime(month_index // 12, month_index % 12 + 1, 1)
        monthly: Dict[tuple, Dict[str, object]] = {}
        for order in db.orders.find(
            {"created_at": {"$gte": window_start}},
            {"created_at": 1, "total_amount": 1, "status": 1},
        ):
            created_at = order.get("created_at")
            if not isinstance(created_at, datetime):
                continue
            key = (created_at.year, created_at.month)
            bucket = monthly.setdefault(
                key,
                {"year": key[0], "month": key[1], "count": 0, "revenue": 0.0},
            )
            bucket["count"] += 1
            if order.get("status") in REVENUE_STATUSES:
                bucket["revenue"] = round(
                    bucket["revenue"] + float(order.get("total_amount") or 0), 2
                )
        monthly_orders = [monthly[key] for key in sorted(monthly, reverse=True)]

        recent_contacts = db.contacts.find().sort([("created_at", -1)]).limit(5)
        recent_orders = list(db.orders.find().sort([("created_at", -1)]).limit(5))

        return jsonify(
            {
                "overview": overview,
                "productsByCategory": products_by_category,
                "contactsBySubject": contacts_by_subject,
                "monthlyOrders": monthly_orders,
                "recentContacts": [serialize_contact(doc) for doc in recent_contacts],
                "recentOrders": serialize_orders_with_customers(recent_orders),
            }
        )

    @app.route("/api/admin/orders", methods=["GET"])
    @jwt_required()
    def admin_list_orders():
        require_admin_user()
        page, limit = pagination_args(request.args, default_limit=50)
        documents, total = order_service.list_all_orders(
            request.args.get("status"), page, limit
        )
        return jsonify(
            {
                "orders": serialize_orders_with_customers(documents),
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/admin/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    def admin_update_order(order_id: str):
        admin_user = require_admin_user()
        payload = request.get_json(silent=True) or {}
        order_document = order_service.update_status(order_id, payload.get("status"))
        app.logger.info(
            "Admin %s set order %s to %s",
            admin_user.get("email"),
            order_id,
            order_document.get("status"),
        )
        return jsonify(
            {
                "message": "Order updated successfully",
                "order": serialize_order(order_document),
            }
        )

    @app.route("/api/admin/products", methods=["GET"])
    @jwt_required()
    def admin_list_products():
        require_admin_user()
        page, limit = pagination_args(request.args, default_limit=50)
        query = build_product_query(request.args, include_out_of_stock=True)
        total = db.products.count_documents(query)
        cursor = (
            db.products.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return jsonify(
            {
                "products": [serialize_product(document) for document in cursor],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/admin/products", methods=["POST"])
    @jwt_required()
    def admin_create_product():
        admin_user = require_admin_user()
        payload = request_payload()

        primary_files = present_files("image")
        additional_files = present_files("additionalImages")
        video_files = present_files("video")

        fields = validate_product_fields(payload, len(additional_files))
        if not primary_files:
            return jsonify({"message": "Product image is required"}), 400

        uploaded: List[Dict] = []
        try:
            primary = upload_files(primary_files[:1], "image", "image")
            uploaded.extend(primary)
            additional = upload_files(additional_files, "image", "additionalImages")
            uploaded.extend(additional)
            video = upload_files(video_files[:1], "video", "video")
            uploaded.extend(video)
        except StoreError:
            media_store.delete_many(entry["id"] for entry in uploaded)
            raise

        now = datetime.utcnow()
        product_document = {
            **fields,
            "image": media_reference(primary[0]),
            "additional_images": [media_reference(entry) for entry in additional],
            "video": media_reference(video[0], extended=True) if video else None,
            "rating": 0.0,
            "reviews": 0,
            "created_at": now,
            "updated_at": now,
        }
        insert_with_media(db.products, product_document, uploaded)
        app.logger.info(
            "Admin %s created product %s", admin_user.get("email"), product_document["_id"]
        )

        return (
            jsonify(
                {
                    "message": "Product created successfully",
                    "product": serialize_product(product_document),
                }
            ),
            201,
        )

    @app.route("/api/admin/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def admin_update_product(product_id: str):
        require_admin_user()
        existing = find_product(db, product_id)
        payload = request_payload()

        primary_files = present_files("image")
        additional_files = present_files("additionalImages")
        video_files = present_files("video")

        merged = {
            "name": existing.get("name"),
            "description": existing.get("description"),
            "price": existing.get("price"),
            "discount_price": existing.get("discount_price"),
            "category": existing.get("category"),
            "size": existing.get("size"),
            "material": existing.get("material"),
            "featured": existing.get("featured"),
            "in_stock": existing.get("in_stock", True),
        }
        merged.update({key: value for key, value in payload.items() if key in merged})
        additional_count = (
            len(additional_files)
            if additional_files
            else len(existing.get("additional_images") or [])
        )
        fields = validate_product_fields(merged, additional_count)

        uploaded: List[Dict] = []
        try:
            primary = upload_files(primary_files[:1], "image", "image")
            uploaded.extend(primary)
            additional = upload_files(additional_files, "image", "additionalImages")
            uploaded.extend(additional)
            video = upload_files(video_files[:1], "video", "video")
            uploaded.extend(video)
        except StoreError:
            media_store.delete_many(entry["id"] for entry in uploaded)
            raise

        replaced: Dict[str, object] = {}
        if primary:
            fields["image"] = media_reference(primary[0])
            replaced["image"] = existing.get("image")
        if additional:
            fields["additional_images"] = [media_reference(entry) for entry in additional]
            replaced["additional_images"] = existing.get("additional_images")
        if video:
            fields["video"] = media_reference(video[0], extended=True)
            replaced["video"] = existing.get("video")
        fields["updated_at"] = datetime.utcnow()

        try:
            updated = db.products.find_one_and_update(
                {"_id": existing["_id"]},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            media_store.delete_many(entry["id"] for entry in uploaded)
            raise PersistenceError() from exc
        if not updated:
            media_store.delete_many(entry["id"] for entry in uploaded)
            raise NotFound("Product not found")

        media_store.delete_many(media_ids_of(replaced))

        return jsonify(
            {
                "message": "Product updated successfully",
                "product": serialize_product(updated),
            }
        )

    @app.route("/api/admin/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_product(product_id: str):
        admin_user = require_admin_user()
        existing = find_product(db, product_id)
        release_and_delete(db.products, existing)
        app.logger.info("Admin %s deleted product %s", admin_user.get("email"), product_id)
        return jsonify({"message": "Product deleted successfully"})

    @app.route("/api/admin/contacts", methods=["GET"])
    @jwt_required()
    def admin_list_contacts():
        require_admin_user()
        page, limit = pagination_args(request.args, default_limit=50)
        query: Dict[str, object] = {}
        status = str(request.args.get("status") or "").strip().lower()
        if status:
            query["status"] = status
        subject = str(request.args.get("subject") or "").strip().lower()
        if subject:
            query["subject"] = subject

        total = db.contacts.count_documents(query)
        cursor = (
            db.contacts.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return jsonify(
            {
                "contacts": [serialize_contact(document) for document in cursor],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/admin/contacts/<contact_id>", methods=["PUT"])
    @jwt_required()
    def admin_update_contact(contact_id: str):
        require_admin_user()
        payload = request.get_json(silent=True) or {}
        status = str(payload.get("status") or "").strip().lower()
        if status not in CONTACT_STATUSES:
            raise ValidationError(
                "Validation failed", [field_error("status", "Invalid contact status")]
            )

        object_id = to_object_id(contact_id)
        if not object_id:
            raise NotFound("Contact not found")

        # Resolved contacts are removed rather than archived.
        if status == "resolved":
            contact_document = db.contacts.find_one({"_id": object_id})
            if not contact_document:
                raise NotFound("Contact not found")
            release_and_delete(db.contacts, contact_document)
            return jsonify(
                {
                    "message": "Contact resolved and removed successfully",
                    "deleted": True,
                }
            )

        contact_document = db.contacts.find_one_and_update(
            {"_id": object_id},
            {"$set": {"status": status, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not contact_document:
            raise NotFound("Contact not found")

        return jsonify(
            {
                "message": "Contact updated successfully",
                "contact": serialize_contact(contact_document),
            }
        )

    @app.route("/api/admin/contacts/<contact_id>/reply", methods=["POST"])
    @jwt_required()
    def admin_reply_contact(contact_id: str):
        require_admin_user()
        payload = request.get_json(silent=True) or {}
        errors: List[Dict[str, str]] = []
        reply = check_length(errors, "reply", payload.get("reply"), 1, 5000, "Reply")
        if errors:
            raise ValidationError("Validation failed", errors)

        object_id = to_object_id(contact_id)
        contact_document = db.contacts.find_one({"_id": object_id}) if object_id else None
        if not contact_document:
            raise NotFound("Contact not found")

        result = notifier.send(
            "contact-reply",
            contact_document.get("email", ""),
            {
                "name": contact_document.get("name", ""),
                "topic": contact_document.get("subject", ""),
                "reply": reply,
            },
        )
        if not result.get("success"):
            app.logger.error(
                "Reply to contact %s failed: %s", contact_id, result.get("error")
            )
            raise UpstreamError("Failed to send reply email")

        db.contacts.update_one(
            {"_id": object_id},
            {"$set": {"status": "replied", "updated_at": datetime.utcnow()}},
        )
        return jsonify({"message": "Reply sent successfully"})

    return app

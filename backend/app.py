import os
from datetime import datetime
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt_identity, jwt_required
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .errors import (
    ApiError,
    BadRequestError,
    ForbiddenError,
    InvalidParameterError,
    InvalidStatusError,
    NotFoundError,
    TooManyRequestsError,
)
from .listing import (
    CUSTOMER_PROJECTION,
    list_customers,
    list_orders,
    list_user_orders,
    populate_customers,
    populate_orders,
)
from .query_params import (
    ORDER_STATUSES,
    collect_query_args,
    normalize_customer_query,
    normalize_order_query,
    normalize_user_order_query,
)
from .sanitize import escape_html, sanitize_html
from .security import RateLimiter, csrf_protect, issue_csrf_token, serve_public_file
from .serializers import serialize_customer, serialize_order
from .uploads import save_uploaded_image

load_dotenv()

ADMIN_ROLE = "admin"
CUSTOMER_UPDATE_FIELDS = ("name", "email", "phone", "deliveryAddress")
ORDER_CONTACT_FIELDS = ("address", "phone", "email")
PAYMENT_METHODS = {"card", "online"}
ORDER_COUNTER_ID = "orderNumber"
RATE_LIMIT_EXEMPT_PREFIXES = ("/images", "/public")


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` replaces the Flask-PyMongo connection, which lets tests hand
    in a stand-in for the MongoDB database.
    """
    app = Flask(__name__)

    # Honor proxy headers so rate limiting sees the real client address.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/weblarek"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024

    public_folder = os.path.join(app.root_path, "public")
    upload_path_temp = os.getenv("UPLOAD_PATH_TEMP", "").strip().strip("/")
    app.config["PUBLIC_FOLDER"] = public_folder
    app.config["UPLOAD_FOLDER"] = (
        os.path.join(public_folder, upload_path_temp) if upload_path_temp else public_folder
    )
    app.config["UPLOAD_PATH"] = os.getenv("UPLOAD_PATH", "").strip().strip("/")

    app.config["QUERY_TIMEOUT_MS"] = int(os.getenv("QUERY_TIMEOUT_MS", "2000"))
    app.config["SEARCH_TIMEOUT_MS"] = int(os.getenv("SEARCH_TIMEOUT_MS", "500"))
    app.config["RATE_LIMIT_MAX"] = int(os.getenv("RATE_LIMIT_MAX", "60"))
    app.config["RATE_LIMIT_WINDOW_SECONDS"] = int(
        os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")
    )
    app.config["REFRESH_TOKEN_COOKIE"] = os.getenv(
        "REFRESH_TOKEN_COOKIE", "refreshToken"
    )
    app.config["CSRF_COOKIE_SECURE"] = (
        os.getenv("CSRF_COOKIE_SECURE", "false").strip().lower() == "true"
    )

    if test_config:
        app.config.update(test_config)

    # --- Initialize extensions ---
    allowed_origins = [
        os.getenv("FRONTEND_URL", "").strip(),
        os.getenv("ORIGIN_ALLOW", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if database is None:
        database = PyMongo(app).db
    db = database

    try:
        db.users.create_index([("createdAt", -1)])
        db.orders.create_index("orderNumber", unique=True)
        db.orders.create_index([("createdAt", -1)])
        db.products.create_index("title")
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    rate_limiter = RateLimiter(
        app.config["RATE_LIMIT_MAX"],
        app.config["RATE_LIMIT_WINDOW_SECONDS"],
        exempt_prefixes=RATE_LIMIT_EXEMPT_PREFIXES,
    )
    app.extensions["rate_limiter"] = rate_limiter

    # --- Request hooks ---

    @app.before_request
    def apply_rate_limit():
        rate_limiter.check_request()

    @app.before_request
    def serve_static_files():
        return serve_public_file(app.config["PUBLIC_FOLDER"])

    app.before_request(csrf_protect)

    # --- Error handlers ---

    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        if error.status_code >= 500:
            app.logger.warning(
                "%s %s failed: %s", request.method, request.path, error.message
            )
        else:
            app.logger.info(
                "Rejected %s %s: %s", request.method, request.path, error.message
            )
        response = jsonify({"message": error.message})
        response.status_code = error.status_code
        if isinstance(error, TooManyRequestsError):
            response.headers["Retry-After"] = str(error.retry_after)
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"message": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        app.logger.exception(
            "Unhandled error on %s %s: %s", request.method, request.path, error
        )
        return jsonify({"message": "An internal server error occurred."}), 500

    # --- Helpers ---

    def parse_object_id(value, label: str = "identifier") -> ObjectId:
        try:
            return ObjectId(value)
        except (InvalidId, TypeError):
            raise BadRequestError(f"Invalid {label}.") from None

    def get_current_user_id() -> ObjectId:
        try:
            return ObjectId(get_jwt_identity())
        except (InvalidId, TypeError):
            raise ForbiddenError() from None

    def require_admin_user():
        current_user = db.users.find_one({"_id": get_current_user_id()}, {"roles": 1})
        if not current_user or ADMIN_ROLE not in (current_user.get("roles") or []):
            raise ForbiddenError()
        return current_user

    def listing_options() -> Dict[str, int]:
        return {
            "timeout_ms": app.config["QUERY_TIMEOUT_MS"],
            "search_timeout_ms": app.config["SEARCH_TIMEOUT_MS"],
        }

    def read_json_object() -> Dict:
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise BadRequestError("Invalid request body.")
        return payload

    def load_customer(customer_document):
        if not customer_document:
            raise NotFoundError("Customer not found.")
        populate_customers(db, [customer_document], app.config["QUERY_TIMEOUT_MS"])
        return customer_document

    def load_order(order_document, customer_id: Optional[ObjectId] = None):
        # A foreign order is reported as missing rather than forbidden.
        if not order_document or (
            customer_id is not None and order_document.get("customer") != customer_id
        ):
            raise NotFoundError("Order not found.")
        populate_orders(db, [order_document], app.config["QUERY_TIMEOUT_MS"])
        return order_document

    # --- ROUTES ---

    @app.route("/auth/csrf", methods=["GET"])
    def get_csrf_token():
        return issue_csrf_token()

    @app.route("/upload", methods=["POST"])
    def upload_file():
        stored = save_uploaded_image(
            request.files.get("file"), app.config["UPLOAD_FOLDER"]
        )
        upload_path = app.config["UPLOAD_PATH"]
        file_name = (
            f"/{upload_path}/{stored['filename']}"
            if upload_path
            else f"/{stored['filename']}"
        )
        return jsonify({"fileName": file_name, "metadata": stored["metadata"]}), 201

    # --- Customer Routes ---

    @app.route("/customers", methods=["GET"])
    @jwt_required()
    def get_customers():
        require_admin_user()
        query = normalize_customer_query(collect_query_args(request.args))
        result = list_customers(db, query, **listing_options())
        return jsonify(
            result.to_payload("customers", "totalUsers", serialize_customer)
        )

    @app.route("/customers/<customer_id>", methods=["GET"])
    @jwt_required()
    def get_customer_by_id(customer_id: str):
        require_admin_user()
        target_id = parse_object_id(customer_id, "customer identifier")
        customer = load_customer(db.users.find_one({"_id": target_id}, CUSTOMER_PROJECTION))
        return jsonify(serialize_customer(customer))

    @app.route("/customers/<customer_id>", methods=["PATCH"])
    @jwt_required()
    def update_customer(customer_id: str):
        require_admin_user()
        target_id = parse_object_id(customer_id, "customer identifier")
        payload = read_json_object()

        update_fields: Dict[str, str] = {}
        for field_name in CUSTOMER_UPDATE_FIELDS:
            if field_name not in payload:
                continue
            value = payload[field_name]
            if not isinstance(value, str):
                raise InvalidParameterError(field_name)
            update_fields[field_name] = sanitize_html(value)

        if update_fields:
            updated_customer = db.users.find_one_and_update(
                {"_id": target_id},
                {"$set": update_fields},
                projection=CUSTOMER_PROJECTION,
                return_document=ReturnDocument.AFTER,
            )
            app.logger.info(
                "Updated customer %s (%s)", target_id, ", ".join(sorted(update_fields))
            )
        else:
            updated_customer = db.users.find_one({"_id": target_id}, CUSTOMER_PROJECTION)

        return jsonify(serialize_customer(load_customer(updated_customer)))

    @app.route("/customers/<customer_id>", methods=["DELETE"])
    @jwt_required()
    def delete_customer(customer_id: str):
        require_admin_user()
        target_id = parse_object_id(customer_id, "customer identifier")
        deleted_customer = db.users.find_one_and_delete(
            {"_id": target_id}, projection=CUSTOMER_PROJECTION
        )
        if not deleted_customer:
            raise NotFoundError("Customer not found.")

        app.logger.info("Deleted customer %s", target_id)
        return jsonify(serialize_customer(deleted_customer))

    # --- Order Routes ---

    @app.route("/orders", methods=["GET"])
    @app.route("/orders/all", methods=["GET"])
    @jwt_required()
    def get_orders():
        require_admin_user()
        query = normalize_order_query(collect_query_args(request.args))
        result = list_orders(db, query, **listing_options())
        return jsonify(result.to_payload("orders", "totalOrders", serialize_order))

    @app.route("/orders/me", methods=["GET"])
    @jwt_required()
    def get_current_user_orders():
        query = normalize_user_order_query(collect_query_args(request.args))
        result = list_user_orders(db, get_current_user_id(), query, **listing_options())
        return jsonify(result.to_payload("orders", "totalOrders", serialize_order))

    @app.route("/orders/<int:order_number>", methods=["GET"])
    @jwt_required()
    def get_order_by_number(order_number: int):
        require_admin_user()
        order = load_order(db.orders.find_one({"orderNumber": order_number}))
        return jsonify(serialize_order(order))

    @app.route("/orders/me/<int:order_number>", methods=["GET"])
    @jwt_required()
    def get_current_user_order(order_number: int):
        user_id = get_current_user_id()
        order = load_order(
            db.orders.find_one({"orderNumber": order_number}), customer_id=user_id
        )
        return jsonify(serialize_order(order))

    @app.route("/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        user_id = get_current_user_id()
        payload = read_json_object()

        items = payload.get("items")
        if not isinstance(items, list) or not items:
            raise InvalidParameterError("items")
        for field_name in ORDER_CONTACT_FIELDS:
            value = payload.get(field_name)
            if not isinstance(value, str) or not value.strip():
                raise InvalidParameterError(field_name)
        payment = payload.get("payment")
        if not isinstance(payment, str) or payment not in PAYMENT_METHODS:
            raise InvalidParameterError("payment")
        total = payload.get("total")
        if isinstance(total, bool) or not isinstance(total, (int, float)):
            raise InvalidParameterError("total")

        product_ids = [parse_object_id(item, "product identifier") for item in items]
        products = {
            product["_id"]: product
            for product in db.products.find({"_id": {"$in": product_ids}})
        }
        basket_total = 0.0
        for product_id in product_ids:
            product = products.get(product_id)
            if not product:
                raise BadRequestError(f"Product {product_id} not found")
            if product.get("price") is None:
                raise BadRequestError(f"Product {product_id} is not for sale")
            basket_total += float(product["price"])
        if round(basket_total, 2) != round(float(total), 2):
            raise BadRequestError("Order total does not match the basket")

        counter = db.counters.find_one_and_update(
            {"_id": ORDER_COUNTER_ID},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        comment = payload.get("comment")
        order_document = {
            "orderNumber": counter["seq"],
            "status": ORDER_STATUSES[0],
            "totalAmount": total,
            "products": product_ids,
            "payment": payment,
            "phone": payload["phone"].strip(),
            "email": payload["email"].strip(),
            "comment": escape_html(comment) if isinstance(comment, str) else "",
            "customer": user_id,
            "deliveryAddress": payload["address"].strip(),
            "createdAt": datetime.utcnow(),
        }
        inserted = db.orders.insert_one(order_document)
        order_document["_id"] = inserted.inserted_id

        db.users.update_one(
            {"_id": user_id},
            {
                "$push": {"orders": inserted.inserted_id},
                "$set": {
                    "lastOrder": inserted.inserted_id,
                    "lastOrderDate": order_document["createdAt"],
                },
                "$inc": {"orderCount": 1, "totalAmount": total},
            },
        )
        app.logger.info(
            "Order %s placed by customer %s", order_document["orderNumber"], user_id
        )

        # Populate a copy; the stored document keeps product and customer ids.
        response_order = dict(order_document)
        populate_orders(db, [response_order], app.config["QUERY_TIMEOUT_MS"])
        return jsonify(serialize_order(response_order))

    @app.route("/orders/<int:order_number>", methods=["PATCH"])
    @jwt_required()
    def update_order(order_number: int):
        require_admin_user()
        payload = read_json_object()
        status = payload.get("status")
        if status is not None and (
            not isinstance(status, str) or status not in ORDER_STATUSES
        ):
            raise InvalidStatusError()

        if status is None:
            order = db.orders.find_one({"orderNumber": order_number})
        else:
            order = db.orders.find_one_and_update(
                {"orderNumber": order_number},
                {"$set": {"status": status}},
                return_document=ReturnDocument.AFTER,
            )
        return jsonify(serialize_order(load_order(order)))

    @app.route("/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def delete_order(order_id: str):
        require_admin_user()
        target_id = parse_object_id(order_id, "order identifier")
        deleted_order = db.orders.find_one_and_delete({"_id": target_id})
        if not deleted_order:
            raise NotFoundError("Order not found.")

        if deleted_order.get("customer") is not None:
            db.users.update_one(
                {"_id": deleted_order["customer"]},
                {"$pull": {"orders": target_id}},
            )
        app.logger.info("Deleted order %s", deleted_order.get("orderNumber"))
        return jsonify(serialize_order(deleted_order))

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app

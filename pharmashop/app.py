import math
import os
import re
from datetime import datetime, timedelta
from typing import Dict, Optional

from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from pharmashop.activity_feed import LOW_STOCK_THRESHOLD, fetch_activity_feed
from pharmashop.admin_stats import DASHBOARD_LOW_STOCK_THRESHOLD, dashboard_stats
from pharmashop.auth_guard import (
    ALLOWED_USER_ROLES,
    authenticate_request,
    check_password,
    hash_password,
    is_active_user,
    issue_access_token,
    require_admin_user,
    require_user,
    serialize_user,
)
from pharmashop.catalog_query import (
    CatalogQuery,
    catalog_facets,
    catalog_stats,
    search_products,
)
from pharmashop.helpers import (
    normalize_email,
    parse_bool,
    parse_object_id,
    safe_positive_int,
)
from pharmashop.order_lifecycle import (
    OrderLifecycleError,
    admin_list_orders,
    admin_set_status,
    cancel_order,
    list_orders,
    serialize_order,
)
from pharmashop.products import (
    list_products,
    normalize_product_payload,
    serialize_product,
)

load_dotenv()

USER_LIST_SORT_FIELDS = {"createdAt", "name", "email", "lastLogin", "updatedAt"}
MIN_PASSWORD_LENGTH = 6


def create_app(test_config: Optional[Dict] = None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

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
    app.config["JWT_SECRET_KEY"] = (
        os.getenv("JWT_SECRET_KEY") or os.getenv("JWT_SECRET") or None
    )
    token_hours = safe_positive_int(os.getenv("JWT_ACCESS_TOKEN_EXPIRES_HOURS"), 0) or 24
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=token_hours)
    app.config["JWT_TOKEN_LOCATION"] = ["headers", "cookies"]
    app.config["JWT_ACCESS_COOKIE_NAME"] = "token"
    app.config["JWT_COOKIE_CSRF_PROTECT"] = bool(
        parse_bool(os.getenv("JWT_COOKIE_CSRF_PROTECT", "false"))
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/pharmashop"
    )
    app.config["LOW_STOCK_THRESHOLD"] = safe_positive_int(
        os.getenv("LOW_STOCK_THRESHOLD"), 0
    ) or LOW_STOCK_THRESHOLD
    app.config["DASHBOARD_LOW_STOCK_THRESHOLD"] = safe_positive_int(
        os.getenv("DASHBOARD_LOW_STOCK_THRESHOLD"), 0
    ) or DASHBOARD_LOW_STOCK_THRESHOLD
    app.config["RESTORE_STOCK_ON_CANCEL"] = bool(
        parse_bool(os.getenv("RESTORE_STOCK_ON_CANCEL", "false"))
    )

    if test_config:
        app.config.update(test_config)

    if not app.config.get("JWT_SECRET_KEY"):
        app.logger.error(
            "JWT_SECRET_KEY is not set; authentication is disabled until it is configured."
        )

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        os.getenv("FRONTEND_URL", "").strip(),
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
    db = app.config.get("PHARMASHOP_DB")
    if db is None:
        mongo = PyMongo(app)
        db = mongo.db

    try:
        db.users.create_index("email", unique=True)
        db.products.create_index([("isActive", 1), ("category", 1)])
        db.orders.create_index([("userId", 1), ("createdAt", -1)])
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    # --- Helpers ---

    def error_response(message: str, status_code: int):
        return jsonify({"success": False, "error": message}), status_code

    def secret_configured() -> bool:
        return bool(app.config.get("JWT_SECRET_KEY"))

    def fetch_product(product_id: str):
        try:
            object_id = parse_object_id(product_id)
        except (InvalidId, TypeError):
            return None, error_response("Invalid product ID format", 400)

        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return None, error_response("Product not found", 404)

        return product_document, None

    def fetch_target_user_id(user_id: str):
        try:
            return parse_object_id(user_id), None
        except (InvalidId, TypeError):
            return None, error_response("Invalid user ID format", 400)

    def read_json_object():
        payload = request.get_json(silent=True)
        if payload is None:
            return {}, None
        if not isinstance(payload, dict):
            return None, error_response("Invalid request body", 400)
        return payload, None

    def email_taken(email: str, exclude_id=None) -> bool:
        query: Dict[str, object] = {"email": email}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        return db.users.find_one(query) is not None

    # --- Error handlers ---

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc):
        return error_response(exc.description or exc.name, exc.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected_exception(exc):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return error_response("Internal server error", 500)

    # --- Catalog ---

    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        return jsonify({"success": True, "data": catalog_facets(db)})

    @app.route("/api/search", methods=["GET"])
    def search():
        query = CatalogQuery.from_args(request.args)
        return jsonify({"success": True, "data": search_products(db, query)})

    @app.route("/api/stats", methods=["GET"])
    def public_stats():
        return jsonify({"success": True, "data": catalog_stats(db)})

    # Products
    @app.route("/api/products", methods=["GET"])
    def get_products():
        include_inactive = bool(parse_bool(request.args.get("includeInactive")))
        if include_inactive:
            _, admin_error = require_admin_user(db)
            if admin_error:
                return admin_error

        data = list_products(db, request.args, include_inactive=include_inactive)
        return jsonify({"success": True, "data": data})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error
        if product_document.get("isActive") is False:
            return error_response("Product not found", 404)

        return jsonify({"success": True, "data": serialize_product(product_document)})

    @app.route("/api/products", methods=["POST"])
    def create_product():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True)
        if payload is None:
            payload = request.form.to_dict()
        fields, validation_error = normalize_product_payload(payload)
        if validation_error:
            return error_response(validation_error, 400)

        now = datetime.utcnow()
        product_document = {
            **fields,
            "createdAt": now,
            "updatedAt": now,
            "createdBy": str(admin_user["_id"]),
        }
        result = db.products.insert_one(product_document)
        created_product = db.products.find_one({"_id": result.inserted_id})
        app.logger.info("Product %s created by %s", result.inserted_id, admin_user["_id"])

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Product created successfully",
                    "data": serialize_product(created_product),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    def update_product(product_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        payload = request.get_json(silent=True)
        if payload is None:
            payload = request.form.to_dict()
        fields, validation_error = normalize_product_payload(payload, partial=True)
        if validation_error:
            return error_response(validation_error, 400)
        if not fields:
            return error_response("No fields to update", 400)

        fields["updatedAt"] = datetime.utcnow()
        fields["updatedBy"] = str(admin_user["_id"])
        db.products.update_one({"_id": product_document["_id"]}, {"$set": fields})
        updated_product = db.products.find_one({"_id": product_document["_id"]})

        return jsonify(
            {
                "success": True,
                "message": "Product updated successfully",
                "data": serialize_product(updated_product),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    def delete_product(product_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        now = datetime.utcnow()
        db.products.update_one(
            {"_id": product_document["_id"]},
            {
                "$set": {
                    "isActive": False,
                    "deletedAt": now,
                    "deletedBy": str(admin_user["_id"]),
                    "updatedAt": now,
                }
            },
        )
        app.logger.info(
            "Product %s deactivated by %s", product_document["_id"], admin_user["_id"]
        )

        return jsonify({"success": True, "message": "Product deleted successfully"})

    # --- Auth ---

    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload, body_error = read_json_object()
        if body_error:
            return body_error
        email = normalize_email(payload.get("email"))
        name = str(payload.get("name", "")).strip()
        password = str(payload.get("password", ""))

        if not email or not name or not password:
            return error_response("Name, email and password are required", 400)
        if not email_regex.match(email):
            return error_response("Please provide a valid email address", 400)
        if len(password) < MIN_PASSWORD_LENGTH:
            return error_response(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400
            )
        if not secret_configured():
            return error_response("Server configuration error", 500)

        if email_taken(email):
            return error_response("An account with this email already exists", 400)

        now = datetime.utcnow()
        user_document = {
            "name": name,
            "email": email,
            "password": hash_password(password),
            "phone": str(payload.get("phone", "") or "").strip(),
            "address": str(payload.get("address", "") or "").strip(),
            "role": "user",
            "isActive": True,
            "emailVerified": False,
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            insert_result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            return error_response("An account with this email already exists", 400)
        user_document["_id"] = insert_result.inserted_id

        app.logger.info("Registered user %s", insert_result.inserted_id)
        return (
            jsonify(
                {
                    "success": True,
                    "message": "Account created",
                    "data": {
                        "user": serialize_user(user_document),
                        "token": issue_access_token(user_document),
                    },
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload, body_error = read_json_object()
        if body_error:
            return body_error
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", "") or "")

        if not email or not password:
            return error_response("Email and password are required", 400)

        user = db.users.find_one({"email": email})
        if not user or not check_password(password, user.get("password")):
            return error_response("Invalid credentials", 401)

        if not is_active_user(user):
            return error_response("Account is deactivated", 401)

        if not secret_configured():
            app.logger.error("Login refused for %s: JWT_SECRET_KEY is not set", email)
            return error_response("Server configuration error", 500)

        now = datetime.utcnow()
        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"lastLogin": now, "updatedAt": now}},
        )
        user = db.users.find_one({"_id": user["_id"]})

        return jsonify(
            {
                "success": True,
                "message": "Login successful",
                "data": {"user": serialize_user(user), "token": issue_access_token(user)},
            }
        )

    @app.route("/api/auth/verify", methods=["GET"])
    def verify_token():
        result = authenticate_request(db)
        if not result["authenticated"]:
            return error_response(result.get("error") or "Invalid token", 401)
        return jsonify({"success": True, "user": serialize_user(result["user"])})

    # --- Profile ---

    @app.route("/api/user/profile", methods=["GET"])
    def get_profile():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error
        return jsonify({"success": True, "data": serialize_user(current_user)})

    @app.route("/api/user/profile", methods=["PUT"])
    def update_profile():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        payload, body_error = read_json_object()
        if body_error:
            return body_error

        name = str(payload.get("name") or payload.get("nom") or "").strip()
        email = normalize_email(payload.get("email"))
        if not name or not email:
            return error_response("Name and email are required", 400)
        if not email_regex.match(email):
            return error_response("Please provide a valid email address", 400)
        if email_taken(email, exclude_id=current_user["_id"]):
            return error_response("Email already exists", 400)

        updates = {
            "name": name,
            "email": email,
            "phone": str(payload.get("phone", "") or "").strip(),
            "address": str(payload.get("address", "") or "").strip(),
            "updatedAt": datetime.utcnow(),
        }

        new_password = str(payload.get("password", "") or "")
        if new_password.strip():
            current_password = str(payload.get("currentPassword", "") or "")
            if not current_password:
                return error_response(
                    "Current password is required to change password", 400
                )
            if not check_password(current_password, current_user.get("password")):
                return error_response("Current password is incorrect", 400)
            if len(new_password) < MIN_PASSWORD_LENGTH:
                return error_response(
                    f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400
                )
            updates["password"] = hash_password(new_password)

        try:
            db.users.update_one({"_id": current_user["_id"]}, {"$set": updates})
        except DuplicateKeyError:
            return error_response("Email already exists", 400)
        updated_user = db.users.find_one({"_id": current_user["_id"]})

        return jsonify(
            {
                "success": True,
                "message": (
                    "Profile and password updated successfully"
                    if "password" in updates
                    else "Profile updated successfully"
                ),
                "data": serialize_user(updated_user),
            }
        )

    # --- Orders ---

    @app.route("/api/orders", methods=["GET"])
    def get_orders():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        data = list_orders(
            db,
            current_user,
            status=(request.args.get("status") or "").strip() or None,
            page=safe_positive_int(request.args.get("page"), 1),
            limit=safe_positive_int(request.args.get("limit"), 0) or 10,
        )
        return jsonify({"success": True, "data": data})

    @app.route("/api/orders/<order_id>/cancel", methods=["PUT"])
    def cancel_order_route(order_id: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        try:
            order_document = cancel_order(
                db,
                order_id,
                current_user,
                restore_stock=app.config["RESTORE_STOCK_ON_CANCEL"],
            )
        except OrderLifecycleError as exc:
            return error_response(exc.message, exc.status_code)

        return jsonify(
            {
                "success": True,
                "message": "Order cancelled successfully",
                "data": serialize_order(order_document),
            }
        )

    # --- Admin Routes ---

    @app.route("/api/admin/orders", methods=["GET"])
    def admin_list_orders_route():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        data = admin_list_orders(
            db,
            status=(request.args.get("status") or "").strip() or None,
            search=(request.args.get("search") or "").strip() or None,
            page=safe_positive_int(request.args.get("page"), 1),
            limit=safe_positive_int(request.args.get("limit"), 0) or 50,
        )
        return jsonify({"success": True, "data": data})

    @app.route("/api/admin/orders/<order_id>/status", methods=["PUT"])
    def admin_update_order_status(order_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload, body_error = read_json_object()
        if body_error:
            return body_error
        desired_status = str(payload.get("status", "") or "").strip().lower()

        try:
            order_document = admin_set_status(db, order_id, desired_status, admin_user)
        except OrderLifecycleError as exc:
            return error_response(exc.message, exc.status_code)

        return jsonify(
            {
                "success": True,
                "message": "Order status updated",
                "data": serialize_order(order_document),
            }
        )

    @app.route("/api/admin/users", methods=["GET"])
    def admin_list_users():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        query: Dict[str, object] = {}
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"name": regex}, {"email": regex}]

        role = (request.args.get("role") or "").strip().lower()
        if role and role != "all":
            query["role"] = role

        status = (request.args.get("status") or "").strip().lower()
        if status == "active":
            query["isActive"] = True
        elif status == "inactive":
            query["isActive"] = False

        sort_field = (request.args.get("sortBy") or "createdAt").strip()
        if sort_field not in USER_LIST_SORT_FIELDS:
            sort_field = "createdAt"
        sort_direction = 1 if request.args.get("sortOrder") == "asc" else -1

        page = safe_positive_int(request.args.get("page"), 1)
        limit = min(safe_positive_int(request.args.get("limit"), 0) or 50, 200)
        skip = (page - 1) * limit

        cursor = (
            db.users.find(query)
            .sort([(sort_field, sort_direction), ("_id", sort_direction)])
            .skip(skip)
            .limit(limit)
        )
        users = [serialize_user(document) for document in cursor]
        total = db.users.count_documents(query)

        return jsonify(
            {
                "success": True,
                "data": {
                    "users": users,
                    "pagination": {
                        "page": page,
                        "limit": limit,
                        "total": total,
                        "pages": math.ceil(total / limit) if total else 0,
                    },
                },
            }
        )

    @app.route("/api/admin/users", methods=["POST"])
    def admin_create_user():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload, body_error = read_json_object()
        if body_error:
            return body_error

        name = str(payload.get("name", "") or "").strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", "") or "")
        if not name or not email or not password:
            return error_response("Name, email and password are required", 400)
        if not email_regex.match(email):
            return error_response("Please provide a valid email address", 400)
        if len(password) < MIN_PASSWORD_LENGTH:
            return error_response(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400
            )
        if email_taken(email):
            return error_response("User with this email already exists", 409)

        now = datetime.utcnow()
        user_document = {
            "name": name,
            "email": email,
            "password": hash_password(password),
            "role": "admin" if str(payload.get("role") or "").strip().lower() == "admin" else "user",
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
            "createdBy": str(admin_user["_id"]),
        }
        try:
            insert_result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            return error_response("User with this email already exists", 409)
        user_document["_id"] = insert_result.inserted_id

        app.logger.info("User %s created by %s", insert_result.inserted_id, admin_user["_id"])
        return (
            jsonify(
                {
                    "success": True,
                    "message": "User created successfully",
                    "data": serialize_user(user_document),
                }
            ),
            201,
        )

    @app.route("/api/admin/users/<user_id>", methods=["GET"])
    def admin_get_user(user_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        target_object_id, id_error = fetch_target_user_id(user_id)
        if id_error:
            return id_error

        user_document = db.users.find_one({"_id": target_object_id})
        if not user_document:
            return error_response("User not found", 404)
        return jsonify({"success": True, "data": serialize_user(user_document)})

    @app.route("/api/admin/users/<user_id>", methods=["PUT"])
    def admin_update_user(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        target_object_id, id_error = fetch_target_user_id(user_id)
        if id_error:
            return id_error

        payload, body_error = read_json_object()
        if body_error:
            return body_error

        if not db.users.find_one({"_id": target_object_id}):
            return error_response("User not found", 404)

        updates: Dict[str, object] = {
            "updatedAt": datetime.utcnow(),
            "updatedBy": str(admin_user["_id"]),
        }

        name = str(payload.get("name", "") or "").strip()
        if name:
            updates["name"] = name

        email = normalize_email(payload.get("email"))
        if email:
            if not email_regex.match(email):
                return error_response("Please provide a valid email address", 400)
            if email_taken(email, exclude_id=target_object_id):
                return error_response("Email already exists", 409)
            updates["email"] = email

        password = str(payload.get("password", "") or "")
        if password.strip():
            if len(password) < MIN_PASSWORD_LENGTH:
                return error_response(
                    f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400
                )
            updates["password"] = hash_password(password)

        is_self = target_object_id == admin_user["_id"]
        if payload.get("role") is not None:
            desired_role = "admin" if str(payload.get("role")).strip().lower() == "admin" else "user"
            if is_self and desired_role != "admin":
                return error_response("You cannot remove your own admin privileges", 400)
            updates["role"] = desired_role

        if payload.get("isActive") is not None:
            desired_active = bool(parse_bool(payload.get("isActive")))
            if is_self and not desired_active:
                return error_response("You cannot deactivate your own account", 400)
            updates["isActive"] = desired_active

        try:
            db.users.update_one({"_id": target_object_id}, {"$set": updates})
        except DuplicateKeyError:
            return error_response("Email already exists", 409)
        updated_user = db.users.find_one({"_id": target_object_id})

        app.logger.info("User %s updated by %s", target_object_id, admin_user["_id"])
        return jsonify(
            {
                "success": True,
                "message": "User updated successfully",
                "data": serialize_user(updated_user),
            }
        )

    @app.route("/api/admin/users/<user_id>", methods=["DELETE"])
    def admin_delete_user(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        target_object_id, id_error = fetch_target_user_id(user_id)
        if id_error:
            return id_error

        if target_object_id == admin_user["_id"]:
            return error_response("You cannot delete your own account", 400)

        now = datetime.utcnow()
        result = db.users.update_one(
            {"_id": target_object_id},
            {
                "$set": {
                    "isActive": False,
                    "updatedAt": now,
                    "deletedAt": now,
                    "deletedBy": str(admin_user["_id"]),
                }
            },
        )
        if result.matched_count == 0:
            return error_response("User not found", 404)

        app.logger.info("User %s deleted by %s", target_object_id, admin_user["_id"])
        return jsonify({"success": True, "message": "User deleted successfully"})

    @app.route("/api/admin/users/<user_id>/activate", methods=["PUT"])
    def admin_activate_user(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        target_object_id, id_error = fetch_target_user_id(user_id)
        if id_error:
            return id_error

        result = db.users.update_one(
            {"_id": target_object_id},
            {
                "$set": {
                    "isActive": True,
                    "updatedAt": datetime.utcnow(),
                    "updatedBy": str(admin_user["_id"]),
                },
                "$unset": {"deletedAt": "", "deletedBy": ""},
            },
        )
        if result.matched_count == 0:
            return error_response("User not found", 404)

        app.logger.info("User %s activated by %s", target_object_id, admin_user["_id"])
        return jsonify({"success": True, "message": "User activated successfully"})

    @app.route("/api/admin/users/<user_id>/deactivate", methods=["PUT"])
    @app.route("/api/admin/users/<user_id>/disactivate", methods=["PUT"])
    def admin_deactivate_user(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        target_object_id, id_error = fetch_target_user_id(user_id)
        if id_error:
            return id_error

        if target_object_id == admin_user["_id"]:
            return error_response("You cannot deactivate your own account", 400)

        now = datetime.utcnow()
        result = db.users.update_one(
            {"_id": target_object_id},
            {
                "$set": {
                    "isActive": False,
                    "updatedAt": now,
                    "updatedBy": str(admin_user["_id"]),
                    "deletedAt": now,
                    "deletedBy": str(admin_user["_id"]),
                }
            },
        )
        if result.matched_count == 0:
            return error_response("User not found", 404)

        app.logger.info("User %s deactivated by %s", target_object_id, admin_user["_id"])
        return jsonify(
            {
                "success": True,
                "message": "User deactivated successfully",
                "data": {"userId": str(target_object_id), "isActive": False},
            }
        )

    @app.route("/api/admin/users/<user_id>/role", methods=["PUT"])
    def admin_update_user_role(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        target_object_id, id_error = fetch_target_user_id(user_id)
        if id_error:
            return id_error

        payload, body_error = read_json_object()
        if body_error:
            return body_error
        desired_role = str(payload.get("role", "") or "").strip().lower()
        if desired_role not in ALLOWED_USER_ROLES:
            return error_response('Invalid role. Must be "user" or "admin"', 400)

        if target_object_id == admin_user["_id"] and desired_role != "admin":
            return error_response("You cannot remove your own admin privileges", 400)

        existing_user = db.users.find_one({"_id": target_object_id})
        if not existing_user:
            return error_response("User not found", 404)

        previous_role = str(existing_user.get("role") or "user").strip().lower()
        if previous_role == desired_role:
            return jsonify(
                {
                    "success": True,
                    "message": f"User already has the role: {desired_role}",
                    "data": {
                        "userId": str(target_object_id),
                        "role": desired_role,
                        "unchanged": True,
                    },
                }
            )

        db.users.update_one(
            {"_id": target_object_id},
            {
                "$set": {
                    "role": desired_role,
                    "updatedAt": datetime.utcnow(),
                    "updatedBy": str(admin_user["_id"]),
                }
            },
        )
        app.logger.info(
            "User %s role changed from %s to %s by %s",
            target_object_id,
            previous_role,
            desired_role,
            admin_user["_id"],
        )

        return jsonify(
            {
                "success": True,
                "message": f"User role updated to {desired_role} successfully",
                "data": {
                    "userId": str(target_object_id),
                    "oldRole": previous_role,
                    "newRole": desired_role,
                },
            }
        )

    @app.route("/api/admin/activities", methods=["GET"])
    def admin_activities():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        activities = fetch_activity_feed(
            db, low_stock_threshold=app.config["LOW_STOCK_THRESHOLD"]
        )
        return jsonify({"success": True, "data": activities})

    @app.route("/api/admin/stats", methods=["GET"])
    def admin_dashboard_stats():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        data = dashboard_stats(
            db, low_stock_threshold=app.config["DASHBOARD_LOW_STOCK_THRESHOLD"]
        )
        return jsonify({"success": True, "data": data})

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app

import os
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional
from urllib.parse import quote_plus

import requests
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    decode_token,
    get_jwt_identity,
    jwt_required,
    set_access_cookies,
    unset_jwt_cookies,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_pymongo import PyMongo
from jwt.exceptions import PyJWTError
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

load_dotenv()

ALLOWED_USER_ROLES = {"admin", "user"}
SETTLEMENT_PENDING = "pending"
SETTLEMENT_SETTLED = "settled"


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else "user"


def build_mongo_uri() -> str:
    configured_uri = (os.getenv("MONGO_URI") or "").strip()
    if configured_uri:
        return configured_uri

    db_user = (os.getenv("DB_USER") or "").strip()
    db_password = (os.getenv("DB_PASS") or "").strip()
    cluster_host = (os.getenv("DB_CLUSTER_HOST") or "").strip()
    if db_user and db_password and cluster_host:
        return (
            f"mongodb+srv://{quote_plus(db_user)}:{quote_plus(db_password)}@{cluster_host}/"
            "?retryWrites=true&w=majority"
        )

    return "mongodb://localhost:27017/dashboardDB"


# --- Token Service ---


def issue_credential(claim: Dict) -> str:
    """Sign ``claim`` into an access token whose subject is the claim's email.

    The claim travels unchanged under the private ``claim`` key; the subject
    holds the normalized email used for role lookups. Must run inside an app
    context.
    """
    email = normalize_email(claim.get("email"))
    if not email:
        raise ValueError("A credential claim needs an email.")

    return create_access_token(identity=email, additional_claims={"claim": claim})


def is_credential_revoked(revoked_tokens, jti: Optional[str]) -> bool:
    return revoked_tokens.find_one({"jti": jti}) is not None


def decode_credential(
    token: Optional[str], revoked_tokens=None, allow_expired: bool = False
) -> Optional[Dict]:
    """Decode ``token`` into its JWT payload, or ``None`` when it is not valid.

    Absent, malformed and wrongly signed tokens are always invalid, expired
    ones unless ``allow_expired`` is set. When ``revoked_tokens`` is given,
    tokens whose ``jti`` appears there are invalid too.
    """
    if not token:
        return None

    try:
        payload = decode_token(token, allow_expired=allow_expired)
    except (JWTExtendedException, PyJWTError):
        return None

    if payload.get("type") != "access" or not payload.get("sub"):
        return None

    if revoked_tokens is not None and is_credential_revoked(
        revoked_tokens, payload.get("jti")
    ):
        return None

    return payload


def verify_credential(token: Optional[str], revoked_tokens=None) -> Optional[Dict]:
    """Return the claim ``token`` was issued for, or ``None`` when it is not valid."""
    payload = decode_credential(token, revoked_tokens)
    if payload is None:
        return None

    claim = payload.get("claim")
    if not isinstance(claim, dict):
        return {"email": payload["sub"]}
    return claim


# --- Payment Gateway ---


def to_minor_units(amount) -> int:
    # Raises decimal.InvalidOperation for values that are not numbers.
    scaled = Decimal(str(amount)) * 100
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# --- Serialization ---


def serialize_document(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat() + "Z"
    if isinstance(value, dict):
        return {key: serialize_document(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_document(item) for item in value]
    return value


def serialize_insert_result(result) -> Dict[str, object]:
    return {
        "acknowledged": result.acknowledged,
        "insertedId": serialize_document(result.inserted_id),
    }


def serialize_update_result(result) -> Dict[str, object]:
    return {
        "acknowledged": result.acknowledged,
        "matchedCount": result.matched_count,
        "modifiedCount": result.modified_count,
        "upsertedCount": 1 if result.upserted_id is not None else 0,
        "upsertedId": serialize_document(result.upserted_id),
    }


def serialize_delete_result(result) -> Dict[str, object]:
    return {
        "acknowledged": result.acknowledged,
        "deletedCount": result.deleted_count,
    }


def create_app(config_overrides: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` replaces the Mongo database normally opened through
    Flask-PyMongo; every collection handle the routes use is derived from it.
    """
    app = Flask(__name__)

    # Honor proxy headers so secure cookies survive TLS termination upstream.
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
    app.config["APP_ENV"] = (
        os.getenv("APP_ENV") or os.getenv("NODE_ENV") or "development"
    ).strip().lower()
    app.config["JWT_SECRET_KEY"] = (
        os.getenv("JWT_SECRET_KEY")
        or os.getenv("ACCESS_TOKEN_SECRET")
        or "change-me-in-production"
    )
    try:
        token_lifetime_hours = float(os.getenv("JWT_ACCESS_TOKEN_EXPIRES_HOURS", "1"))
    except ValueError:
        token_lifetime_hours = 1
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=token_lifetime_hours)
    app.config["JWT_TOKEN_LOCATION"] = ["cookies"]
    app.config["JWT_ACCESS_COOKIE_NAME"] = "token"
    app.config["JWT_COOKIE_CSRF_PROTECT"] = False
    app.config["MONGO_URI"] = build_mongo_uri()
    app.config["MONGO_DB_NAME"] = os.getenv("MONGO_DB_NAME", "dashboardDB")
    app.config["STRIPE_SECRET_KEY"] = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    app.config["STRIPE_API_BASE"] = (
        os.getenv("STRIPE_API_BASE") or "https://api.stripe.com"
    ).rstrip("/")
    app.config["PAYMENT_CURRENCY"] = (os.getenv("PAYMENT_CURRENCY") or "usd").lower()
    app.config["DEFAULT_ADMIN_EMAIL"] = normalize_email(os.getenv("DEFAULT_ADMIN_EMAIL"))

    if config_overrides:
        app.config.update(config_overrides)

    is_production = app.config["APP_ENV"] == "production"
    app.config.setdefault("JWT_COOKIE_SECURE", is_production)
    app.config.setdefault("JWT_COOKIE_SAMESITE", "None" if is_production else "Strict")

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        os.getenv("FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins)

    jwt = JWTManager(app)

    if database is None:
        mongo = PyMongo(app)
        database = mongo.cx[app.config["MONGO_DB_NAME"]]

    users_collection = database.users
    carts_collection = database.carts
    payments_collection = database.payments
    revoked_tokens_collection = database.revoked_tokens

    try:
        users_collection.create_index("email", unique=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure unique email index for users: %s", exc)

    try:
        revoked_tokens_collection.create_index("expires_at", expireAfterSeconds=0)
        revoked_tokens_collection.create_index("jti")
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for revoked tokens: %s", exc)

    try:
        payments_collection.create_index([("email", 1), ("created_at", -1)])
        payments_collection.create_index("settlement_status")
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for payments: %s", exc)

    # --- Access control responses ---

    @jwt.unauthorized_loader
    def missing_token_callback(reason: str):
        return jsonify({"message": "Unauthorized"}), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(reason: str):
        return jsonify({"message": "Forbidden"}), 403

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({"message": "Forbidden"}), 403

    @jwt.revoked_token_loader
    def revoked_token_callback(jwt_header, jwt_payload):
        return jsonify({"message": "Forbidden"}), 403

    @jwt.token_in_blocklist_loader
    def is_token_revoked(jwt_header, jwt_payload) -> bool:
        return is_credential_revoked(revoked_tokens_collection, jwt_payload.get("jti"))

    @app.errorhandler(PyMongoError)
    def handle_database_error(exc):
        app.logger.error("Unhandled database error: %s", exc)
        return jsonify({"error": "A database error occurred."}), 500

    # --- Helpers ---

    def get_user_role(user_document) -> str:
        if not user_document:
            return "user"

        default_admin_email = app.config["DEFAULT_ADMIN_EMAIL"]
        email = normalize_email(user_document.get("email"))
        if default_admin_email and email == default_admin_email:
            return "admin"

        return normalize_role(user_document.get("role", "user"))

    def require_admin_user():
        current_email = normalize_email(get_jwt_identity())
        current_user = users_collection.find_one({"email": current_email})

        if get_user_role(current_user) != "admin":
            return None, (jsonify({"message": "Forbidden"}), 403)

        return current_user, None

    def read_json_object():
        payload = request.get_json(silent=True)
        if payload is None:
            return {}, None
        if not isinstance(payload, dict):
            return None, (jsonify({"error": "Request body must be a JSON object."}), 400)
        return payload, None

    def revoke_credential(token: Optional[str]) -> bool:
        payload = decode_credential(token, allow_expired=True)
        if payload is None:
            return False

        jti = payload.get("jti")
        if not jti:
            return False

        expires_at = (
            datetime.utcfromtimestamp(payload["exp"])
            if payload.get("exp")
            else datetime.utcnow() + app.config["JWT_ACCESS_TOKEN_EXPIRES"]
        )
        revoked_tokens_collection.update_one(
            {"jti": jti},
            {
                "$setOnInsert": {
                    "jti": jti,
                    "email": normalize_email(payload.get("sub")),
                    "expires_at": expires_at,
                    "revoked_at": datetime.utcnow(),
                }
            },
            upsert=True,
        )
        return True

    def create_payment_intent(amount) -> str:
        secret_key = app.config.get("STRIPE_SECRET_KEY")
        if not secret_key:
            raise ValueError("Stripe configuration is incomplete.")

        response = requests.post(
            f"{app.config['STRIPE_API_BASE']}/v1/payment_intents",
            data={
                "amount": to_minor_units(amount),
                "currency": app.config["PAYMENT_CURRENCY"],
                "payment_method_types[]": ["card", "link"],
            },
            auth=(secret_key, ""),
        )
        if response.status_code >= 400:
            app.logger.error("Stripe PaymentIntent failed: %s", response.text)
        response.raise_for_status()
        return response.json().get("client_secret")

    def parse_cart_ids(payment_document) -> List[ObjectId]:
        return [ObjectId(cart_id) for cart_id in payment_document.get("cartIds") or []]

    def clear_settled_cart_items(payment_document):
        cart_object_ids = parse_cart_ids(payment_document)
        return carts_collection.delete_many({"_id": {"$in": cart_object_ids}})

    def mark_payment_settled(payment_id) -> None:
        payments_collection.update_one(
            {"_id": payment_id, "settlement_status": SETTLEMENT_PENDING},
            {
                "$set": {
                    "settlement_status": SETTLEMENT_SETTLED,
                    "settled_at": datetime.utcnow(),
                }
            },
        )

    # --- ROUTES ---

    @app.route("/", methods=["GET"])
    def index():
        return "Dashboard Template Server Running!"

    @app.route("/health", methods=["GET"])
    def health():
        return {"status": "ok"}, 200

    # Session
    @app.route("/jwt", methods=["POST"])
    def issue_token():
        payload, body_error = read_json_object()
        if body_error:
            return body_error
        if not normalize_email(payload.get("email")):
            return jsonify({"message": "Email is required to sign in."}), 400

        token = issue_credential(payload)
        response = jsonify({"loginSuccess": True})
        set_access_cookies(response, token)
        return response

    @app.route("/logout", methods=["POST"])
    def logout():
        token = request.cookies.get(app.config["JWT_ACCESS_COOKIE_NAME"])
        try:
            revoke_credential(token)
        except Exception as exc:
            app.logger.error("Error revoking token: %s", exc)
            response = jsonify({"error": "An error occurred while logging out."})
            response.status_code = 500
            unset_jwt_cookies(response)
            return response

        response = jsonify({"logoutSuccess": True})
        unset_jwt_cookies(response)
        return response

    # Users
    @app.route("/users", methods=["GET"])
    @jwt_required()
    def list_users():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        try:
            users = [serialize_document(user) for user in users_collection.find()]
        except Exception as exc:
            app.logger.error("Error fetching users: %s", exc)
            return jsonify({"error": "An error occurred while fetching users."}), 500

        return jsonify(users)

    @app.route("/users/admin/<email>", methods=["GET"])
    @jwt_required()
    def check_admin_status(email: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        try:
            user_document = users_collection.find_one({"email": normalize_email(email)})
        except Exception as exc:
            app.logger.error("Error checking admin status: %s", exc)
            return (
                jsonify({"error": "An error occurred while checking admin status."}),
                500,
            )

        is_admin = bool(user_document) and get_user_role(user_document) == "admin"
        return jsonify({"admin": is_admin})

    @app.route("/users", methods=["POST"])
    def register_user():
        payload, body_error = read_json_object()
        if body_error:
            return body_error
        email = normalize_email(payload.get("email"))
        if not email:
            return jsonify({"message": "Email is required to register."}), 400

        default_admin_email = app.config["DEFAULT_ADMIN_EMAIL"]
        user_document = {key: value for key, value in payload.items() if key != "_id"}
        user_document["email"] = email
        user_document["role"] = (
            "admin" if default_admin_email and email == default_admin_email else "user"
        )
        user_document["created_at"] = datetime.utcnow()

        already_exists = {"message": "User already exists", "insertedId": None}
        try:
            if users_collection.find_one({"email": email}):
                return jsonify(already_exists)
            insert_result = users_collection.insert_one(user_document)
        except DuplicateKeyError:
            return jsonify(already_exists)
        except Exception as exc:
            app.logger.error("Error inserting user: %s", exc)
            return jsonify({"error": "An error occurred while inserting the user."}), 500

        return jsonify(serialize_insert_result(insert_result))

    @app.route("/users/admin/<user_id>", methods=["DELETE"])
    @jwt_required()
    def remove_user(user_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        try:
            delete_result = users_collection.delete_one({"_id": ObjectId(user_id)})
        except Exception as exc:
            app.logger.error("Error deleting user: %s", exc)
            return jsonify({"error": "An error occurred while deleting the user."}), 500

        return jsonify(serialize_delete_result(delete_result))

    @app.route("/users/admin/<user_id>", methods=["PATCH"])
    @jwt_required()
    def promote_user(user_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        try:
            update_result = users_collection.update_one(
                {"_id": ObjectId(user_id)}, {"$set": {"role": "admin"}}
            )
        except Exception as exc:
            app.logger.error("Error updating user role: %s", exc)
            return (
                jsonify({"error": "An error occurred while updating the user role."}),
                500,
            )

        return jsonify(serialize_update_result(update_result))

    # Carts
    @app.route("/carts", methods=["GET"])
    @jwt_required()
    def list_carts():
        current_email = normalize_email(get_jwt_identity())
        try:
            cart_items = [
                serialize_document(item)
                for item in carts_collection.find({"email": current_email})
            ]
        except Exception as exc:
            app.logger.error("Error fetching cart items: %s", exc)
            return jsonify({"error": "An error occurred while fetching the cart."}), 500

        return jsonify(cart_items)

    # Payments
    @app.route("/create-payment-intent", methods=["POST"])
    @jwt_required()
    def create_intent():
        payload, body_error = read_json_object()
        if body_error:
            return body_error
        try:
            client_secret = create_payment_intent(payload.get("price"))
        except Exception as exc:
            app.logger.error("Error creating payment intent: %s", exc)
            return jsonify({"error": "Internal Server Error"}), 500

        app.logger.info("Payment intent created for %s", get_jwt_identity())
        return jsonify({"clientSecret": client_secret})

    @app.route("/payments", methods=["POST"])
    @jwt_required()
    def record_payment():
        payload, body_error = read_json_object()
        if body_error:
            return body_error
        payment_document = {key: value for key, value in payload.items() if key != "_id"}
        if "email" in payment_document:
            payment_document["email"] = normalize_email(payment_document["email"])
        payment_document.setdefault("created_at", datetime.utcnow())
        payment_document["settlement_status"] = SETTLEMENT_PENDING

        try:
            payment_result = payments_collection.insert_one(payment_document)
            delete_result = clear_settled_cart_items(payment_document)
            mark_payment_settled(payment_result.inserted_id)
        except Exception as exc:
            app.logger.error("Error processing payment: %s", exc)
            return (
                jsonify({"error": "An error occurred while processing the payment."}),
                500,
            )

        app.logger.info(
            "Recorded payment %s and cleared %s cart items",
            payment_result.inserted_id,
            delete_result.deleted_count,
        )
        return jsonify(
            {
                "paymentResult": serialize_insert_result(payment_result),
                "deleteResult": serialize_delete_result(delete_result),
            }
        )

    @app.route("/payments/reconcile", methods=["POST"])
    @jwt_required()
    def reconcile_payments():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        settled = 0
        skipped = 0
        try:
            pending_payments = list(
                payments_collection.find({"settlement_status": SETTLEMENT_PENDING})
            )
            for payment_document in pending_payments:
                try:
                    clear_settled_cart_items(payment_document)
                except (InvalidId, TypeError) as exc:
                    app.logger.warning(
                        "Skipping payment %s with unusable cart ids: %s",
                        payment_document.get("_id"),
                        exc,
                    )
                    skipped += 1
                    continue
                mark_payment_settled(payment_document["_id"])
                settled += 1
        except Exception as exc:
            app.logger.error("Error reconciling payments: %s", exc)
            return (
                jsonify({"error": "An error occurred while reconciling payments."}),
                500,
            )

        return jsonify({"settled": settled, "skipped": skipped})

    @app.route("/payments", methods=["GET"])
    @jwt_required()
    def list_payments():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        email = normalize_email(request.args.get("email"))
        try:
            cursor = payments_collection.find({"email": email}).sort(
                [("created_at", -1), ("_id", -1)]
            )
            payments = [serialize_document(payment) for payment in cursor]
        except Exception as exc:
            app.logger.error("Error fetching payment records: %s", exc)
            return (
                jsonify(
                    {"error": "An error occurred while fetching the payment records."}
                ),
                500,
            )

        return jsonify(payments)

    return app

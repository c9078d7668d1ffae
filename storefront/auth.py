import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from functools import wraps

import bcrypt
import jwt
from flask import jsonify, request

from .config import current_config
from .errors import AuthError
from .store import current_store

log = logging.getLogger("storefront.auth")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"\d"), "one number"),
    (re.compile(r"[^A-Za-z0-9]"), "one special character"),
)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, stored_hash) -> bool:
    try:
        return bcrypt.checkpw(
            password.encode("utf-8"),
            stored_hash if isinstance(stored_hash, bytes) else stored_hash.encode("utf-8"),
        )
    except ValueError:
        # malformed stored hash
        return False


def make_access_token(user: dict) -> str:
    cfg = current_config()
    payload = {
        "sub": str(user["user_id"]),
        "email": user["email"],
        "role": user.get("role", "customer"),
        "exp": datetime.now(timezone.utc) + timedelta(hours=cfg.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, cfg.SECRET_KEY, algorithm="HS256")


def _bearer_claims() -> dict | None:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    token = auth.split(" ", 1)[1].strip()
    return jwt.decode(token, current_config().SECRET_KEY, algorithms=["HS256"])


def requires_auth(role: str | None = None):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                claims = _bearer_claims()
            except jwt.PyJWTError as e:
                return jsonify({"success": False, "error": f"Invalid token: {e}"}), 401
            if claims is None:
                return jsonify({"success": False, "error": "Missing or invalid Authorization header"}), 401
            if role and claims.get("role") != role:
                return jsonify({"success": False, "error": "Forbidden"}), 403
            request.user = claims  # type: ignore
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def optional_auth(fn):
    """Attach claims when a valid bearer token is sent; guests pass through with request.user = None."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            claims = _bearer_claims()
        except jwt.PyJWTError:
            claims = None
        request.user = claims  # type: ignore
        return fn(*args, **kwargs)
    return wrapper


def current_user_id() -> int | None:
    claims = getattr(request, "user", None) or {}
    sub = claims.get("sub")
    return int(sub) if sub is not None else None


def is_admin() -> bool:
    claims = getattr(request, "user", None) or {}
    return claims.get("role") == "admin"


def make_approval_token(order_id: int, action: str = "approve", admin_ip: str | None = None) -> tuple[str, str]:
    """Sign a single-order approval token. Returns (token, jti); the jti is stored on the order."""
    cfg = current_config()
    now = datetime.now(timezone.utc)
    jti = secrets.token_hex(16)
    payload = {
        "orderId": str(order_id),
        "action": action,
        "adminEmail": cfg.ADMIN_EMAIL,
        "adminIp": admin_ip or "unknown",
        "iat": now,
        "exp": now + timedelta(hours=cfg.APPROVAL_TOKEN_HOURS),
        "jti": jti,
    }
    return jwt.encode(payload, cfg.approval_secret, algorithm="HS256"), jti


def verify_approval_token(token: str | None, order_id: int) -> dict:
    if not token:
        raise AuthError("Invalid or expired approval token", status=400)
    try:
        claims = jwt.decode(token, current_config().approval_secret, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        log.warning("approval token rejected order_id=%s reason=%s", order_id, e)
        raise AuthError("Invalid or expired approval token", status=400)
    if claims.get("orderId") != str(order_id):
        log.warning("approval token order mismatch order_id=%s token_order=%s", order_id, claims.get("orderId"))
        raise AuthError("Invalid or expired approval token", status=400)
    return claims


def validate_registration(payload: dict) -> tuple[dict, list[str]]:
    errors: list[str] = []
    clean = {}
    for key, label in (("first_name", "First name"), ("last_name", "Last name")):
        value = str(payload.get(key) or payload.get(key.replace("_n", "N")) or "").strip()
        if not 2 <= len(value) <= 50:
            errors.append(f"{label} must be between 2 and 50 characters")
        clean[key] = value
    email = str(payload.get("email") or "").strip().lower()
    if not EMAIL_RE.match(email):
        errors.append("Please provide a valid email")
    clean["email"] = email
    password = str(payload.get("password") or "")
    if len(password) < 8:
        errors.append("Password must be at least 8 characters")
    missing = [label for rx, label in PASSWORD_RULES if not rx.search(password)]
    if missing:
        errors.append("Password must contain at least " + ", ".join(missing))
    clean["password"] = password
    phone = payload.get("phone")
    if phone:
        phone = str(phone).strip()
        if not 7 <= len(phone) <= 20:
            errors.append("Phone must be between 7 and 20 characters")
    clean["phone"] = phone or None
    return clean, errors


def public_user(user: dict) -> dict:
    return {
        "id": user["user_id"],
        "first_name": user["first_name"],
        "last_name": user["last_name"],
        "email": user["email"],
        "phone": user.get("phone"),
        "role": user.get("role", "customer"),
    }


def register_auth(app):
    @app.post("/api/auth/register")
    def register():
        payload = request.get_json(silent=True) or {}
        clean, errors = validate_registration(payload)
        if errors:
            return jsonify({"success": False, "error": errors[0], "errors": errors}), 400
        user = current_store().create_user({
            "first_name": clean["first_name"],
            "last_name": clean["last_name"],
            "email": clean["email"],
            "password_hash": hash_password(clean["password"]),
            "phone": clean["phone"],
            "role": "customer",
        })
        log.info("user registered user_id=%s", user["user_id"])
        return jsonify({
            "success": True,
            "access_token": make_access_token(user),
            "token_type": "Bearer",
            "user": public_user(user),
        }), 201

    @app.post("/api/auth/login")
    def login():
        payload = request.get_json(silent=True) or {}
        email = str(payload.get("email") or "").strip().lower()
        password = payload.get("password")
        if not email or not password:
            return jsonify({"success": False, "error": "Missing email or password"}), 400
        user = current_store().get_user_by_email(email)
        if not user or not check_password(str(password), user["password_hash"]):
            log.info("failed login email=%s", email)
            return jsonify({"success": False, "error": "Invalid credentials"}), 401
        return jsonify({
            "success": True,
            "access_token": make_access_token(user),
            "token_type": "Bearer",
            "user": public_user(user),
        }), 200

    @app.get("/api/auth/me")
    @requires_auth()
    def me():
        user = current_store().get_user(current_user_id())
        if not user:
            return jsonify({"success": False, "error": "User not found"}), 404
        return jsonify({"success": True, "user": public_user(user)})

class StorefrontError(Exception):
    status = 400

    def __init__(self, message: str, status: int | None = None, **extra):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.message}
        body.update(self.extra)
        return body


class ValidationError(StorefrontError):
    status = 400


class AuthError(StorefrontError):
    status = 401


class ForbiddenError(StorefrontError):
    status = 403


class NotFoundError(StorefrontError):
    status = 404


class ConflictError(StorefrontError):
    status = 409


class InsufficientStockError(ConflictError):
    def __init__(self, product_id: int, requested: int, available: int, name: str | None = None):
        label = name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Requested: {requested}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


def require_int(value, name: str, minimum: int | None = None, maximum: int | None = None) -> int:
    """Coerce a request value to int or raise ValidationError naming the field."""
    if isinstance(value, bool) or value is None or value == "":
        raise ValidationError(f"Valid {name} is required")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Valid {name} is required")
    if isinstance(value, float) and value != number:
        raise ValidationError(f"{name} must be a whole number")
    if minimum is not None and number < minimum:
        raise ValidationError(f"{name} must be at least {minimum}")
    if maximum is not None and number > maximum:
        raise ValidationError(f"{name} must be at most {maximum}")
    return number

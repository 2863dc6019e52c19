class StoreError(Exception):
    status_code = 500
    message = "Something went wrong"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_dict(self):
        return {"error": self.message}


class ValidationError(StoreError):
    status_code = 400
    message = "Invalid input"


class EmptyCart(ValidationError):
    message = "No items in cart"


class NotFound(StoreError):
    status_code = 404
    message = "Not found"


class InsufficientStock(StoreError):
    status_code = 400
    message = "Bag not available or insufficient quantity"


class InvalidTransition(StoreError):
    status_code = 400

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change status from {current} to {requested}")

    def to_dict(self):
        return {"error": self.message, "current": self.current, "requested": self.requested}


class Conflict(StoreError):
    status_code = 409
    message = "Conflict"


class Unauthorized(StoreError):
    status_code = 401
    message = "Authentication required"


class Forbidden(StoreError):
    status_code = 403
    message = "Access denied. Admin privileges required."


class InternalError(StoreError):
    status_code = 500
    message = "Internal server error"

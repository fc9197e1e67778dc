"""
Error taxonomy shared by the services.

Services raise these; main.py renders them as {"error": code, "detail": message}
with the matching HTTP status.
"""


class StoreError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code.replace("_", " "))
        self.message = message or self.code.replace("_", " ")


class NotFound(StoreError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str = "", key=None):
        if entity and key is not None:
            msg = f"{entity} '{key}' not found"
        elif entity:
            msg = f"{entity} not found"
        else:
            msg = "Not found"
        super().__init__(msg)


class Conflict(StoreError):
    status_code = 409
    code = "conflict"


# Duplicate registration is reported as a conflict
AlreadyExists = Conflict


class OutOfStock(StoreError):
    status_code = 409
    code = "out_of_stock"


class ProductUnavailable(StoreError):
    status_code = 409
    code = "product_unavailable"

    def __init__(self, product_name: str):
        super().__init__(f"Product {product_name} is no longer available in requested quantity")
        self.product_name = product_name


class InsufficientStock(StoreError):
    status_code = 409
    code = "insufficient_stock"


class Forbidden(StoreError):
    status_code = 403
    code = "forbidden"


class Unauthorized(StoreError):
    status_code = 401
    code = "unauthorized"


class InvalidTransition(StoreError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, from_status: str = "", to_status: str = ""):
        if from_status and to_status:
            msg = f"Cannot move order from '{from_status}' to '{to_status}'"
        else:
            msg = "Order cannot be changed in its current state"
        super().__init__(msg)


class EmptyCart(StoreError):
    status_code = 400
    code = "empty_cart"

    def __init__(self):
        super().__init__("Cannot place an order with an empty cart")


class ValidationError(StoreError):
    status_code = 422
    code = "validation_error"


class PaymentError(StoreError):
    """Gateway failure, message passed through as the gateway reported it."""

    status_code = 502
    code = "payment_error"

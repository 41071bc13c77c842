"""Errors raised by batch ingestion and mapped to HTTP responses."""


class TrackingError(Exception):
    """Base class for batch rejections; nothing from the batch is persisted."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TrackingError):
    """The batch is malformed (missing ids, event type, or conversion contact data)."""


class TenantNotFoundError(TrackingError):
    """The batch names a business that does not exist."""

    def __init__(self, business_id: int):
        super().__init__(f"Business {business_id} not found")
        self.business_id = business_id

"""Error taxonomy for the pharmacy core.

Every error is a local failure returned synchronously to the caller. The
HTTP status each one maps to lives on the class so the exception handler in
``main.py`` stays a single function.
"""
from typing import Optional


class PharmacyError(Exception):
    """Base class for all domain errors"""
    status_code = 400
    error_code = "pharmacy_error"

    def __init__(self, detail: str, *, entity: Optional[str] = None, entity_id: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.entity = entity
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        body = {"detail": self.detail, "error": self.error_code}
        if self.entity:
            body["entity"] = self.entity
            body["entity_id"] = self.entity_id
        return body


class InvalidStateTransition(PharmacyError):
    """Transition not legal from the entity's current state"""
    status_code = 409
    error_code = "invalid_state_transition"


class InsufficientStock(PharmacyError):
    """Deduction would take a medicine below zero"""
    status_code = 409
    error_code = "insufficient_stock"


class InvalidQuantity(PharmacyError):
    status_code = 400
    error_code = "invalid_quantity"


class ValidationError(PharmacyError):
    """Missing or malformed required fields"""
    status_code = 400
    error_code = "validation_error"


class NotFound(PharmacyError):
    status_code = 404
    error_code = "not_found"

    def __init__(self, entity: str, entity_id: Optional[int] = None):
        super().__init__(f"{entity} not found", entity=entity, entity_id=entity_id)


class ExternalServiceError(PharmacyError):
    """Payment collaborator failed or timed out"""
    status_code = 502
    error_code = "external_service_error"

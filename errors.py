"""
Error taxonomy shared by the order and review handlers.

Every error is an HTTPException so a route can simply let it propagate;
main.py renders them as {"kind": ..., "detail": ...}.
"""
from fastapi import HTTPException
from pydantic import ValidationError


class MarketplaceError(HTTPException):
    kind = "InternalError"
    status = 500

    def __init__(self, detail: str):
        super().__init__(status_code=self.status, detail=detail)


class NotFound(MarketplaceError):
    kind = "NotFound"
    status = 404


class Forbidden(MarketplaceError):
    kind = "Forbidden"
    status = 403


class Conflict(MarketplaceError):
    kind = "Conflict"
    status = 409


class ValidationFailure(MarketplaceError):
    kind = "ValidationFailure"
    status = 422


class PersistenceFailure(MarketplaceError):
    kind = "PersistenceFailure"
    status = 500


def validation_failure(exc: ValidationError) -> ValidationFailure:
    # report the first error only
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ())) or "payload"
    return ValidationFailure(f"{field}: {err.get('msg')}")

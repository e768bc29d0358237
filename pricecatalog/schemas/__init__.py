"""Pydantic schemas shared across the admin API."""

from pricecatalog.schemas.common import ERROR_CODES, ErrorDetail, ErrorResponse

__all__ = [
    "ERROR_CODES",
    "ErrorDetail",
    "ErrorResponse",
]

"""
Error types shared by the deal store, the admin gate and the HTTP layer.

The HTTP layer maps each one to a status code in main.py; nothing here knows
about FastAPI.
"""

from typing import Optional


class StoreError(Exception):
    """Base class for every error raised by a deal store."""


class DealNotFound(StoreError):
    def __init__(self, key: str):
        super().__init__(f"Deal not found: {key}")
        self.key = key


class DuplicateDeal(StoreError):
    def __init__(self, deal_id: str):
        super().__init__(f"A deal with id {deal_id!r} already exists")
        self.deal_id = deal_id


class BackendUnavailable(StoreError):
    """The backing file or database could not be read or written."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class InvalidPayload(Exception):
    """Malformed request body: unparseable JSON, empty patch, bad field values."""


class Unauthorized(Exception):
    def __init__(self, message: str = "Invalid or missing admin token"):
        super().__init__(message)
        self.message = message

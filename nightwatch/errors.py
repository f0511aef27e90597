"""
nightwatch.errors — Typed Service Errors
=========================================

The Guild Service raises these; the API translates them into HTTP status
codes through the handlers registered in :mod:`nightwatch.api.main`.
Storage-engine exceptions never leave the service layer in their raw form.

=================  ======  =========================================
Error              Status  Meaning
=================  ======  =========================================
NotFoundError      404     Target guild or child row is absent
ConflictError      409     Uniqueness violation
ValidationError    400     Malformed input or field constraint
StorageError       500     Transaction / connectivity failure
=================  ======  =========================================
"""

from __future__ import annotations


class NightwatchError(Exception):
    """Base class for every error the service layer raises on purpose."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(NightwatchError):
    status_code = 404


class ConflictError(NightwatchError):
    status_code = 409


class ValidationError(NightwatchError):
    status_code = 400


class StorageError(NightwatchError):
    status_code = 500

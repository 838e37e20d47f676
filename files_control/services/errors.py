"""Errors raised by the access grant store.

Redemption refusals are not errors; they come back as a RedemptionOutcome.
"""


class AccessGrantError(Exception):
    """Base class for access grant store failures."""

    code = "access_grant_error"

    def __init__(self, message: str, details: object | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidArgumentError(AccessGrantError):
    """Bad expiry, maxUses, access key or provider request."""

    code = "invalid_argument"


class NotFoundError(AccessGrantError):
    """Missing pending upload, file, access key or grant."""

    code = "not_found"


class DuplicateKeyError(AccessGrantError):
    """Unique (accessKey, storageId) pair or storage id already taken."""

    code = "duplicate_key"

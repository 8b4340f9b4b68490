"""
Error taxonomy shared by the auth, storage and HTTP layers.

Every error a handler can surface is an APIError carrying its HTTP status
code, so the error middleware can render it without knowing the subclass.
"""

from typing import Any, Dict, Iterable, Optional


class APIError(Exception):
    """API exception with status code and message"""
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(APIError):
    """Malformed input"""
    status_code = 400


class Unauthorized(APIError):
    """Credential missing"""
    status_code = 401


class Forbidden(APIError):
    """Credential present but not acceptable for this request"""
    status_code = 403


class NotFoundError(APIError):
    status_code = 404


class ConflictError(APIError):
    """Uniqueness violation on handle, email or title"""
    status_code = 409


class CredentialError(APIError):
    """The password hashing primitive itself failed"""
    status_code = 500


class TokenError(Forbidden):
    """Base class for session token verification failures"""


class MalformedToken(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class TokenExpired(TokenError):
    pass


class PartialCascadeFailure(APIError):
    """
    The primary record was deleted but cleanup of dependent records did not
    finish. `failed_collections` names the collections that may still hold
    orphans; `removed` counts what was cleaned up before the failure.
    """
    status_code = 500

    def __init__(self, message: str, failed_collections: Iterable[str],
                 removed: Optional[Dict[str, int]] = None):
        self.failed_collections = sorted(failed_collections)
        self.removed = dict(removed or {})
        super().__init__(message, details={
            'failed_collections': self.failed_collections,
            'removed': self.removed,
        })

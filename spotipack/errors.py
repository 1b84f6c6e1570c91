from __future__ import annotations
from typing import Optional


class RemoteError(RuntimeError):
    def __init__(self, status: int, detail: object, *, service: Optional[str] = None):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message
        self.service = service


class AuthExpired(RemoteError):
    """Authorization was rejected; recoverable by one refresh and one retry."""


class Forbidden(RemoteError):
    """The remote service declined the operation (entitlement or permission)."""


class ValidationFailure(RemoteError):
    """Malformed input or an unknown resource."""


class TransientError(RemoteError):
    """Anything else: network trouble, rate limits, server errors."""


class CredentialUnavailable(TransientError):
    def __init__(self, service: str):
        super().__init__(0, f'{service} credential is not available', service=service)


def error_for_status(status: int) -> type:
    if status == 401:
        return AuthExpired
    if status == 403:
        return Forbidden
    if status in (400, 404):
        return ValidationFailure
    return TransientError


def raise_for_status(status: int, detail: object, *, service: Optional[str] = None) -> None:
    if status < 400:
        return
    cls = error_for_status(status)
    raise cls(status, detail or f'request failed with status {status}', service=service)

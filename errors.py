from enum import Enum
from typing import Optional


class AuthErrorReason(str, Enum):
    invalid_credentials = "invalid_credentials"
    email_not_confirmed = "email_not_confirmed"
    email_taken = "email_taken"
    rate_limited = "rate_limited"
    account_disabled = "account_disabled"
    invalid_token = "invalid_token"
    network = "network"


class DataErrorKind(str, Enum):
    not_found = "not_found"
    constraint = "constraint"
    permission_denied = "permission_denied"


_AUTH_MESSAGES = {
    AuthErrorReason.invalid_credentials: "Wrong email or password",
    AuthErrorReason.email_not_confirmed: "Email address has not been confirmed yet",
    AuthErrorReason.email_taken: "An account with this email already exists",
    AuthErrorReason.rate_limited: "Too many sign-in attempts, try again later",
    AuthErrorReason.account_disabled: "This account has been deactivated",
    AuthErrorReason.invalid_token: "The link is invalid or has expired",
    AuthErrorReason.network: "The authentication service could not be reached",
}


class AuthError(Exception):
    """Raised by the directory for identity operations; never retried."""

    def __init__(self, reason: AuthErrorReason, message: Optional[str] = None) -> None:
        self.reason = reason
        self.message = message or _AUTH_MESSAGES[reason]
        super().__init__(self.message)


class DataError(Exception):
    """Raised by the data adapters (ledger, directory rows, blob storage)."""

    def __init__(self, kind: DataErrorKind, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(message)

    @classmethod
    def not_found(cls, what: str) -> "DataError":
        return cls(DataErrorKind.not_found, f"{what} not found")

    @classmethod
    def constraint(cls, message: str) -> "DataError":
        return cls(DataErrorKind.constraint, message)

    @classmethod
    def permission_denied(cls, message: str = "Permission denied") -> "DataError":
        return cls(DataErrorKind.permission_denied, message)


class ProfileResolutionTimeout(TimeoutError):
    """Profile lookup exceeded its bound; recovered inside the session store."""

    def __init__(self, user_id: str, timeout: float) -> None:
        self.user_id = user_id
        self.timeout = timeout
        super().__init__(f"Profile resolution for {user_id} exceeded {timeout:.1f}s")

"""Error taxonomy shared by intake, approval, provisioning and tokens.

Every class carries a stable ``code`` that the HTTP and chat boundaries map
to a status or a user-facing message.
"""
from typing import Optional


class RegistrationError(Exception):
    code = "registration_error"

    def __init__(self, message: Optional[str] = None, **context):
        super().__init__(message or self.code)
        self.context = context


class ValidationError(RegistrationError):
    code = "validation_error"

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"{field} is required", field=field)
        self.field = field


# --- Conflicts ---

class ConflictError(RegistrationError):
    code = "conflict"


class UsernameTaken(ConflictError):
    code = "username_taken"

    def __init__(self, username: str, message: Optional[str] = None):
        super().__init__(message or f"username {username!r} is taken", username=username)
        self.username = username


class AlreadyRegistered(ConflictError):
    code = "already_registered"


class IpAlreadyRegistered(ConflictError):
    code = "ip_already_registered"


class RequestAlreadyPending(ConflictError):
    code = "request_already_pending"


class RegistrantBanned(ConflictError):
    code = "registrant_banned"


# --- Remote ---

class DirectoryUnavailable(RegistrationError):
    """Transient directory failure. Callers may retry."""
    code = "directory_unavailable"


# --- Replay and stale actions ---

class StaleActionError(RegistrationError):
    code = "stale_action"


class AlreadyHandled(StaleActionError):
    code = "already_handled"


class AlreadyUsed(StaleActionError):
    code = "already_used"


class Expired(StaleActionError):
    code = "expired"


class TokenNotFound(StaleActionError):
    code = "token_not_found"


class PayloadMissing(StaleActionError):
    code = "payload_missing"


# --- Provisioning ---

class ProvisionFailed(RegistrationError):
    code = "provision_failed"


class ApprovedButProvisionFailed(ProvisionFailed):
    code = "approved_but_provision_failed"


class InconsistentState(RegistrationError):
    """The directory account exists but the local finalize did not commit."""
    code = "inconsistent_state"

"""
Client Errors
=============

Every failure the request layer, codec and orchestrator raise. Network,
session and abuse errors always reach the orchestrator and map to an
explicit phase transition; item-local errors are recorded on the item.
"""

from typing import Optional


class GramVaultError(Exception):
    """Base class for all GramVault errors."""

    code = "GRAMVAULT_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ==========================================================================
# Guard / Abuse
# ==========================================================================

class LockedOut(GramVaultError):
    """Account lockdown is active; no request leaves the process."""

    code = "LOCKED_OUT"

    def __init__(self, reason: str, remaining: float):
        super().__init__(f"Locked: {reason} ({int(remaining)}s remaining)")
        self.reason = reason
        self.remaining = remaining


class RateLimited(GramVaultError):
    """Local hourly ceiling reached. Nothing was sent."""

    code = "RATE_LIMITED"

    def __init__(self, retry_at: float):
        super().__init__("Hourly action ceiling reached")
        self.retry_at = retry_at


class AbuseDetected(GramVaultError):
    """Platform flagged the traffic. Lockdown has been armed."""

    code = "ABUSE_DETECTED"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ChallengeRequired(GramVaultError):
    """Platform demands human verification. Lockdown has been armed."""

    code = "CHALLENGE_REQUIRED"


# ==========================================================================
# Transport / Session
# ==========================================================================

class NetworkFailure(GramVaultError):
    """Transport-level failure. Retryable."""

    code = "NETWORK_FAILURE"


class ConnectivityTimeout(NetworkFailure):
    """No connectivity within the wait bound."""

    code = "CONNECTIVITY_TIMEOUT"


class SessionExpired(GramVaultError):
    """Session rejected by the platform; re-auth required."""

    code = "SESSION_EXPIRED"


class NotLoggedIn(GramVaultError):
    """No session loaded."""

    code = "NOT_LOGGED_IN"


class HttpError(GramVaultError):
    """Non-success status without a stronger classification."""

    code = "HTTP_ERROR"

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(f"HTTP {status}: {message or 'no message'}")
        self.status = status
        self.detail = message


class UploadRejected(GramVaultError):
    """Upload or configure response lacked the expected identifiers."""

    code = "UPLOAD_REJECTED"


# ==========================================================================
# Item-local
# ==========================================================================

class DuplicateContent(GramVaultError):
    """Same bytes as the last successful upload and repeats are off."""

    code = "DUPLICATE_CONTENT"


class CompressionFailure(GramVaultError):
    """Image could not be decoded or brought under the byte ceiling."""

    code = "COMPRESSION_FAILURE"


# ==========================================================================
# Orchestration
# ==========================================================================

class InvalidTransition(GramVaultError):
    """Requested control action is not valid in the current phase."""

    code = "INVALID_TRANSITION"


class BatchNotFound(GramVaultError):
    code = "BATCH_NOT_FOUND"

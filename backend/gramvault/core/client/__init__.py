"""
Platform Client
===============

Components:
- RequestSigner: mobile-client header set and signed-body envelope
- AbuseGuard: rate window, backoff and account lockdown
- ApiClient: guarded execution over read/write lanes
- MediaService: upload sub-protocol, configure, archive

Only the error types are re-exported here.
"""

from gramvault.core.client.errors import (
    AbuseDetected,
    ChallengeRequired,
    CompressionFailure,
    ConnectivityTimeout,
    DuplicateContent,
    GramVaultError,
    HttpError,
    LockedOut,
    NetworkFailure,
    RateLimited,
    SessionExpired,
)

__all__ = [
    "AbuseDetected",
    "ChallengeRequired",
    "CompressionFailure",
    "ConnectivityTimeout",
    "DuplicateContent",
    "GramVaultError",
    "HttpError",
    "LockedOut",
    "NetworkFailure",
    "RateLimited",
    "SessionExpired",
]

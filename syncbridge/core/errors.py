from __future__ import annotations


class SyncBridgeError(Exception):
    """Base error for SyncBridge."""


class UnknownServiceError(SyncBridgeError):
    """No integration type is registered under the requested service name."""


class InvalidPostcondition(SyncBridgeError):
    """Configuration integrity violation, such as a missing auth ancestor."""


class InvalidPrecondition(SyncBridgeError):
    """A dependency assignment would break the integration graph."""


class InvalidStateChange(SyncBridgeError):
    """Onboarding tried to set a field the integration does not accept."""


class CredentialsMissing(SyncBridgeError):
    """A backfill was requested before its credentials were entered."""


class CredentialEncryptionError(SyncBridgeError):
    """Credential encryption key missing or unable to decrypt a stored value."""


class MalformedPayload(SyncBridgeError):
    """Webhook body could not be parsed into a document."""


class TableAlreadyExists(SyncBridgeError):
    """Replication table was created a second time."""


class HttpError(SyncBridgeError):
    """Source API request failed."""

    def __init__(self, message: str, *, status: int | None = None, url: str = "", body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.url = url
        self.body = body

    @property
    def status_code(self) -> int | None:
        return self.status


class RetryableTransportError(HttpError):
    """Timeout, network failure or 5xx from a source API."""


class FatalTransportError(HttpError):
    """4xx from a source API; never retried."""

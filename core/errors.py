"""Error taxonomy for the AWS CLI gateway."""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for every failure surfaced to chat users."""

    category = "error"

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class ConfigurationError(GatewayError):
    category = "configuration"


class AuthorizationDenied(GatewayError):
    category = "authorization"


# ── Provisioning ──


class ProvisioningError(GatewayError):
    category = "provisioning"


class UnsupportedArchitecture(ProvisioningError):
    pass


class NoDownloadURL(ProvisioningError):
    pass


class DownloadFailed(ProvisioningError):
    pass


class ExtractionFailed(ProvisioningError):
    pass


class EntryTooLarge(ExtractionFailed):
    pass


class TotalTooLarge(ExtractionFailed):
    pass


class PathEscapeError(ExtractionFailed):
    pass


class ExtractionIOError(ExtractionFailed):
    pass


class ExtractionCancelled(ExtractionFailed):
    pass


# ── Execution ──


class ExecutionError(GatewayError):
    category = "execution"

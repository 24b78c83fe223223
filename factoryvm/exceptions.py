"""Custom exceptions for factory-vm."""

from __future__ import annotations

from typing import Optional


class FactoryError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(FactoryError):
    """Invalid configuration value."""


class InsufficientResourcesError(FactoryError):
    """The host cannot satisfy any candidate profile and the operator did not confirm."""


class FatalInstallError(FactoryError):
    """The unattended installer did not reach completion. Aborts the whole run."""

    def __init__(self, message: str, guidance: str = "") -> None:
        super().__init__(message)
        self.guidance = guidance


class StepFailure(FactoryError):
    """A remote bootstrap step failed."""

    def __init__(self, message: str, remediation: Optional[str] = None) -> None:
        super().__init__(message)
        self.remediation = remediation


class ReadinessTimeout(FactoryError):
    """A bounded wait for a remote condition expired."""


class TrustPropagationPartial(FactoryError):
    """One or more trust stores could not be updated."""

    def __init__(self, message: str, report) -> None:
        super().__init__(message)
        self.report = report


class CacheCorruption(FactoryError):
    """A cached artifact is present but fails its integrity check."""


class DownloadError(FactoryError):
    """Fetching an artifact over the network failed."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ConsoleTimeout(FactoryError):
    """No expected console output arrived within the bounded wait."""


class ConsoleClosed(FactoryError):
    """The guest console stream ended."""


class ConsoleCancelled(FactoryError):
    """A console wait was abandoned because the operator asked to stop."""

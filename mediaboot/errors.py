"""
Exception taxonomy for the bootstrap core.

Transient conditions (network, credentials) are recoverable and are downgraded to
degraded mode by the boot sequence. Structural conditions (task graph defects,
missing configuration) are fatal.
"""
from __future__ import annotations


class MediabootError(Exception):
    """Base exception for all bootstrap errors"""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        """Convert exception to dictionary for API responses"""
        result = {"error": self.__class__.__name__, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class CredentialError(MediabootError):
    """Raised when no usable credential could be obtained (bad, expired or corrupt token)"""

    def __init__(self, message: str = "Could not authenticate now", details: str | None = None):
        super().__init__(message, details or "Re-authenticate to obtain a fresh credential.")


class NetworkUnavailableError(MediabootError):
    """Raised when a remote service cannot be reached"""

    def __init__(self, service: str, reason: str | None = None):
        message = f"Network unavailable: {service}"
        super().__init__(message, reason or "The request will be retried once connectivity returns.")
        self.service = service
        self.reason = reason


class RemoteServiceError(MediabootError):
    """Raised when a remote service answers with an unusable response"""

    def __init__(self, service: str, status_code: int | None = None, reason: str | None = None):
        message = f"{service} request failed"
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message, reason)
        self.service = service
        self.status_code = status_code
        self.reason = reason


class InvalidTransitionError(MediabootError):
    """Raised when a caller requires a bootstrap phase transition that is not legal"""

    def __init__(self, source: str, target: str):
        super().__init__(f"Invalid setup transition: {source} -> {target}")
        self.source = source
        self.target = target


class TaskGraphError(MediabootError):
    """Raised when the startup task declaration is malformed"""


class DependencyCycleError(TaskGraphError):
    """Raised when startup task dependencies form a cycle"""

    def __init__(self, cycle: list[str]):
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            "Startup tasks must form an acyclic graph.",
        )
        self.cycle = cycle


class DependencyUnsatisfiedError(MediabootError):
    """Raised when a required startup task cannot run because a dependency did not complete"""

    def __init__(self, task: str, missing: list[str]):
        super().__init__(
            f"Required startup task '{task}' has unmet dependencies: {', '.join(missing)}",
            "Boot cannot continue without this task.",
        )
        self.task = task
        self.missing = missing


class ConfigurationError(MediabootError):
    """Raised when required configuration is missing or invalid"""

    def __init__(self, config_key: str, reason: str | None = None):
        message = f"Invalid configuration: {config_key}"
        details = reason or "Please check your configuration settings"
        super().__init__(message, details)
        self.config_key = config_key


class RegistrationCooldownError(MediabootError):
    """Raised when registration is attempted too soon after a failure"""

    def __init__(self, remaining_seconds: float):
        super().__init__(
            "Registration on cooldown after recent failure",
            f"Retry in {remaining_seconds:.0f}s",
        )
        self.remaining_seconds = remaining_seconds

"""Startup and connection error taxonomy.

ConfigError and FatalStartupError end the process; TransientConnectionError is
retried by the connection manager; ProbeFailure and ShutdownError are logged
and never escalate on their own.
"""

from __future__ import annotations

from typing import List, Optional


class StartupError(Exception):
    """Base error with an actionable diagnostic: what failed, likely cause, remedy."""

    def __init__(
        self,
        what: str,
        *,
        cause: Optional[str] = None,
        remedy: Optional[List[str]] = None,
    ) -> None:
        super().__init__(what)
        self.what = what
        self.cause = cause
        self.remedy = list(remedy or [])

    def diagnostic(self) -> str:
        lines = [self.what]
        if self.cause:
            lines.append(f"  Likely cause: {self.cause}")
        for step in self.remedy:
            lines.append(f"  • {step}")
        return "\n".join(lines)


class ConfigError(StartupError):
    """Missing or malformed configuration. Never retried."""


class FatalStartupError(StartupError):
    """Unrecoverable startup condition; the process exits with code 1."""


class PortUnavailableError(FatalStartupError):
    """The HTTP port is already held by another (usually stale) process."""


class TransientConnectionError(Exception):
    """A single failed connection attempt that may succeed on retry."""

    def __init__(self, attempt: int, category, original: BaseException) -> None:
        super().__init__(f"attempt {attempt} failed: {original}")
        self.attempt = attempt
        self.category = category
        self.original = original


class ProbeFailure(Exception):
    """Liveness ping failed while the connection reports itself as connected."""


class ShutdownError(Exception):
    """Error raised while closing the database handle."""

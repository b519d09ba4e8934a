"""Best-effort initialization of optional subsystems.

An optional subsystem (email, notifications, ...) is an async callable that
returns True when enabled, False when intentionally disabled, or raises.
Bootstrap inspects the result but never treats it as fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Initializer = Callable[[], Awaitable[bool]]


@dataclass
class SubsystemResult:
    name: str
    enabled: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_optional(name: str, initializer: Initializer) -> SubsystemResult:
    """Run ``initializer`` and fold every outcome into a SubsystemResult."""
    try:
        enabled = bool(await initializer())
    except Exception as exc:
        logger.warning("%s service skipped: %s", name, exc)
        return SubsystemResult(name=name, enabled=False, error=str(exc) or type(exc).__name__)
    if enabled:
        logger.info("%s service initialized", name)
    else:
        logger.info("%s feature disabled (not configured)", name)
    return SubsystemResult(name=name, enabled=enabled)

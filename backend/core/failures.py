"""Map connection errors to a diagnostic category.

Errors arrive wrapped: SQLAlchemy raises OperationalError around the DBAPI
error, which in turn may chain the socket error. The whole chain is searched,
rule by rule, so the most specific cause wins regardless of wrapping depth.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from enum import Enum
from typing import Callable, List, Tuple

from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class DiagnosticCategory(str, Enum):
    CONNECTION_REFUSED = "connection_refused"
    NAME_RESOLUTION_FAILURE = "name_resolution_failure"
    MALFORMED_ADDRESS = "malformed_address"
    NETWORK_UNREACHABLE = "network_unreachable"
    UNKNOWN = "unknown"


_HINTS = {
    DiagnosticCategory.CONNECTION_REFUSED: "Database server is not accepting connections",
    DiagnosticCategory.NAME_RESOLUTION_FAILURE: "DNS lookup failed: check the DATABASE_URL hostname",
    DiagnosticCategory.MALFORMED_ADDRESS: "Connection string is malformed",
    DiagnosticCategory.NETWORK_UNREACHABLE: "Network unreachable: check firewall / VPN",
    DiagnosticCategory.UNKNOWN: "Unrecognised connection failure",
}

# Bound on chain walking; exception chains can be cyclic.
_MAX_CHAIN = 16


def _chain(error: BaseException) -> List[BaseException]:
    seen: List[BaseException] = []
    pending = [error]
    while pending and len(seen) < _MAX_CHAIN:
        current = pending.pop(0)
        if current is None or any(current is s for s in seen):
            continue
        seen.append(current)
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException):
            pending.append(orig)
        pending.append(current.__cause__)
        pending.append(current.__context__)
    return seen


def _errno_in(error: BaseException, codes: Tuple[int, ...]) -> bool:
    code = getattr(error, "errno", None)
    return isinstance(code, int) and code in codes


def _is_refused(error: BaseException) -> bool:
    return isinstance(error, ConnectionRefusedError) or _errno_in(error, (errno.ECONNREFUSED,))


def _is_name_resolution(error: BaseException) -> bool:
    return isinstance(error, socket.gaierror)


def _is_malformed(error: BaseException) -> bool:
    return isinstance(error, sa_exc.ArgumentError)


def _is_unreachable(error: BaseException) -> bool:
    if _errno_in(error, (errno.ENETUNREACH, errno.EHOSTUNREACH)):
        return True
    return isinstance(
        error,
        (TimeoutError, asyncio.TimeoutError, sa_exc.OperationalError, sa_exc.InterfaceError),
    )


_RULES: List[Tuple[Callable[[BaseException], bool], DiagnosticCategory]] = [
    (_is_refused, DiagnosticCategory.CONNECTION_REFUSED),
    (_is_name_resolution, DiagnosticCategory.NAME_RESOLUTION_FAILURE),
    (_is_malformed, DiagnosticCategory.MALFORMED_ADDRESS),
    (_is_unreachable, DiagnosticCategory.NETWORK_UNREACHABLE),
]


def explain(category: DiagnosticCategory) -> str:
    """Human-readable hint for a category."""
    return _HINTS[category]


def classify(error: BaseException) -> DiagnosticCategory:
    """Return the diagnostic category for a connection error and log its hint.

    Never raises; anything unrecognised is UNKNOWN.
    """
    category = DiagnosticCategory.UNKNOWN
    try:
        chain = _chain(error)
        for matches, candidate in _RULES:
            if any(matches(e) for e in chain):
                category = candidate
                break
    except Exception:  # pragma: no cover - classification must stay total
        category = DiagnosticCategory.UNKNOWN
    logger.error("   → %s", explain(category))
    return category

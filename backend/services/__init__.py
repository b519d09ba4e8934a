"""Services: optional subsystems initialized during bootstrap."""

from .optional import SubsystemResult, run_optional

__all__ = [
    "SubsystemResult",
    "run_optional",
]

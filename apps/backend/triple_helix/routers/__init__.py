"""HTTP routers exposed by the scheduler API."""

from . import health, sync, tubes

__all__ = [
    "health",
    "sync",
    "tubes",
]

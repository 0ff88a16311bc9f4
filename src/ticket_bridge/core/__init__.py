"""Core runtime primitives: stores, ticket lifecycle and tenant registry."""

from .exceptions import (
    BridgeError,
    CascadeError,
    DegradableMediaError,
    NotFoundError,
    PersistenceError,
    TransportError,
)
from .identity import UNKNOWN_NUMBER, normalize_phone
from .media_store import sanitize_name

__all__ = [
    "BridgeError",
    "CascadeError",
    "DegradableMediaError",
    "NotFoundError",
    "PersistenceError",
    "TransportError",
    "UNKNOWN_NUMBER",
    "normalize_phone",
    "sanitize_name",
]

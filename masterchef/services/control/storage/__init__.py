"""Reusable in-memory storage primitives for control-plane stores."""

from __future__ import annotations

from .expiry import ExpiryRule, sweep_expired
from .keyed import KeyedStore
from .records import Record, dataclass_to_dict, to_jsonable
from .ring import BoundedRing

__all__ = [
    "BoundedRing",
    "ExpiryRule",
    "KeyedStore",
    "Record",
    "dataclass_to_dict",
    "sweep_expired",
    "to_jsonable",
]

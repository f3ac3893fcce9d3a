"""Control-plane stores.

Import individual store modules for their record types; the package root
exposes the error hierarchy and the :class:`ControlPlane` composition root.
"""

from .errors import (
    ConflictError,
    ControlPlaneError,
    NotFoundError,
    ValidationError,
    status_code_for,
)
from .events import Event, EventQuery, EventStore
from .merge import Layer, MergeStrategy, merge_layers, resolve_pillar
from .plane import ControlPlane
from .variables import VariableConflictError, resolve_variables

__all__ = [
    "ConflictError",
    "ControlPlane",
    "ControlPlaneError",
    "Event",
    "EventQuery",
    "EventStore",
    "Layer",
    "MergeStrategy",
    "NotFoundError",
    "ValidationError",
    "VariableConflictError",
    "merge_layers",
    "resolve_pillar",
    "resolve_variables",
    "status_code_for",
]

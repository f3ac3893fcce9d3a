"""Master/syndic/minion topology with parent-pointer routing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from masterchef.foundation.common.strings import normalize
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ConflictError, NotFoundError, ValidationError
from .storage import KeyedStore, Record, dataclass_to_dict

logger = logging.getLogger(__name__)


class SyndicRole(StrEnum):
    MASTER = "master"
    SYNDIC = "syndic"
    MINION = "minion"


@dataclass
class SyndicNode(Record):
    name: str
    role: SyndicRole
    parent: str = ""
    region: str = ""
    segment: str = ""
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class SyndicRoute:
    target: str
    path: list[str] = field(default_factory=list)
    hops: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


class SyndicStore:
    """Nodes keyed by lowercased name; routes walk parent pointers to a master."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._nodes: KeyedStore[SyndicNode] = KeyedStore(
            "syndic-node",
            clock=clock,
            natural_key=lambda node: node.name,
            sort_key=lambda node: node.name,
            reverse=False,
        )

    def upsert(
        self,
        *,
        name: str,
        role: str,
        parent: str = "",
        region: str = "",
        segment: str = "",
    ) -> SyndicNode:
        name = normalize(name)
        raw_role = normalize(role)
        if not name or not raw_role:
            raise ValidationError("name and role are required")
        try:
            node_role = SyndicRole(raw_role)
        except ValueError as exc:
            raise ValidationError("role must be master, syndic, or minion") from exc
        parent = normalize(parent)
        if node_role is SyndicRole.MASTER and parent:
            raise ValidationError("parent is not allowed for master role")
        if node_role is not SyndicRole.MASTER and not parent:
            raise ValidationError("parent is required for non-master roles")
        if parent == name:
            raise ValidationError("node cannot be its own parent")
        node = SyndicNode(
            name=name,
            role=node_role,
            parent=parent,
            region=normalize(region),
            segment=normalize(segment),
        )
        with self._nodes.lock:
            if parent:
                parent_node = self._by_name_locked(parent)
                if parent_node is None:
                    raise ValidationError("parent node not found")
                if parent_node.role is SyndicRole.MINION:
                    raise ValidationError("parent role cannot be minion")
                if self._is_ancestor_locked(name, parent):
                    raise ConflictError("cyclic parent topology detected")
            if node_role is SyndicRole.MINION and self._has_children_locked(name):
                raise ConflictError("node with children cannot be set to minion role")
            stored = self._nodes.upsert(node)
        logger.debug("syndic node %s upserted as %s under %s", name, node_role, parent or "-")
        return stored

    def get(self, name: str) -> SyndicNode | None:
        return self._nodes.find(lambda node: node.name == normalize(name))

    def list(self) -> list[SyndicNode]:
        return self._nodes.list()

    def delete(self, name: str) -> bool:
        """Remove a node; nodes that still have children are refused."""

        name = normalize(name)
        with self._nodes.lock:
            node = self._by_name_locked(name)
            if node is None:
                return False
            if self._has_children_locked(name):
                raise ConflictError("node with children cannot be deleted")
            return self._nodes.delete(node.id)

    def resolve_route(self, target: str) -> SyndicRoute:
        """Return the master-to-target path, refusing cycles and broken links."""

        target = normalize(target)
        with self._nodes.lock:
            node = self._by_name_locked(target)
            if node is None:
                raise NotFoundError("target node not found")
            path = [node.name]
            seen = {node.name}
            parent = node.parent
            while parent:
                if parent in seen:
                    raise ConflictError("cyclic parent topology detected")
                seen.add(parent)
                path.append(parent)
                parent_node = self._by_name_locked(parent)
                if parent_node is None:
                    raise ConflictError("broken parent link in topology")
                parent = parent_node.parent
        path.reverse()
        return SyndicRoute(target=node.name, path=path, hops=len(path) - 1)

    def _by_name_locked(self, name: str) -> SyndicNode | None:
        for node in self._nodes.live():
            if node.name == name:
                return node
        return None

    def _has_children_locked(self, name: str) -> bool:
        return any(node.parent == name for node in self._nodes.live())

    def _is_ancestor_locked(self, name: str, start: str) -> bool:
        seen: set[str] = set()
        current = start
        while current and current not in seen:
            if current == name:
                return True
            seen.add(current)
            node = self._by_name_locked(current)
            current = node.parent if node is not None else ""
        return False


__all__ = ["SyndicNode", "SyndicRole", "SyndicRoute", "SyndicStore"]

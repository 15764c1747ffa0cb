"""Hook through which leader-only mutations are applied.

A deployment replicating the control plane plugs its own implementation in;
the default is a single node that is always leader.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from hellojohn.logging import get_logger
from hellojohn.store.errors import NotLeader

logger = get_logger(__name__)


@dataclass
class Change:
    kind: str
    tenant: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)


class ClusterHook:
    mode = "single"

    def is_leader(self) -> bool:
        raise NotImplementedError

    def leader_id(self) -> Optional[str]:
        raise NotImplementedError

    def apply(self, change: Change, mutate: Callable[[], Any]) -> Any:
        """Run ``mutate`` if this node may write; raise :class:`NotLeader` otherwise."""
        raise NotImplementedError

    def status(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "role": "leader" if self.is_leader() else "follower",
            "leader_id": self.leader_id(),
        }


class SingleNodeCluster(ClusterHook):
    def __init__(self, node_id: str = "local"):
        self.node_id = node_id

    def is_leader(self) -> bool:
        return True

    def leader_id(self) -> Optional[str]:
        return self.node_id

    def apply(self, change: Change, mutate: Callable[[], Any]) -> Any:
        result = mutate()
        logger.debug("cluster_change_applied", kind=change.kind, tenant=change.tenant)
        return result


class StaticFollowerCluster(ClusterHook):
    """A node that never leads; every write is refused with the known leader id."""

    mode = "static"

    def __init__(self, leader: Optional[str] = None):
        self._leader = leader

    def is_leader(self) -> bool:
        return False

    def leader_id(self) -> Optional[str]:
        return self._leader

    def apply(self, change: Change, mutate: Callable[[], Any]) -> Any:
        logger.warning(
            "cluster_change_rejected", kind=change.kind, tenant=change.tenant, leader_id=self._leader
        )
        raise NotLeader(self._leader)

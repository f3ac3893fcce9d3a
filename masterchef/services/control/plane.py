"""Composition root wiring every control-plane store together."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from masterchef.foundation.common.timeutils import Clock, utc_now
from masterchef.foundation.config import ControlPlaneConfig

from .agents import AgentCheckinStore, AgentDispatchStore
from .approvals import AccessApprovalStore
from .command_ingest import CommandIngestStore
from .compliance import ComplianceStore
from .converge_triggers import ConvergeTriggerStore
from .delegation_tokens import DelegationTokenStore
from .edge_relay import EdgeRelayStore
from .encrypted_vars import EncryptedVariableStore
from .events import Event, EventStore, Subscription
from .execution_locks import ExecutionLockStore
from .federation import FederationStore
from .jit_grants import JITAccessGrantStore
from .masterless import MasterlessStore
from .notifications import NotificationRouter
from .package_registry import PackageRegistryStore
from .run_leases import RunLeaseStore
from .syndic import SyndicStore
from .tenant_crypto import TenantCryptoStore
from .variable_sources import VariableSourceRegistry
from .webhooks import WebhookDelivery, WebhookDispatcher

logger = logging.getLogger(__name__)


class ControlPlane:
    """Holds one instance of each store, sharing a clock.

    Stores are independent; the plane only adds :meth:`publish`, which
    appends an event and fans it out to matching webhooks.
    """

    def __init__(
        self,
        config: ControlPlaneConfig | None = None,
        *,
        clock: Clock = utc_now,
        http_client: httpx.Client | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config or ControlPlaneConfig()
        cfg = self.config
        self.clock = clock

        self.events = EventStore(cfg.events.capacity, clock=clock)
        self.webhooks = WebhookDispatcher(
            history_limit=cfg.delivery.history_limit,
            timeout=cfg.delivery.timeout,
            client=http_client,
            clock=clock,
        )
        self.notifications = NotificationRouter(
            history_limit=cfg.delivery.history_limit,
            timeout=cfg.delivery.timeout,
            client=http_client,
            clock=clock,
        )
        self.variable_sources = VariableSourceRegistry(
            cfg.variables.base_dir, timeout=cfg.variables.http_timeout, environ=environ
        )
        self.encrypted_vars = EncryptedVariableStore(cfg.encrypted_vars.base_dir, clock=clock)

        self.approvals = AccessApprovalStore(clock=clock)
        self.syndic = SyndicStore(clock=clock)
        self.masterless = MasterlessStore(clock=clock)
        self.compliance = ComplianceStore(clock=clock)
        self.agent_checkins = AgentCheckinStore(clock=clock)
        self.agent_dispatch = AgentDispatchStore(clock=clock)
        self.tenant_crypto = TenantCryptoStore(clock=clock)
        self.command_ingest = CommandIngestStore(clock=clock)
        self.jit_grants = JITAccessGrantStore(clock=clock)
        self.delegation_tokens = DelegationTokenStore(clock=clock)
        self.run_leases = RunLeaseStore(clock=clock)
        self.execution_locks = ExecutionLockStore(clock=clock)
        self.edge_relay = EdgeRelayStore(clock=clock)
        self.federation = FederationStore(clock=clock)
        self.converge_triggers = ConvergeTriggerStore(clock=clock)
        self.packages = PackageRegistryStore(clock=clock)

    @classmethod
    def from_config(cls, config: ControlPlaneConfig, **kwargs: Any) -> "ControlPlane":
        plane = cls(config, **kwargs)
        logger.info(
            "control plane ready (event capacity=%d, delivery history=%d)",
            config.events.capacity,
            config.delivery.history_limit,
        )
        return plane

    def publish(
        self, event_type: str, message: str = "", fields: Mapping[str, Any] | None = None
    ) -> tuple[Event, list[WebhookDelivery]]:
        """Append an event, then deliver it to webhooks with no lock held."""

        sealed = self.events.append(
            Event(type=event_type, message=message, fields=dict(fields) if fields else None)
        )
        return sealed, self.webhooks.dispatch(sealed)

    def subscribe(self) -> Subscription:
        return self.events.subscribe(self.config.events.subscriber_buffer)

    def close(self) -> None:
        self.webhooks.close()
        self.notifications.close()

    def __enter__(self) -> "ControlPlane":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


__all__ = ["ControlPlane"]

"""
Routing Sweeper

Periodic background pass over every tenant with open work: drain the queue
against current capacity, then check SLA thresholds and send escalations.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from .balancer import LoadBalancer
from .escalation import EscalationEvaluator, EscalationNotifier


logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """What one sweep did."""

    tenants: int = 0
    assigned: int = 0
    escalations_found: int = 0
    escalations_sent: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "tenants": self.tenants,
            "assigned": self.assigned,
            "escalations_found": self.escalations_found,
            "escalations_sent": self.escalations_sent,
            "errors": dict(self.errors),
        }


class RoutingSweeper:
    """Background drain and SLA check loop."""

    def __init__(
        self,
        balancer: LoadBalancer,
        escalation: EscalationEvaluator,
        notifier: Optional[EscalationNotifier] = None,
        interval_seconds: float = 30.0,
    ):
        self.balancer = balancer
        self.escalation = escalation
        self.notifier = notifier or EscalationNotifier.with_logging_channels()
        self.interval_seconds = interval_seconds

        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("routing_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("routing_sweeper_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("routing_sweep_failed", error=str(e))
                await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> SweepReport:
        """Sweep every tenant with queued or assigned conversations once."""
        report = SweepReport()
        tenants: List[str] = await self.balancer.store.list_open_tenants()
        report.tenants = len(tenants)

        for tenant_id in tenants:
            try:
                drained = await self.balancer.drain_queue(tenant_id)
                report.assigned += len(drained)

                breaches = await self.escalation.check_breaches(tenant_id)
                report.escalations_found += len(breaches)
                if breaches:
                    sent = await self.notifier.notify(breaches)
                    report.escalations_sent += len(sent)
            except Exception as e:
                # One tenant's failure must not stall the others
                report.errors[tenant_id] = str(e)
                logger.error("tenant_sweep_failed", tenant_id=tenant_id, error=str(e))

        self.notifier.clear_cooldowns()

        if report.assigned or report.escalations_sent or report.errors:
            logger.info("routing_sweep_completed", **report.to_dict())
        return report


__all__ = ["RoutingSweeper", "SweepReport"]

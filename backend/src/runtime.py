"""
Lifecycle runtime wiring.

Builds every lifecycle component around one store handle (a SQLAlchemy
session): ledger, executor, domain event bus, escrow hooks, facade,
scheduler, sweeps and reconciliation. In an API process start() also
resumes persisted timers and launches one periodic runner per job.

All components share the session, so they must run on one thread: the
asyncio loop, both in the API process and under asyncio.run() in the
operator script. Nothing on that loop blocks: retry backoff is awaited and
escrow calls run as tasks on httpx.AsyncClient.
"""

import asyncio
import inspect
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from backend.src.config.settings import LifecycleSettings, get_settings
from backend.src.services.domain_events import DomainEventBus
from backend.src.services.escrow_client import EscrowClient
from backend.src.services.escrow_hooks import EscrowHooks
from backend.src.services.job_retry import RetryPolicy
from backend.src.services.lifecycle_service import LifecycleService
from backend.src.services.reconciliation_service import ReconciliationService
from backend.src.services.scheduler_service import ExactTimeScheduler
from backend.src.services.status_ledger import StatusLedger
from backend.src.services.sweep_service import SweepService
from backend.src.services.transition_executor import TransitionExecutor
from backend.src.utils.logging_config import get_logger
from backend.src.utils.periodic import PeriodicJobRunner


logger = get_logger("jobs")

JOB_NAMES = [
    "start-sweep",
    "end-sweep",
    "no-show-sweep",
    "reconcile",
    "escrow-settlement",
    "resume-timers",
]


class LifecycleRuntime:
    """
    Container for the wired lifecycle components.

    Usage:
        >>> runtime = LifecycleRuntime(SessionLocal())
        >>> runtime.lifecycle.transition("ticket", guid, "checked_in")
        >>> await runtime.run_job("reconcile")
        {'job': 'reconcile', 'examined': 12, 'repaired': 0, ...}
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[LifecycleSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        escrow_client: Optional[EscrowClient] = None,
        async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

        self.ledger = StatusLedger(db)
        self.executor = TransitionExecutor(self.ledger, clock)
        self.bus = DomainEventBus()
        self.escrow_client = escrow_client or EscrowClient(
            base_url=self.settings.escrow_service_url,
            token=self.settings.escrow_token,
            timeout=self.settings.escrow_timeout_seconds,
        )
        self.hooks = EscrowHooks(self.ledger, self.escrow_client, clock)
        self.lifecycle = LifecycleService(self.ledger, self.executor, self.bus, self.hooks)

        self.scheduler = ExactTimeScheduler(
            self.lifecycle, self.ledger, clock, async_sleep,
            no_show_delay=self.settings.scheduled_no_show_delay,
        )
        self.scheduler.register(self.bus)

        retry_policy = RetryPolicy(
            max_attempts=self.settings.job_max_attempts,
            initial_backoff=self.settings.job_initial_backoff_seconds,
        )
        self.sweeps = SweepService(
            self.lifecycle, self.ledger, clock,
            no_show_grace=self.settings.no_show_grace,
            retry_policy=retry_policy,
            sleep=retry_sleep,
        )
        self.reconciliation = ReconciliationService(
            self.lifecycle, self.ledger, clock,
            sample_size=self.settings.reconcile_sample_size,
            no_show_grace=self.settings.no_show_grace,
            retry_policy=retry_policy,
            sleep=retry_sleep,
        )

        self._jobs: Dict[str, Callable[[], Any]] = {
            "start-sweep": self.sweeps.start_sweep,
            "end-sweep": self.sweeps.end_sweep,
            "no-show-sweep": self.sweeps.no_show_sweep,
            "reconcile": self.reconciliation.run,
            "escrow-settlement": self.hooks.retry_unsettled,
            "resume-timers": self.scheduler.fire_due,
        }
        self.runners: List[PeriodicJobRunner] = []

    async def run_job(self, name: str) -> Dict[str, Any]:
        """
        Run one job once and return its summary as a dict.

        Raises:
            ValueError: If the job name is unknown
        """
        if name not in self._jobs:
            raise ValueError(f"Unknown job: {name}. Valid jobs: {', '.join(JOB_NAMES)}")
        result = self._jobs[name]()
        if inspect.isawaitable(result):
            result = await result
        return result.to_dict()

    async def start(self) -> None:
        """Resume persisted timers and start the periodic jobs."""
        self.scheduler.resume_pending()

        cadences = {
            "start-sweep": self.settings.sweep_interval_seconds,
            "end-sweep": self.settings.sweep_interval_seconds,
            "no-show-sweep": self.settings.no_show_sweep_interval_seconds,
            "reconcile": self.settings.reconcile_interval_seconds,
            "escrow-settlement": self.settings.escrow_settlement_interval_seconds,
        }
        for name, interval in cadences.items():
            runner = PeriodicJobRunner(
                name,
                self._jobs[name],
                interval,
                run_immediately=name in ("start-sweep", "end-sweep"),
            )
            runner.start()
            self.runners.append(runner)

        logger.info(f"Lifecycle runtime started with {len(self.runners)} periodic job(s)")

    async def stop(self) -> None:
        """Stop periodic jobs, cancel armed wakes and hooks, close the escrow client."""
        for runner in self.runners:
            await runner.stop()
        self.runners.clear()
        await self.scheduler.shutdown()
        await self.hooks.shutdown()
        await self.escrow_client.close()
        logger.info("Lifecycle runtime stopped")

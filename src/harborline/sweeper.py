"""Stale-Run Sweeper: periodic backstop for runs that stopped making progress.

Every ``runtime.sweep_interval`` seconds, any non-terminal run whose last
activity is older than ``runtime.inactivity_timeout`` is failed with
"timed out", its subscribers are completed and its Job is deleted. This
catches any wait the orchestrator's bounded polls did not anticipate.

``reap_orphaned_jobs`` runs once at startup: runs are in-memory only, so
every managed Job that exists when the process starts belongs to a previous
process and can never be tracked again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from harborline.jobspec import job_name, managed_selector
from harborline.kube import KubeApiError

if TYPE_CHECKING:
    from harborline.broadcast import BroadcastHub
    from harborline.config import HarborlineConfig
    from harborline.kube import KubeClient
    from harborline.registry import RunRegistry

logger = logging.getLogger(__name__)

SWEEP_MESSAGE = "timed out"


class StaleRunSweeper:
    """Periodic background task failing inactive runs."""

    def __init__(
        self,
        registry: RunRegistry,
        hub: BroadcastHub,
        kube: KubeClient,
        settings: HarborlineConfig,
    ):
        self.registry = registry
        self.hub = hub
        self.kube = kube
        self.namespace = settings.kubernetes.job_namespace
        self.job_prefix = settings.kubernetes.job_prefix
        self.interval = settings.runtime.sweep_interval
        self.timeout = timedelta(seconds=settings.runtime.inactivity_timeout)

        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="stale-run-sweeper")
        logger.info(
            "Stale-run sweeper started (interval=%ss, inactivity_timeout=%ss)",
            self.interval,
            self.timeout.total_seconds(),
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Stale-run sweeper stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Sweep error")

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Fail every stale run. Returns the ids that were swept."""
        now = now or datetime.now(timezone.utc)
        swept: list[str] = []

        for run in self.registry.active():
            idle = now - run.last_activity
            if idle <= self.timeout:
                continue
            previous = run.status
            if not run.fail(SWEEP_MESSAGE):
                continue  # finished between the scan and now
            swept.append(run.id)
            logger.warning(
                "Run %s swept after %d min without activity (status was %s)",
                run.id,
                int(idle.total_seconds() // 60),
                previous.value,
            )
            self.hub.on_status_changed(run)
            self.hub.complete_all(run.id)

            name = job_name(run.id, self.job_prefix)
            try:
                await self.kube.delete_job(self.namespace, name)
            except Exception as e:
                logger.warning("Run %s: deleting Job %s after sweep failed: %s", run.id, name, e)

        if swept:
            logger.info("Swept %d stale run(s): %s", len(swept), swept)
        return swept


async def reap_orphaned_jobs(kube: KubeClient, namespace: str) -> list[str]:
    """Delete managed Jobs left behind by a previous process. Returns their names."""
    try:
        jobs = await kube.list_jobs(namespace, managed_selector())
    except KubeApiError as e:
        logger.warning("Could not list orphaned Jobs in %s: %s", namespace, e)
        return []

    reaped: list[str] = []
    for job in jobs:
        name = job.metadata.name
        try:
            await kube.delete_job(namespace, name)
        except KubeApiError as e:
            logger.warning("Could not delete orphaned Job %s: %s", name, e)
            continue
        reaped.append(name)
    if reaped:
        logger.info("Reaped %d orphaned Job(s) in %s: %s", len(reaped), namespace, reaped)
    return reaped

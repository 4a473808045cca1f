"""Harborline Server: FastAPI application that ties all components together.

Startup sequence:
1. Load harborline.yaml (+ HARBORLINE_* overrides)
2. Connect to the Kubernetes API
3. Reap managed Jobs left behind by a previous process
4. Build registry, broadcast hub and orchestrator
5. Start the stale-run sweeper

Shutdown:
1. Stop the sweeper
2. Cancel in-flight runs (they end FAILED, subscribers get ``complete``)
3. Close the Kubernetes client
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from harborline.api import router as runs_router
from harborline.broadcast import BroadcastHub
from harborline.config import HarborlineConfig, load_config
from harborline.kube import KubeClient
from harborline.orchestrator import Orchestrator
from harborline.registry import RunRegistry
from harborline.sweeper import StaleRunSweeper, reap_orphaned_jobs

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


class HarborlineServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        config_path: Path | None = None,
        config: HarborlineConfig | None = None,
        kube: KubeClient | None = None,
    ):
        self.config_path = config_path
        self.config = config
        self.kube = kube

        # Components (initialized in start())
        self.registry: RunRegistry | None = None
        self.hub: BroadcastHub | None = None
        self.orchestrator: Orchestrator | None = None
        self.sweeper: StaleRunSweeper | None = None
        self.reaped_jobs: list[str] = []

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        # 1. Load config
        if self.config is None:
            self.config = load_config(self.config_path)
        cfg = self.config
        logger.info("Harborline server starting (namespace=%s)", cfg.kubernetes.job_namespace)

        # 2. Kubernetes client
        if self.kube is None:
            self.kube = KubeClient.from_settings(cfg.kubernetes)

        # 3. Orphaned Jobs from a previous process
        if cfg.runtime.reap_orphans_on_startup:
            self.reaped_jobs = await reap_orphaned_jobs(self.kube, cfg.kubernetes.job_namespace)

        # 4. Core components
        self.registry = RunRegistry()
        self.hub = BroadcastHub(self.registry, queue_size=cfg.runtime.subscriber_queue_size)
        self.orchestrator = Orchestrator(cfg, self.registry, self.hub, self.kube)

        # 5. Sweeper
        self.sweeper = StaleRunSweeper(self.registry, self.hub, self.kube, cfg)
        await self.sweeper.start()

        logger.info(
            "Harborline server started (max_concurrent_runs=%d, registry=%s/%s)",
            cfg.runtime.max_concurrent_runs,
            cfg.registry.host,
            cfg.registry.project,
        )

    async def stop(self) -> None:
        """Stop the sweeper, cancel in-flight runs, close the API client."""
        logger.info("Harborline server shutting down")

        if self.sweeper:
            await self.sweeper.stop()
        if self.orchestrator:
            await self.orchestrator.stop()
        if self.kube:
            self.kube.close()

        logger.info("Harborline server stopped")

    def health(self) -> dict:
        """Health payload with operational counters."""
        runs = self.registry.count_by_status() if self.registry else {}
        return {
            "status": "ok" if self.orchestrator else "starting",
            "version": __version__,
            "namespace": self.config.kubernetes.job_namespace if self.config else None,
            "runs": runs,
            "total_runs": sum(runs.values()),
            "active_workflows": self.orchestrator.active_count if self.orchestrator else 0,
        }


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(
    config_path: Path | None = None,
    config: HarborlineConfig | None = None,
    kube: KubeClient | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    server = HarborlineServer(config_path=config_path, config=config, kube=kube)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the server before serving requests; stop it on shutdown."""
        await server.start()
        app.state.orchestrator = server.orchestrator
        app.state.api_key = server.config.api.api_key
        yield
        await server.stop()

    app = FastAPI(
        title="Harborline",
        version=__version__,
        description="Kubernetes-native build-and-deploy pipeline orchestrator",
        lifespan=lifespan,
    )
    app.state.server = server

    # Mount routes
    app.include_router(runs_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        return server.health()

    return app

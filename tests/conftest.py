"""Shared fixtures: fast settings, registry, hub, orchestrator over FakeKube."""

from __future__ import annotations

import pytest
import pytest_asyncio

from harborline.broadcast import BroadcastHub
from harborline.config import HarborlineConfig
from harborline.orchestrator import Orchestrator
from harborline.registry import RunRegistry
from kube_fakes import FakeKube


@pytest.fixture
def settings() -> HarborlineConfig:
    """Config with zero delays and short poll limits."""
    return HarborlineConfig(
        registry={"host": "harbor.test", "project": "apps"},
        runtime={
            "poll_interval": 0,
            "pod_appear_attempts": 3,
            "init_container_attempts": 5,
            "pod_running_attempts": 5,
            "log_stream_attempts": 5,
            "job_completion_attempts": 5,
            "conflict_retry_delay": 0,
            "rollout_settle_delay": 0,
            "wait_log_every": 2,
            "sweep_interval": 60,
            "inactivity_timeout": 60,
        },
    )


@pytest.fixture
def registry() -> RunRegistry:
    return RunRegistry()


@pytest.fixture
def hub(registry) -> BroadcastHub:
    return BroadcastHub(registry, queue_size=100)


@pytest.fixture
def kube() -> FakeKube:
    return FakeKube()


@pytest_asyncio.fixture
async def orchestrator(settings, registry, hub, kube):
    orch = Orchestrator(settings, registry, hub, kube)
    yield orch
    await orch.stop()

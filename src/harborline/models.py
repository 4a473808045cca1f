"""Core data models for Harborline: run configuration, run state, stream events."""

from __future__ import annotations

import enum
import json
import secrets
import threading
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from harborline.errors import InvalidTransitionError


# ── Run Status ───────────────────────────────────────────────────────────────


class RunStatus(str, enum.Enum):
    """Pipeline run lifecycle states.

    PENDING → CLONING → BUILDING → PUSHING|IMPORTING → DEPLOYING → SUCCESS,
    with FAILED reachable from every non-terminal state.
    """

    PENDING = "PENDING"
    CLONING = "CLONING"
    BUILDING = "BUILDING"
    PUSHING = "PUSHING"
    IMPORTING = "IMPORTING"
    DEPLOYING = "DEPLOYING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def step(self) -> int | None:
        """Progress-bar index for this status (None for FAILED)."""
        return _STATUS_STEPS.get(self)

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED)


_STATUS_LABELS = {
    RunStatus.PENDING: "Pending",
    RunStatus.CLONING: "Cloning source",
    RunStatus.BUILDING: "Building image",
    RunStatus.PUSHING: "Pushing image",
    RunStatus.IMPORTING: "Importing image",
    RunStatus.DEPLOYING: "Deploying",
    RunStatus.SUCCESS: "Succeeded",
    RunStatus.FAILED: "Failed",
}

_STATUS_STEPS = {
    RunStatus.PENDING: -1,
    RunStatus.CLONING: 0,
    RunStatus.BUILDING: 1,
    RunStatus.PUSHING: 2,
    RunStatus.IMPORTING: 2,
    RunStatus.DEPLOYING: 3,
    RunStatus.SUCCESS: 4,
}

# Forward edges only; FAILED is handled separately by RunRecord.fail().
TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.CLONING}),
    RunStatus.CLONING: frozenset({RunStatus.BUILDING}),
    RunStatus.BUILDING: frozenset({RunStatus.PUSHING, RunStatus.IMPORTING}),
    RunStatus.PUSHING: frozenset({RunStatus.DEPLOYING}),
    RunStatus.IMPORTING: frozenset({RunStatus.DEPLOYING}),
    RunStatus.DEPLOYING: frozenset({RunStatus.SUCCESS}),
    RunStatus.SUCCESS: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class PublishMode(str, enum.Enum):
    """How the built image leaves the build pod."""

    PUSH = "push"  # push the image tarball to the registry
    IMPORT = "import"  # import the tarball into the node's containerd

    @property
    def status(self) -> RunStatus:
        return RunStatus.PUSHING if self is PublishMode.PUSH else RunStatus.IMPORTING


# ── Run Config ───────────────────────────────────────────────────────────────


class RunConfig(BaseModel):
    """Immutable build request: what to clone, what to build, where to ship it."""

    model_config = {"frozen": True}

    repo_url: str = Field(default="", description="Git repository URL")
    token: str | None = Field(default=None, description="Access token for private repos")
    branch: str = "main"
    image_name: str = Field(default="", description="Target image name (without registry)")
    image_tag: str = "latest"
    registry_host: str | None = Field(
        default=None, description="Registry host; defaults to the configured registry"
    )
    registry_project: str = "library"
    build_command: str | None = Field(
        default=None, description="Packaging command run in /workspace before the image build"
    )
    dockerfile_path: str = "Dockerfile"
    namespace: str = Field(default="default", description="Namespace of the target Deployment")
    deployment_name: str | None = None
    container_name: str | None = Field(
        default=None, description="Deployment container to retarget (default: the first one)"
    )
    proxy: str | None = Field(default=None, description="HTTP(S) proxy for the git clone")
    publish_mode: PublishMode = PublishMode.PUSH

    @property
    def has_auth(self) -> bool:
        return bool(self.token)

    @property
    def has_build_step(self) -> bool:
        return bool(self.build_command and self.build_command.strip())

    @property
    def full_image_ref(self) -> str:
        """``registry/project/image:tag``."""
        return f"{self.registry_host}/{self.registry_project}/{self.image_name}:{self.image_tag}"

    @property
    def clone_url(self) -> str:
        """Repository URL with the token embedded in the transport URL."""
        if not self.has_auth:
            return self.repo_url
        for scheme in ("https://", "http://"):
            if self.repo_url.startswith(scheme):
                return f"{scheme}oauth2:{self.token}@{self.repo_url[len(scheme):]}"
        return f"https://oauth2:{self.token}@{self.repo_url}"


# ── Snapshots & Stream Events ────────────────────────────────────────────────


class RunSnapshot(BaseModel):
    """Point-in-time, JSON-friendly view of a run."""

    id: str
    status: RunStatus
    status_label: str
    current_step: int
    finished: bool
    duration: str
    start_time: datetime
    end_time: datetime | None = None
    error_message: str | None = None
    deploy_warning: str | None = None
    image: str
    repo_url: str
    branch: str
    image_name: str
    image_tag: str
    registry_project: str
    namespace: str
    deployment_name: str | None = None
    publish_mode: PublishMode

    def status_fields(self) -> dict[str, Any]:
        """The compact subset pushed with every status event."""
        return {
            "status": self.status.value,
            "status_label": self.status_label,
            "current_step": self.current_step,
            "finished": self.finished,
            "duration": self.duration,
        }


StreamEventKind = Literal["init", "log", "status", "complete"]


class StreamEvent(BaseModel):
    """One event on a run's live stream."""

    event: StreamEventKind
    data: dict[str, Any] = Field(default_factory=dict)

    def to_sse(self) -> str:
        """Format for Server-Sent Events."""
        return f"event: {self.event}\ndata: {json.dumps(self.data, default=str)}\n\n"


# ── Run Record ───────────────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    """Short random id, also used in the Kubernetes Job name."""
    return secrets.token_hex(4)


class RunRecord:
    """Mutable state of one pipeline execution.

    Logs are append-only. Once the status is SUCCESS or FAILED the record is
    frozen: status, step and logs no longer change and ``end_time`` is fixed.
    All access goes through one lock so snapshot readers never see a torn log.
    """

    def __init__(self, config: RunConfig, run_id: str | None = None):
        self.id = run_id or new_run_id()
        self.config = config
        self.start_time = _now()
        self.end_time: datetime | None = None
        self.last_activity = self.start_time
        self.error_message: str | None = None
        self.deploy_warning: str | None = None
        self._status = RunStatus.PENDING
        self._current_step = -1
        self._logs: list[str] = []
        self._lock = threading.Lock()

    # ── Reads ────────────────────────────────────────────────────────────

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def current_step(self) -> int:
        return self._current_step

    @property
    def finished(self) -> bool:
        return self._status.is_terminal

    @property
    def log_count(self) -> int:
        with self._lock:
            return len(self._logs)

    def logs_snapshot(self, since: int = 0) -> list[str]:
        """Copy of the log lines from ``since`` onward."""
        with self._lock:
            return self._logs[since:]

    @property
    def duration(self) -> str:
        end = self.end_time or _now()
        seconds = max(0, int((end - self.start_time).total_seconds()))
        return f"{seconds // 60:02d}:{seconds % 60:02d}"

    def snapshot(self) -> RunSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def snapshot_with_logs(self) -> tuple[RunSnapshot, list[str]]:
        """Snapshot and full backlog taken atomically."""
        with self._lock:
            return self._snapshot_locked(), list(self._logs)

    def _snapshot_locked(self) -> RunSnapshot:
        cfg = self.config
        return RunSnapshot(
            id=self.id,
            status=self._status,
            status_label=self._status.label,
            current_step=self._current_step,
            finished=self._status.is_terminal,
            duration=self.duration,
            start_time=self.start_time,
            end_time=self.end_time,
            error_message=self.error_message,
            deploy_warning=self.deploy_warning,
            image=cfg.full_image_ref,
            repo_url=cfg.repo_url,
            branch=cfg.branch,
            image_name=cfg.image_name,
            image_tag=cfg.image_tag,
            registry_project=cfg.registry_project,
            namespace=cfg.namespace,
            deployment_name=cfg.deployment_name,
            publish_mode=cfg.publish_mode,
        )

    # ── Mutations ────────────────────────────────────────────────────────

    def append_log(self, line: str) -> int | None:
        """Append a timestamped line. Returns its index, or None if frozen."""
        with self._lock:
            if self._status.is_terminal:
                return None
            return self._append_locked(line)

    def _append_locked(self, line: str) -> int:
        now = _now()
        self._logs.append(f"[{now:%H:%M:%S}] {line}")
        self.last_activity = now
        return len(self._logs) - 1

    def advance(self, new_status: RunStatus) -> bool:
        """Move forward one state. Returns False if the record is frozen.

        Raises InvalidTransitionError for an edge the state machine lacks;
        use ``fail()`` to reach FAILED.
        """
        with self._lock:
            if self._status.is_terminal:
                return False
            if new_status not in TRANSITIONS[self._status]:
                raise InvalidTransitionError(
                    f"run {self.id}: {self._status.value} -> {new_status.value} is not allowed"
                )
            now = _now()
            self._status = new_status
            self._current_step = new_status.step
            self.last_activity = now
            if new_status.is_terminal:
                self.end_time = now
            return True

    def warn_deploy(self, message: str) -> bool:
        """Record a rollout problem on a run whose image was published."""
        with self._lock:
            if self._status.is_terminal:
                return False
            self.deploy_warning = message
            return True

    def fail(self, message: str) -> bool:
        """Freeze the record as FAILED.

        Only the first call has any effect; it records the error, appends the
        ``[ERROR]`` banner and sets ``end_time``. Returns whether this call
        did the transition.
        """
        with self._lock:
            if self._status.is_terminal:
                return False
            self.error_message = message
            self._append_locked(f"[ERROR] {message}")
            self._status = RunStatus.FAILED
            self.end_time = self.last_activity
            return True

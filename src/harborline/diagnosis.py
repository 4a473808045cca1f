"""Diagnosis Engine: turn raw Kubernetes failure signals into readable causes.

Everything here is a pure function over objects from ``kubernetes.client``
(``V1Pod``, ``V1ContainerStatus``) or anything shaped like them. Nothing in
this module talks to the API server; the orchestrator fetches the facts
(pod, events, log text) and hands them in.

Layers, from cheapest to most expensive:
1. exit code → cause (``diagnose_exit_code``)
2. pod conditions, e.g. Unschedulable (``parse_pod_conditions``)
3. waiting reasons, e.g. ImagePullBackOff (``waiting_reason``, ``abnormal_waiting``)
4. recent events for the pod (``parse_pod_events``)
5. consolidated report for a failed Job (``diagnose_failure``)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

# Waiting reasons that never resolve on their own.
FATAL_WAITING_REASONS = frozenset(
    {
        "ImagePullBackOff",
        "ErrImagePull",
        "InvalidImageName",
        "CrashLoopBackOff",
        "CreateContainerConfigError",
        "CreateContainerError",
    }
)

# Waiting reasons every healthy pod passes through.
ROUTINE_WAITING_REASONS = frozenset({"PodInitializing", "ContainerCreating"})

LOG_TAIL_LINES = 20
MAX_EVENTS = 3

_EXIT_CODE_CAUSES = {
    1: "script failed (exit 1), check the build command and the source",
    2: "shell syntax error or misused builtin (exit 2)",
    126: "command cannot execute (exit 126), permission denied or not an executable",
    127: "command not found (exit 127), check that the image ships the required tools",
    128: "invalid exit argument (exit 128)",
    130: "interrupted by SIGINT (exit 130)",
    137: "killed by SIGKILL (exit 137), possibly out of memory; raise the memory limit",
    143: "terminated by SIGTERM (exit 143), the container was stopped externally",
}


# ── Layer 1: exit codes ──────────────────────────────────────────────────────


def diagnose_exit_code(exit_code: int, reason: str | None = None) -> str:
    """Map a container exit code (and termination reason) to a cause.

    ``OOMKilled`` wins over any numeric code. Unknown codes above 128 are
    reported as the signal number; anything else falls back to
    ``unknown error (exit N)`` with the raw reason appended.
    """
    if reason == "OOMKilled":
        return f"out of memory (OOMKilled, exit {exit_code}); raise the container memory limit"
    cause = _EXIT_CODE_CAUSES.get(exit_code)
    if cause:
        return cause
    if exit_code > 128:
        return f"terminated by signal {exit_code - 128} (exit {exit_code})"
    suffix = f", reason={reason}" if reason else ""
    return f"unknown error (exit {exit_code}){suffix}"


# ── Container status helpers ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ContainerExit:
    """A container that terminated, as read from the pod status."""

    name: str
    exit_code: int
    reason: str | None
    init: bool

    @property
    def failed(self) -> bool:
        return self.exit_code != 0

    def describe(self) -> str:
        return f"{self.name} failed (exit {self.exit_code}): {diagnose_exit_code(self.exit_code, self.reason)}"


def _statuses(pod: Any, *, init: bool) -> list[Any]:
    status = getattr(pod, "status", None)
    if status is None:
        return []
    attr = "init_container_statuses" if init else "container_statuses"
    return list(getattr(status, attr, None) or [])


def pod_phase(pod: Any) -> str | None:
    status = getattr(pod, "status", None)
    return getattr(status, "phase", None) if status else None


def find_container_status(pod: Any, name: str) -> tuple[Any | None, bool | None]:
    """Return ``(status, is_init)`` for the named container."""
    for init in (True, False):
        for cs in _statuses(pod, init=init):
            if cs.name == name:
                return cs, init
    return None, None


def container_state(pod: Any, name: str) -> str | None:
    """``waiting``, ``running``, ``terminated`` or None when not reported yet."""
    cs, _ = find_container_status(pod, name)
    state = getattr(cs, "state", None) if cs is not None else None
    if state is None:
        return None
    if state.terminated is not None:
        return "terminated"
    if state.running is not None:
        return "running"
    if state.waiting is not None:
        return "waiting"
    return None


def container_exit(pod: Any, name: str) -> ContainerExit | None:
    cs, init = find_container_status(pod, name)
    state = getattr(cs, "state", None) if cs is not None else None
    if state is None or state.terminated is None:
        return None
    term = state.terminated
    return ContainerExit(name=name, exit_code=term.exit_code or 0, reason=term.reason, init=bool(init))


def terminated_containers(pod: Any) -> list[ContainerExit]:
    """Every terminated container, init containers first, in pod order."""
    exits: list[ContainerExit] = []
    for init in (True, False):
        for cs in _statuses(pod, init=init):
            state = cs.state
            if state is not None and state.terminated is not None:
                term = state.terminated
                exits.append(
                    ContainerExit(name=cs.name, exit_code=term.exit_code or 0, reason=term.reason, init=init)
                )
    return exits


def failed_init_container(pod: Any, exclude: str | None = None) -> ContainerExit | None:
    """First init container (other than ``exclude``) that exited non-zero."""
    for ex in terminated_containers(pod):
        if ex.init and ex.failed and ex.name != exclude:
            return ex
    return None


def waiting_reason(pod: Any, name: str) -> str | None:
    """Waiting reason of one container, with its message when present."""
    cs, _ = find_container_status(pod, name)
    state = getattr(cs, "state", None) if cs is not None else None
    if state is None or state.waiting is None or not state.waiting.reason:
        return None
    waiting = state.waiting
    return f"{waiting.reason}: {waiting.message}" if waiting.message else waiting.reason


def is_fatal_waiting(reason: str | None) -> bool:
    if not reason:
        return False
    return any(r in reason for r in FATAL_WAITING_REASONS)


def pod_waiting_reason(pod: Any) -> str | None:
    """First fatal waiting reason across every container of the pod."""
    for init in (True, False):
        for cs in _statuses(pod, init=init):
            reason = waiting_reason(pod, cs.name)
            if is_fatal_waiting(reason):
                return f"{cs.name}: {reason}"
    return None


def abnormal_waiting(pod: Any) -> list[str]:
    """Waiting reasons other than the routine startup ones, as ``name: reason``."""
    found: list[str] = []
    for init in (True, False):
        for cs in _statuses(pod, init=init):
            state = cs.state
            if state is None or state.waiting is None:
                continue
            reason = state.waiting.reason
            if reason and reason not in ROUTINE_WAITING_REASONS:
                detail = waiting_reason(pod, cs.name)
                found.append(f"{cs.name}: {detail}")
    return found


# ── Layer 2: pod conditions ──────────────────────────────────────────────────


def parse_pod_conditions(pod: Any) -> str | None:
    """First condition with status False and a reason, as ``reason: message``."""
    status = getattr(pod, "status", None)
    for cond in getattr(status, "conditions", None) or []:
        if cond.status == "False" and cond.reason:
            return f"{cond.reason}: {cond.message}" if cond.message else cond.reason
    return None


# ── Layer 4: events ──────────────────────────────────────────────────────────


def parse_pod_events(events: Iterable[Any], limit: int = MAX_EVENTS) -> str | None:
    """The last ``limit`` events joined as ``reason: message | ...``.

    ``events`` must be in chronological order (oldest first).
    """
    items = list(events)[-limit:]
    if not items:
        return None
    parts = []
    for ev in items:
        reason = getattr(ev, "reason", None) or "Event"
        message = (getattr(ev, "message", None) or "").strip()
        parts.append(f"{reason}: {message}" if message else reason)
    return " | ".join(parts)


# ── Layer 5: consolidated report ─────────────────────────────────────────────


def log_tail(text: str | None, lines: int = LOG_TAIL_LINES) -> list[str]:
    if not text:
        return []
    return text.rstrip("\n").split("\n")[-lines:]


def diagnose_failure(pod: Any, logs: Mapping[str, str | None] | None = None) -> list[str]:
    """Build the failure report for a Job whose pod did not succeed.

    ``logs`` maps container name to its full log text; only the last
    ``LOG_TAIL_LINES`` lines of each failed container are kept. Returns run
    log lines, already tagged ``[ERROR]`` or ``[WARN]``.
    """
    logs = logs or {}
    report: list[str] = []
    if pod is None:
        return ["[ERROR] no pod found for the Job, nothing to diagnose"]

    for ex in terminated_containers(pod):
        if not ex.failed:
            continue
        report.append(f"[ERROR] {ex.describe()}")
        tail = log_tail(logs.get(ex.name))
        if tail:
            report.append(f"[ERROR] last {len(tail)} log lines of {ex.name}:")
            report.extend(f"    {line}" for line in tail)

    for detail in abnormal_waiting(pod):
        report.append(f"[WARN] waiting: {detail}")

    condition = parse_pod_conditions(pod)
    if condition:
        report.append(f"[WARN] pod condition: {condition}")

    if not report:
        report.append(f"[ERROR] pod finished in phase {pod_phase(pod) or 'Unknown'} without a container exit code")
    return report

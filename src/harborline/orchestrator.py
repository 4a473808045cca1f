"""Execution Orchestrator: drives one build-and-deploy run per triggered request.

Workflow for a run (single sequential coroutine, bounded by a semaphore)::

    submit Job ─► wait for pod ─► init chain (git-clone → [build] → image-build)
        ─► pod running ─► stream publish logs ─► wait for Job ─► update Deployment
        ─► SUCCESS

Every wait is a ``poll()`` loop with an explicit attempt limit. Failures are
never raised to the caller: they become a FAILED RunRecord with an ``[ERROR]``
log line, broadcast like any other change. The only exceptions ``trigger``
raises are validation errors.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from harborline import diagnosis
from harborline.errors import ValidationError
from harborline.jobspec import PUBLISH_CONTAINER, build_chain, build_job, job_name
from harborline.kube import KubeApiError
from harborline.models import PublishMode, RunConfig, RunRecord, RunSnapshot, RunStatus
from harborline.polling import LogCursor, PollResult, PollStatus, minutes, poll

if TYPE_CHECKING:
    from harborline.broadcast import BroadcastHub, Subscriber
    from harborline.config import HarborlineConfig
    from harborline.kube import KubeClient
    from harborline.registry import RunRegistry

logger = logging.getLogger(__name__)


def submission_error(err: KubeApiError) -> str:
    """Operator-readable cause for a rejected Job submission."""
    if err.is_forbidden:
        return f"permission denied (403 Forbidden): {err.message}"
    if err.is_invalid:
        return f"invalid Job definition (422 Unprocessable): {err.message}"
    return f"Kubernetes API error ({err.status}): {err.message}"


class Orchestrator:
    """Owns run execution: trigger, workflow tasks, lookups."""

    def __init__(
        self,
        settings: HarborlineConfig,
        registry: RunRegistry,
        hub: BroadcastHub,
        kube: KubeClient,
    ):
        self.settings = settings
        self.registry = registry
        self.hub = hub
        self.kube = kube
        self.runtime = settings.runtime
        self.namespace = settings.kubernetes.job_namespace

        self._semaphore = asyncio.Semaphore(self.runtime.max_concurrent_runs)
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Public API ───────────────────────────────────────────────────────

    def trigger(self, config: RunConfig) -> str:
        """Validate, register and schedule a run. Returns its id immediately.

        Must be called from within a running event loop.

        Raises:
            ValidationError: repository URL or image name is missing.
        """
        if not config.repo_url or not config.repo_url.strip():
            raise ValidationError("repository URL is required")
        if not config.image_name or not config.image_name.strip():
            raise ValidationError("image name is required")
        if not config.branch or not config.branch.strip():
            raise ValidationError("branch must not be empty")

        config = self._apply_defaults(config)
        run = RunRecord(config)
        self.registry.add(run)

        self._log(run, f"[INFO] Pipeline run created, id: {run.id}")
        self._log(run, f"[INFO] Repository: {config.repo_url}")
        self._log(run, f"[INFO] Branch: {config.branch}")
        self._log(run, f"[INFO] Target image: {config.full_image_ref}")
        self._log(run, f"[INFO] Publish mode: {config.publish_mode.value}")
        if config.has_build_step:
            self._log(run, f"[INFO] Build command: {config.build_command}")
        if config.has_auth:
            self._log(run, "[INFO] Git authentication: access token")
        if config.deployment_name:
            self._log(run, f"[INFO] Target Deployment: {config.namespace}/{config.deployment_name}")

        task = asyncio.create_task(self._run_guarded(run), name=f"run-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t, run_id=run.id: self._tasks.pop(run_id, None))

        logger.info(
            "Run %s triggered: %s@%s -> %s", run.id, config.repo_url, config.branch, config.full_image_ref
        )
        return run.id

    def get(self, run_id: str) -> RunRecord:
        """Raises RunNotFoundError for unknown ids."""
        return self.registry.require(run_id)

    def get_snapshot(self, run_id: str) -> RunSnapshot:
        return self.get(run_id).snapshot()

    def list_snapshots(self) -> list[RunSnapshot]:
        return [run.snapshot() for run in self.registry.list()]

    def subscribe(self, run_id: str) -> Subscriber:
        return self.hub.subscribe(run_id)

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every scheduled workflow has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel in-flight workflows; their runs end FAILED."""
        for run_id, task in list(self._tasks.items()):
            logger.info("Cancelling run %s", run_id)
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        self._tasks.clear()

    # ── Record helpers (mutate, then broadcast) ──────────────────────────

    def _apply_defaults(self, config: RunConfig) -> RunConfig:
        updates: dict = {}
        if not config.registry_host:
            updates["registry_host"] = self.settings.registry.host
        if "registry_project" not in config.model_fields_set:
            updates["registry_project"] = self.settings.registry.project
        if not config.token and self.settings.git.token:
            updates["token"] = self.settings.git.token
        if not config.proxy and self.settings.git.proxy:
            updates["proxy"] = self.settings.git.proxy
        return config.model_copy(update=updates) if updates else config

    def _log(self, run: RunRecord, line: str) -> None:
        if run.append_log(line) is not None:
            self.hub.on_log_appended(run)

    def _log_many(self, run: RunRecord, lines: list[str]) -> None:
        appended = False
        for line in lines:
            appended = run.append_log(line) is not None or appended
        if appended:
            self.hub.on_log_appended(run)

    def _advance(self, run: RunRecord, status: RunStatus) -> bool:
        if not run.advance(status):
            return False
        logger.info("Run %s -> %s", run.id, status.value)
        self.hub.on_status_changed(run)
        return True

    def _fail(self, run: RunRecord, message: str) -> bool:
        if not run.fail(message):
            return False
        logger.warning("Run %s failed: %s", run.id, message)
        self.hub.on_status_changed(run)
        return True

    def _wait_logger(self, run: RunRecord, what: str, reason_of=None):
        every = self.runtime.wait_log_every

        def on_wait(attempt: int) -> None:
            if attempt > 0 and attempt % every == 0:
                reason = reason_of() if reason_of else None
                suffix = f" ({reason})" if reason else ""
                self._log(run, f"[INFO] waiting for {what}{suffix}...")

        return on_wait

    # ── Workflow ─────────────────────────────────────────────────────────

    async def _run_guarded(self, run: RunRecord) -> None:
        try:
            async with self._semaphore:
                await self._execute(run)
        except asyncio.CancelledError:
            self._fail(run, "pipeline cancelled: server shutting down")
            raise
        except Exception as e:
            logger.exception("Run %s: unexpected pipeline error", run.id)
            self._fail(run, f"pipeline exception: {e}")
        finally:
            self.hub.complete_all(run.id)

    async def _execute(self, run: RunRecord) -> None:
        cfg = run.config
        name = job_name(run.id, self.settings.kubernetes.job_prefix)

        self._log(run, "[INFO] ➜ Submitting build Job")
        job = build_job(run.id, cfg, self.settings)
        if not await self._submit_job(run, name, job):
            return

        try:
            if await self._build_and_publish(run, name):
                await self._deploy_and_finish(run)
        finally:
            await self._cleanup_job(run, name)

    async def _submit_job(self, run: RunRecord, name: str, job) -> bool:
        """Create the Job; on 409 delete the stale one and retry once."""
        try:
            await self.kube.create_job(self.namespace, job)
        except KubeApiError as e:
            if not e.is_conflict:
                self._fail(run, submission_error(e))
                return False
            self._log(run, f"[WARN] Job {name} already exists, deleting it and retrying")
            try:
                await self.kube.delete_job(self.namespace, name)
            except KubeApiError as de:
                logger.debug("Run %s: deleting stale Job %s failed: %s", run.id, name, de)
            await asyncio.sleep(self.runtime.conflict_retry_delay)
            try:
                await self.kube.create_job(self.namespace, job)
            except KubeApiError as e2:
                self._fail(run, submission_error(e2))
                return False
        self._log(run, f"[INFO] Kubernetes Job created: {name}")
        logger.info("Run %s: Job %s/%s created", run.id, self.namespace, name)
        return True

    async def _build_and_publish(self, run: RunRecord, name: str) -> bool:
        cfg = run.config

        pod_result = await self._wait_for_pod(run, name)
        if not pod_result.ok:
            return await self._poll_failed(run, pod_result, pod_name=_pod_name(pod_result.value))
        pod_name = pod_result.value.metadata.name
        self._log(run, f"[INFO] Pod created: {pod_name}")

        for step in build_chain(cfg):
            if run.status is not step.status:
                self._advance(run, step.status)
            self._log(run, f"[INFO] ➜ {step.description} ({step.container})")
            result = await self._wait_init_container(run, pod_name, step.container)
            if not result.ok:
                return await self._poll_failed(run, result, pod_name=pod_name)
            self._log(run, f"[INFO] ✓ {step.container} completed")

        self._advance(run, cfg.publish_mode.status)
        self._log(run, f"[INFO] ➜ {cfg.publish_mode.status.label}: {cfg.full_image_ref}")

        running = await self._wait_pod_running(run, pod_name)
        if not running.ok:
            return await self._poll_failed(run, running, pod_name=pod_name)

        stream = await self._stream_main_logs(run, pod_name)
        if stream.status is PollStatus.STOPPED:
            return False
        if stream.status is PollStatus.FATAL:
            return await self._poll_failed(run, stream, pod_name=pod_name)
        if stream.status is PollStatus.TIMEOUT:
            self._log(run, f"[WARN] stopped following {PUBLISH_CONTAINER} logs: {stream.message}")

        completion = await self._wait_job(run, name)
        if not completion.ok:
            return await self._poll_failed(run, completion, pod_name=pod_name)
        if not completion.value:
            await self._report_job_failure(run, name)
            return False

        if cfg.publish_mode is PublishMode.PUSH:
            self._log(run, f"[INFO] ✓ Image pushed: {cfg.full_image_ref}")
        else:
            self._log(run, f"[INFO] ✓ Image imported into the node's containerd: {cfg.full_image_ref}")
        return True

    async def _poll_failed(self, run: RunRecord, result: PollResult, pod_name: str | None) -> bool:
        """Turn a non-ok poll result into a FAILED run. Always returns False."""
        if result.status is PollStatus.STOPPED:
            return False
        if result.status is PollStatus.FATAL and pod_name:
            await self._log_events(run, pod_name)
        self._fail(run, result.message or "pipeline step failed")
        return False

    # ── Polling sites ────────────────────────────────────────────────────

    async def _wait_for_pod(self, run: RunRecord, name: str) -> PollResult:
        async def check(attempt: int) -> PollResult | None:
            try:
                pods = await self.kube.list_job_pods(self.namespace, name)
            except KubeApiError as e:
                logger.debug("Run %s: listing pods failed: %s", run.id, e)
                return None
            if not pods:
                return None
            pod = pods[0]
            if diagnosis.pod_phase(pod) == "Failed":
                detail = diagnosis.parse_pod_conditions(pod)
                return PollResult.fatal(
                    "pod failed to start" + (f": {detail}" if detail else ""), value=pod
                )
            waiting = diagnosis.pod_waiting_reason(pod)
            if waiting:
                if "ImagePull" in waiting or "InvalidImageName" in waiting:
                    return PollResult.fatal(f"image pull failed: {waiting}", value=pod)
                return PollResult.fatal(f"pod cannot start: {waiting}", value=pod)
            condition = diagnosis.parse_pod_conditions(pod)
            if condition and condition.startswith("Unschedulable"):
                return PollResult.fatal(f"pod cannot be scheduled: {condition}", value=pod)
            return PollResult.success(pod)

        return await poll(
            check,
            interval=self.runtime.poll_interval,
            max_attempts=self.runtime.pod_appear_attempts,
            timeout_message="Pod creation timed out",
            on_wait=self._wait_logger(run, "pod creation"),
            stop_when=lambda: run.finished,
        )

    async def _wait_init_container(self, run: RunRecord, pod_name: str, container: str) -> PollResult:
        cursor = LogCursor()
        last_reason: list[str | None] = [None]

        async def check(attempt: int) -> PollResult | None:
            try:
                pod = await self.kube.get_pod(self.namespace, pod_name)
            except KubeApiError as e:
                logger.debug("Run %s: reading pod failed: %s", run.id, e)
                return None
            if pod is None:
                return PollResult.fatal(f"pod {pod_name} disappeared while waiting for {container}")

            state = diagnosis.container_state(pod, container)
            if state in ("running", "terminated"):
                await self._pull_logs(run, pod_name, container, cursor, final=state == "terminated")
            if state == "terminated":
                exit_ = diagnosis.container_exit(pod, container)
                if exit_ is not None and exit_.failed:
                    return PollResult.fatal(exit_.describe(), value=pod)
                return PollResult.success(pod)

            other = diagnosis.failed_init_container(pod, exclude=container)
            if other is not None:
                return PollResult.fatal(f"init container {other.describe()}", value=pod)
            if diagnosis.pod_phase(pod) == "Failed":
                return PollResult.fatal(f"pod failed while waiting for {container}", value=pod)
            condition = diagnosis.parse_pod_conditions(pod)
            if condition and condition.startswith("Unschedulable"):
                return PollResult.fatal(f"pod cannot be scheduled: {condition}", value=pod)
            if state == "waiting":
                reason = diagnosis.waiting_reason(pod, container)
                last_reason[0] = reason
                if diagnosis.is_fatal_waiting(reason):
                    return PollResult.fatal(f"{container} cannot start: {reason}", value=pod)
            return None

        interval = self.runtime.poll_interval
        attempts = self.runtime.init_container_attempts
        return await poll(
            check,
            interval=interval,
            max_attempts=attempts,
            timeout_message=f"timed out waiting for {container} ({minutes(interval, attempts)} min)",
            on_wait=self._wait_logger(run, container, reason_of=lambda: last_reason[0]),
            stop_when=lambda: run.finished,
        )

    async def _wait_pod_running(self, run: RunRecord, pod_name: str) -> PollResult:
        async def check(attempt: int) -> PollResult | None:
            try:
                pod = await self.kube.get_pod(self.namespace, pod_name)
            except KubeApiError as e:
                logger.debug("Run %s: reading pod failed: %s", run.id, e)
                return None
            if pod is None:
                return PollResult.fatal(f"pod {pod_name} disappeared before {PUBLISH_CONTAINER} started")
            phase = diagnosis.pod_phase(pod)
            if phase in ("Running", "Succeeded"):
                return PollResult.success(pod)
            if phase == "Failed":
                failed = diagnosis.failed_init_container(pod)
                if failed is not None:
                    return PollResult.fatal(f"init container {failed.describe()}", value=pod)
                return PollResult.success(pod)  # publish ran and failed; the Job verdict follows
            reason = diagnosis.waiting_reason(pod, PUBLISH_CONTAINER)
            if diagnosis.is_fatal_waiting(reason):
                return PollResult.fatal(f"{PUBLISH_CONTAINER} cannot start: {reason}", value=pod)
            return None

        return await poll(
            check,
            interval=self.runtime.poll_interval,
            max_attempts=self.runtime.pod_running_attempts,
            timeout_message="timed out waiting for pod to start",
            on_wait=self._wait_logger(run, f"{PUBLISH_CONTAINER} to start"),
            stop_when=lambda: run.finished,
        )

    async def _stream_main_logs(self, run: RunRecord, pod_name: str) -> PollResult:
        cursor = LogCursor()

        async def check(attempt: int) -> PollResult | None:
            try:
                pod = await self.kube.get_pod(self.namespace, pod_name)
            except KubeApiError as e:
                logger.debug("Run %s: reading pod failed: %s", run.id, e)
                return None
            if pod is None:
                return PollResult.fatal(f"pod {pod_name} disappeared during {PUBLISH_CONTAINER}")
            state = diagnosis.container_state(pod, PUBLISH_CONTAINER)
            if state in ("running", "terminated"):
                await self._pull_logs(run, pod_name, PUBLISH_CONTAINER, cursor, final=state == "terminated")
            if state == "terminated":
                return PollResult.success(diagnosis.container_exit(pod, PUBLISH_CONTAINER))
            if diagnosis.pod_phase(pod) == "Failed":
                return PollResult.success(None)  # the Job status carries the verdict
            reason = diagnosis.waiting_reason(pod, PUBLISH_CONTAINER)
            if diagnosis.is_fatal_waiting(reason):
                return PollResult.fatal(f"{PUBLISH_CONTAINER} cannot start: {reason}", value=pod)
            return None

        interval = self.runtime.poll_interval
        attempts = self.runtime.log_stream_attempts
        return await poll(
            check,
            interval=interval,
            max_attempts=attempts,
            timeout_message=f"timed out waiting for {PUBLISH_CONTAINER} ({minutes(interval, attempts)} min)",
            stop_when=lambda: run.finished,
        )

    async def _wait_job(self, run: RunRecord, name: str) -> PollResult:
        """Value is True for Succeeded, False for Failed."""

        async def check(attempt: int) -> PollResult | None:
            try:
                job = await self.kube.get_job(self.namespace, name)
            except KubeApiError as e:
                logger.debug("Run %s: reading Job failed: %s", run.id, e)
                return None
            if job is None:
                return PollResult.fatal(f"Job {name} disappeared before completing")
            status = job.status
            if status is None:
                return None
            if status.succeeded:
                return PollResult.success(True)
            if status.failed:
                return PollResult.success(False)
            for cond in status.conditions or []:
                if cond.status == "True" and cond.type in ("Complete", "Failed"):
                    return PollResult.success(cond.type == "Complete")
            return None

        return await poll(
            check,
            interval=self.runtime.poll_interval,
            max_attempts=self.runtime.job_completion_attempts,
            timeout_message="timed out waiting for Job completion",
            on_wait=self._wait_logger(run, "Job completion"),
            stop_when=lambda: run.finished,
        )

    # ── Logs & diagnosis ─────────────────────────────────────────────────

    async def _pull_logs(
        self, run: RunRecord, pod_name: str, container: str, cursor: LogCursor, final: bool
    ) -> None:
        try:
            text = await self.kube.get_pod_log(self.namespace, pod_name, container)
        except Exception as e:
            logger.debug("Run %s: fetching %s logs failed, retrying next poll: %s", run.id, container, e)
            return
        self._log_many(run, cursor.advance(text, final=final))

    async def _log_events(self, run: RunRecord, pod_name: str) -> None:
        try:
            events = await self.kube.list_pod_events(self.namespace, pod_name)
        except Exception as e:
            logger.debug("Run %s: listing events failed: %s", run.id, e)
            return
        summary = diagnosis.parse_pod_events(events)
        if summary:
            self._log(run, f"[WARN] recent pod events: {summary}")

    async def _report_job_failure(self, run: RunRecord, name: str) -> None:
        """Consolidated diagnosis across every container, then fail the run."""
        pod = None
        try:
            pods = await self.kube.list_job_pods(self.namespace, name)
            pod = pods[0] if pods else None
        except KubeApiError as e:
            logger.debug("Run %s: listing pods for diagnosis failed: %s", run.id, e)

        logs: dict[str, str | None] = {}
        failed = [ex for ex in diagnosis.terminated_containers(pod) if ex.failed] if pod else []
        for ex in failed:
            try:
                logs[ex.name] = await self.kube.get_pod_log(self.namespace, pod.metadata.name, ex.name)
            except Exception as e:
                logger.debug("Run %s: fetching %s logs for diagnosis failed: %s", run.id, ex.name, e)

        self._log_many(run, diagnosis.diagnose_failure(pod, logs))
        if pod is not None:
            await self._log_events(run, pod.metadata.name)
        cause = failed[0].describe() if failed else "see the diagnosis above"
        self._fail(run, f"Job failed: {cause}")

    # ── Deploy ───────────────────────────────────────────────────────────

    async def _deploy_and_finish(self, run: RunRecord) -> None:
        cfg = run.config
        if not self._advance(run, RunStatus.DEPLOYING):
            return
        if cfg.deployment_name:
            self._log(run, f"[INFO] ➜ Rolling out to Deployment {cfg.namespace}/{cfg.deployment_name}")
            if not await self._deploy(run):
                return
        else:
            self._log(run, "[INFO] No target Deployment, skipping the rollout (image build only)")

        if run.deploy_warning:
            self._log(run, f"[WARN] Finished with a rollout warning: {run.deploy_warning}")
        self._log(run, f"[INFO] ✓ Pipeline finished, total duration {run.duration}")
        self._advance(run, RunStatus.SUCCESS)

    async def _deploy(self, run: RunRecord) -> bool:
        """Retarget the Deployment. False only when the run was failed here."""
        cfg = run.config
        ns, name = cfg.namespace, cfg.deployment_name
        image = cfg.full_image_ref

        try:
            deployment = await self.kube.get_deployment(ns, name)
        except KubeApiError as e:
            return self._deploy_failed(run, f"cannot read Deployment {ns}/{name}: {e}")
        if deployment is None:
            message = f"Deployment {name} not found in namespace {ns}"
            run.warn_deploy(message)
            self._log(run, f"[WARN] {message}")
            self._log(run, "[INFO] Skipping the rollout step; the image is still available")
            return True

        containers = deployment.spec.template.spec.containers or []
        if cfg.container_name:
            target = cfg.container_name
            if not any(c.name == target for c in containers):
                return self._deploy_failed(run, f"container {target} not found in Deployment {ns}/{name}")
        elif containers:
            target = containers[0].name
        else:
            return self._deploy_failed(run, f"Deployment {ns}/{name} has no containers")

        deploy = self.settings.deploy
        pull_policy = deploy.pull_policy_push if cfg.publish_mode is PublishMode.PUSH else deploy.pull_policy_import
        try:
            await self.kube.set_deployment_image(ns, name, target, image, pull_policy)
        except KubeApiError as e:
            return self._deploy_failed(run, f"Deployment update failed: {e}")
        self._log(run, f"[INFO] ✓ Deployment updated: {name}/{target} -> {image}")
        logger.info("Run %s: Deployment %s/%s set to %s", run.id, ns, name, image)

        self._log(run, "[INFO] Waiting for the rollout to settle...")
        await asyncio.sleep(self.runtime.rollout_settle_delay)
        try:
            updated = await self.kube.get_deployment(ns, name)
        except KubeApiError as e:
            logger.debug("Run %s: reading back Deployment failed: %s", run.id, e)
            updated = None
        if updated is not None:
            desired = updated.spec.replicas if updated.spec.replicas is not None else 1
            ready = (updated.status.ready_replicas if updated.status else None) or 0
            self._log(run, f"[INFO] Replicas: {ready}/{desired} ready")
        return True

    def _deploy_failed(self, run: RunRecord, message: str) -> bool:
        if self.settings.deploy.fail_on_error:
            self._fail(run, message)
            return False
        run.warn_deploy(message)
        self._log(run, f"[ERROR] {message}")
        self._log(run, "[WARN] The image was built and published; only the rollout failed")
        return True

    # ── Cleanup ──────────────────────────────────────────────────────────

    async def _cleanup_job(self, run: RunRecord, name: str) -> None:
        if run.status is not RunStatus.SUCCESS and self.runtime.keep_failed_jobs:
            logger.info("Run %s: keeping Job %s for inspection", run.id, name)
            return
        try:
            deleted = await self.kube.delete_job(self.namespace, name)
        except Exception as e:
            logger.warning("Run %s: deleting Job %s failed: %s", run.id, name, e)
            return
        if deleted:
            logger.info("Run %s: Job %s deleted", run.id, name)


def _pod_name(pod) -> str | None:
    metadata = getattr(pod, "metadata", None)
    return getattr(metadata, "name", None)

"""Tests for the run workflow, driven against a scripted Kubernetes fake."""

import asyncio

import pytest
from kubernetes import client

from harborline.errors import ValidationError
from harborline.kube import KubeApiError
from harborline.models import PublishMode, RunConfig, RunStatus
from harborline.orchestrator import submission_error
from kube_fakes import condition, cstatus, event, make_deployment, make_pod, success_timeline


def _config(**overrides) -> RunConfig:
    values = {"repo_url": "https://git.example.com/team/app.git", "image_name": "app", "image_tag": "v2"}
    values.update(overrides)
    return RunConfig(**values)


async def _run(orchestrator, config: RunConfig):
    run_id = orchestrator.trigger(config)
    await orchestrator.wait_idle()
    return orchestrator.get(run_id)


def _lines(run) -> list[str]:
    return [line.split("] ", 1)[1] for line in run.logs_snapshot()]


# ── Trigger ──────────────────────────────────────────────────────────────────


class TestTrigger:
    async def test_returns_pending_run_immediately(self, orchestrator, registry):
        run_id = orchestrator.trigger(_config())
        run = registry.get(run_id)
        assert run.status is RunStatus.PENDING
        assert orchestrator.active_count == 1
        assert "[INFO] Repository: https://git.example.com/team/app.git" in _lines(run)
        await orchestrator.wait_idle()

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"repo_url": ""}, "repository URL is required"),
            ({"repo_url": "   "}, "repository URL is required"),
            ({"image_name": ""}, "image name is required"),
            ({"branch": " "}, "branch must not be empty"),
        ],
    )
    async def test_validation(self, orchestrator, registry, overrides, message):
        with pytest.raises(ValidationError, match=message):
            orchestrator.trigger(_config(**overrides))
        assert len(registry) == 0

    async def test_defaults_from_settings(self, orchestrator, settings):
        settings.git.token = "default-token"
        run = await _run(orchestrator, _config())
        assert run.config.registry_host == "harbor.test"
        assert run.config.registry_project == "apps"
        assert run.config.token == "default-token"

    async def test_explicit_project_kept(self, orchestrator):
        run = await _run(orchestrator, _config(registry_project="library", registry_host="other.io"))
        assert run.config.full_image_ref == "other.io/library/app:v2"


# ── Happy paths ──────────────────────────────────────────────────────────────


class TestSuccess:
    async def test_push_and_deploy(self, orchestrator, kube, hub):
        kube.deployments[("prod", "web")] = make_deployment("web", containers=("web", "sidecar"))
        run_id = orchestrator.trigger(_config(namespace="prod", deployment_name="web"))
        sub = hub.subscribe(run_id)
        await orchestrator.wait_idle()
        run = orchestrator.get(run_id)

        assert run.status is RunStatus.SUCCESS
        assert run.current_step == 4
        assert run.error_message is None
        assert run.end_time is not None

        assert kube.patches == [
            {
                "namespace": "prod",
                "name": "web",
                "container": "web",
                "image": "harbor.test/apps/app:v2",
                "pull_policy": "Always",
            }
        ]
        lines = _lines(run)
        assert "Cloning into '/workspace'..." in lines
        assert "INFO[0009] Saving image tarball" in lines
        assert "2026/01/01 pushed blob sha256:abc" in lines
        assert "[INFO] Replicas: 2/2 ready" in lines
        assert kube.deleted == [f"harborline-{run_id}"]

        events = [e async for e in sub]
        statuses = [e.data["status"] for e in events if e.event == "status"]
        assert statuses == ["CLONING", "BUILDING", "PUSHING", "DEPLOYING", "SUCCESS"]
        assert events[-1].event == "complete"
        indices = [e.data["index"] for e in events if e.event == "log"]
        backlog = len(events[0].data["logs"])
        assert indices == list(range(backlog, backlog + len(indices)))
        assert backlog + len(indices) == run.log_count

    async def test_build_step_and_named_container(self, orchestrator, kube):
        kube.pod_timeline = success_timeline(with_build=True)
        kube.logs["build"] = "[INFO] BUILD SUCCESS\n"
        kube.deployments[("default", "api")] = make_deployment("api", containers=("init", "api"))
        run = await _run(
            orchestrator, _config(build_command="mvn package", deployment_name="api", container_name="api")
        )
        assert run.status is RunStatus.SUCCESS
        assert "[INFO] BUILD SUCCESS" in _lines(run)
        assert kube.patches[0]["container"] == "api"

    async def test_import_mode_pull_policy(self, orchestrator, kube):
        kube.deployments[("default", "web")] = make_deployment()
        run = await _run(orchestrator, _config(deployment_name="web", publish_mode=PublishMode.IMPORT))
        assert run.status is RunStatus.SUCCESS
        assert kube.patches[0]["pull_policy"] == "IfNotPresent"
        assert any("imported into the node" in line for line in _lines(run))

    async def test_no_deployment_requested(self, orchestrator, kube):
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.SUCCESS
        assert kube.patches == []
        assert any("skipping the rollout" in line for line in _lines(run))

    async def test_missing_deployment_is_a_warning(self, orchestrator, kube):
        run = await _run(orchestrator, _config(deployment_name="ghost"))
        assert run.status is RunStatus.SUCCESS
        assert run.deploy_warning == "Deployment ghost not found in namespace default"
        assert "[WARN] Deployment ghost not found in namespace default" in _lines(run)

    async def test_patch_failure_is_a_warning(self, orchestrator, kube):
        kube.deployments[("default", "web")] = make_deployment()
        kube.patch_error = KubeApiError(403, "Forbidden", "cannot patch deployments")
        run = await _run(orchestrator, _config(deployment_name="web"))
        assert run.status is RunStatus.SUCCESS
        assert run.deploy_warning.startswith("Deployment update failed")

    async def test_patch_failure_fails_run_when_configured(self, orchestrator, kube, settings):
        settings.deploy.fail_on_error = True
        kube.deployments[("default", "web")] = make_deployment()
        kube.patch_error = KubeApiError(403, "Forbidden", "cannot patch deployments")
        run = await _run(orchestrator, _config(deployment_name="web"))
        assert run.status is RunStatus.FAILED
        assert run.current_step == 3
        assert "Deployment update failed" in run.error_message

    async def test_unknown_container_name(self, orchestrator, kube):
        kube.deployments[("default", "web")] = make_deployment()
        run = await _run(orchestrator, _config(deployment_name="web", container_name="nope"))
        assert run.status is RunStatus.SUCCESS
        assert run.deploy_warning == "container nope not found in Deployment default/web"
        assert kube.patches == []


# ── Failures ─────────────────────────────────────────────────────────────────


class TestFailures:
    async def test_build_command_exit_1(self, orchestrator, kube):
        kube.pod_timeline = [
            make_pod(init=[cstatus("git-clone", "running"), cstatus("build"), cstatus("image-build")]),
            make_pod(init=[cstatus("git-clone", "terminated"), cstatus("build", "running"), cstatus("image-build")]),
            make_pod(
                phase="Failed",
                init=[
                    cstatus("git-clone", "terminated"),
                    cstatus("build", "terminated", exit_code=1),
                    cstatus("image-build"),
                ],
            ),
        ]
        kube.logs["build"] = "[ERROR] COMPILATION ERROR\n"
        run = await _run(orchestrator, _config(build_command="mvn package"))

        assert run.status is RunStatus.FAILED
        assert run.current_step == 1
        assert "exit 1" in run.error_message
        lines = _lines(run)
        assert "[ERROR] COMPILATION ERROR" in lines
        assert lines[-1].startswith("[ERROR] build failed (exit 1)")
        assert not any("(image-build)" in line for line in lines)

    async def test_pod_never_appears(self, orchestrator, kube):
        kube.pod_timeline = []
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.current_step == -1
        assert run.error_message == "Pod creation timed out"
        assert kube.deleted  # Job cleaned up

    async def test_image_pull_failure_reports_events(self, orchestrator, kube):
        kube.pod_timeline = [
            make_pod(init=[cstatus("git-clone", "waiting", reason="ErrImagePull", message="not found")])
        ]
        kube.events = [event("Failed", "Failed to pull image alpine/git:nope")]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message.startswith("image pull failed: git-clone: ErrImagePull")
        assert "[WARN] recent pod events: Failed: Failed to pull image alpine/git:nope" in _lines(run)

    async def test_conflict_retried_once(self, orchestrator, kube):
        kube.create_errors = [KubeApiError(409, "Conflict", "already exists")]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.SUCCESS
        assert kube.create_calls == 2
        assert any("already exists, deleting it and retrying" in line for line in _lines(run))

    async def test_conflict_twice_fails(self, orchestrator, kube):
        kube.create_errors = [KubeApiError(409, "Conflict", "x"), KubeApiError(409, "Conflict", "x")]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message.startswith("Kubernetes API error (409)")

    async def test_forbidden(self, orchestrator, kube):
        kube.create_errors = [KubeApiError(403, "Forbidden", "jobs.batch is forbidden")]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message == "permission denied (403 Forbidden): jobs.batch is forbidden"
        assert kube.deleted == []

    async def test_invalid_job(self, orchestrator, kube):
        kube.create_errors = [KubeApiError(422, "Unprocessable Entity", "spec.template invalid")]
        run = await _run(orchestrator, _config())
        assert run.error_message.startswith("invalid Job definition (422 Unprocessable)")

    async def test_publish_failure_diagnosed(self, orchestrator, kube):
        timeline = success_timeline()
        done = [cstatus("git-clone", "terminated"), cstatus("image-build", "terminated")]
        timeline[-1] = make_pod(
            phase="Failed", init=done, main=[cstatus("publish", "terminated", exit_code=1)]
        )
        kube.pod_timeline = timeline
        kube.job_status = client.V1JobStatus(failed=1)
        kube.logs["publish"] = "Error: UNAUTHORIZED: authentication required\n"
        run = await _run(orchestrator, _config())

        assert run.status is RunStatus.FAILED
        assert run.current_step == 2
        assert run.error_message.startswith("Job failed: publish failed (exit 1)")
        lines = _lines(run)
        assert "[ERROR] last 1 log lines of publish:" in lines
        assert "    Error: UNAUTHORIZED: authentication required" in lines

    async def test_failed_run_keeps_job_when_configured(self, orchestrator, kube, settings):
        settings.runtime.keep_failed_jobs = True
        kube.pod_timeline = []
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert kube.deleted == []

    async def test_stop_cancels_inflight_runs(self, orchestrator, kube, settings):
        settings.runtime.poll_interval = 0.05
        settings.runtime.pod_appear_attempts = 1000
        kube.pod_timeline = []
        run_id = orchestrator.trigger(_config())
        await asyncio.sleep(0.1)
        await orchestrator.stop()
        run = orchestrator.get(run_id)
        assert run.status is RunStatus.FAILED
        assert run.error_message == "pipeline cancelled: server shutting down"


class TestWaitFailures:
    async def test_transport_error_mid_run_is_retried(self, orchestrator, kube):
        kube.pod_read_errors[2] = KubeApiError(0, "transport error", "connection reset by peer")
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.SUCCESS
        assert not any("pipeline exception" in line for line in _lines(run))

    async def test_transport_error_on_submit(self, orchestrator, kube):
        kube.create_errors = [KubeApiError(0, "transport error", "connection refused")]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message == "Kubernetes API error (0): connection refused"

    async def test_invalid_image_name_is_a_pull_failure(self, orchestrator, kube):
        kube.pod_timeline = [
            make_pod(init=[cstatus("git-clone", "waiting", reason="InvalidImageName", message="bad ref")])
        ]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message == "image pull failed: git-clone: InvalidImageName: bad ref"

    async def test_unschedulable_after_pod_listed(self, orchestrator, kube):
        kube.pod_timeline = [
            make_pod(),
            make_pod(
                conditions=[
                    condition("PodScheduled", "False", "Unschedulable", "0/1 nodes are available: insufficient cpu")
                ]
            ),
        ]
        kube.events = [event("FailedScheduling", "0/1 nodes are available: insufficient cpu")]
        run = await _run(orchestrator, _config())

        assert run.status is RunStatus.FAILED
        assert run.current_step == 0
        assert run.error_message == "pod cannot be scheduled: Unschedulable: 0/1 nodes are available: insufficient cpu"
        assert "[WARN] recent pod events: FailedScheduling: 0/1 nodes are available: insufficient cpu" in _lines(run)

    async def test_crash_loop_in_init_chain(self, orchestrator, kube):
        kube.pod_timeline = [
            make_pod(init=[cstatus("git-clone", "running"), cstatus("image-build")]),
            make_pod(
                init=[
                    cstatus("git-clone", "waiting", reason="CrashLoopBackOff", message="back-off 10s"),
                    cstatus("image-build"),
                ]
            ),
        ]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message == "git-clone cannot start: CrashLoopBackOff: back-off 10s"

    async def test_config_error_on_image_build(self, orchestrator, kube):
        timeline = success_timeline()
        timeline[2] = make_pod(
            init=[
                cstatus("git-clone", "terminated"),
                cstatus(
                    "image-build",
                    "waiting",
                    reason="CreateContainerConfigError",
                    message='secret "harbor-registry-secret" not found',
                ),
            ]
        )
        kube.pod_timeline = timeline[:3]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.current_step == 1
        assert run.error_message.startswith("image-build cannot start: CreateContainerConfigError")

    async def test_earlier_init_failure_seen_while_waiting(self, orchestrator, kube):
        kube.pod_timeline = [
            make_pod(init=[cstatus("git-clone", "running"), cstatus("image-build")]),
            make_pod(init=[cstatus("git-clone", "terminated"), cstatus("image-build")]),
            make_pod(
                phase="Failed",
                init=[cstatus("git-clone", "terminated", exit_code=128), cstatus("image-build")],
            ),
        ]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message.startswith("init container git-clone failed (exit 128)")

    async def test_init_container_timeout(self, orchestrator, kube):
        kube.pod_timeline = [make_pod(init=[cstatus("git-clone", "running"), cstatus("image-build")])]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message == "timed out waiting for git-clone (1 min)"

    async def test_job_completion_timeout(self, orchestrator, kube):
        kube.job_status = client.V1JobStatus(active=1)
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.current_step == 2
        assert run.error_message == "timed out waiting for Job completion"

    async def test_unexpected_exception_fails_run(self, orchestrator, kube):
        async def broken_get_job(namespace, name):
            raise RuntimeError("boom")

        kube.get_job = broken_get_job
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message == "pipeline exception: boom"
        assert kube.deleted == [f"harborline-{run.id}"]

    @pytest.mark.parametrize(
        "gone_at, message",
        [
            (1, "pod harborline-pod disappeared while waiting for git-clone"),
            (3, "pod harborline-pod disappeared before publish started"),
            (4, "pod harborline-pod disappeared during publish"),
        ],
    )
    async def test_pod_disappears(self, orchestrator, kube, gone_at, message):
        kube.pod_timeline = success_timeline()[:gone_at] + [None]
        run = await _run(orchestrator, _config())
        assert run.status is RunStatus.FAILED
        assert run.error_message == message


def test_submission_error_generic():
    assert submission_error(KubeApiError(500, "Internal", "etcd down")) == "Kubernetes API error (500): etcd down"

"""Job Spec Builder: the Kubernetes Job that clones, builds and publishes an image.

Pod layout::

    init: git-clone → [build] → image-build (kaniko, writes /workspace/image.tar)
    main: publish (crane push to the registry, or ctr import into the node)

Every container shares the ``workspace`` emptyDir. ``restartPolicy=Never`` and
``backoffLimit=0`` make a failure surface exactly once; retries are the
orchestrator's business, not the Job controller's.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass

from kubernetes import client

from harborline.config import HarborlineConfig
from harborline.models import PublishMode, RunConfig, RunStatus

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "harborline"
RUN_ID_LABEL = "harborline.io/run-id"

WORKSPACE = "/workspace"
IMAGE_TAR = f"{WORKSPACE}/image.tar"
BUILD_CACHE_PATH = "/root/.m2"
DOCKER_CONFIG_DIR = "/kaniko/.docker"
CONTAINERD_SOCKET_PATH = "/run/containerd/containerd.sock"

CLONE_CONTAINER = "git-clone"
BUILD_CONTAINER = "build"
IMAGE_BUILD_CONTAINER = "image-build"
PUBLISH_CONTAINER = "publish"


@dataclass(frozen=True)
class ChainStep:
    """One init container and the run status shown while it executes."""

    container: str
    status: RunStatus
    description: str


def job_name(run_id: str, prefix: str = MANAGED_BY_VALUE) -> str:
    return f"{prefix}-{run_id}"


def managed_selector() -> str:
    """Label selector matching every Job this service creates."""
    return f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"


def build_chain(config: RunConfig) -> list[ChainStep]:
    """Ordered init containers the orchestrator waits on.

    The optional packaging step and the image build both report BUILDING;
    the status only moves when the container changes phase of the pipeline.
    """
    chain = [ChainStep(CLONE_CONTAINER, RunStatus.CLONING, "clone source")]
    if config.has_build_step:
        chain.append(ChainStep(BUILD_CONTAINER, RunStatus.BUILDING, "build command"))
    chain.append(ChainStep(IMAGE_BUILD_CONTAINER, RunStatus.BUILDING, "image build"))
    return chain


# ── Commands ─────────────────────────────────────────────────────────────────


def clone_script(config: RunConfig, settings: HarborlineConfig) -> str:
    git = settings.git
    cmds = [
        "git config --global http.version HTTP/1.1",
        "git config --global protocol.version 1",
        f"git config --global http.postBuffer {git.post_buffer}",
        f"git config --global http.lowSpeedLimit {git.low_speed_limit}",
        f"git config --global http.lowSpeedTime {git.low_speed_time}",
    ]
    if config.proxy:
        proxy = shlex.quote(config.proxy)
        cmds.append(f"git config --global http.proxy {proxy}")
        cmds.append(f"git config --global https.proxy {proxy}")
    cmds.append(
        f"git clone --depth 1 --branch {shlex.quote(config.branch)} "
        f"{shlex.quote(config.clone_url)} {WORKSPACE}"
    )
    cmds.append("echo '[INFO] clone completed'")
    return " && ".join(cmds)


def build_script(config: RunConfig) -> str:
    return f"cd {WORKSPACE} && {config.build_command.strip()} && echo '[INFO] build command completed'"


def kaniko_args(config: RunConfig, settings: HarborlineConfig) -> list[str]:
    args = [
        f"--dockerfile={config.dockerfile_path}",
        f"--context=dir://{WORKSPACE}",
        f"--destination={config.full_image_ref}",
        "--no-push",
        f"--tar-path={IMAGE_TAR}",
        "--verbosity=info",
    ]
    if settings.registry.insecure:
        args += ["--insecure", "--skip-tls-verify", "--insecure-pull"]
    return args


def publish_command(config: RunConfig, settings: HarborlineConfig) -> list[str]:
    if config.publish_mode is PublishMode.IMPORT:
        return [
            "ctr",
            "--address",
            CONTAINERD_SOCKET_PATH,
            "-n",
            "k8s.io",
            "images",
            "import",
            IMAGE_TAR,
        ]
    cmd = ["crane", "push", IMAGE_TAR, config.full_image_ref]
    if settings.registry.insecure:
        cmd.append("--insecure")
    return cmd


# ── Containers & Volumes ─────────────────────────────────────────────────────


def _mount(name: str, path: str, read_only: bool = False) -> client.V1VolumeMount:
    return client.V1VolumeMount(name=name, mount_path=path, read_only=read_only or None)


def _containers(
    config: RunConfig, settings: HarborlineConfig
) -> tuple[list[client.V1Container], client.V1Container]:
    images = settings.images
    res = settings.resources
    workspace = _mount("workspace", WORKSPACE)

    init_containers = [
        client.V1Container(
            name=CLONE_CONTAINER,
            image=images.git,
            image_pull_policy=images.pull_policy,
            command=["sh", "-c", clone_script(config, settings)],
            volume_mounts=[workspace],
        )
    ]
    if config.has_build_step:
        init_containers.append(
            client.V1Container(
                name=BUILD_CONTAINER,
                image=images.build,
                image_pull_policy=images.pull_policy,
                command=["sh", "-c", build_script(config)],
                volume_mounts=[workspace, _mount("build-cache", BUILD_CACHE_PATH)],
            )
        )
    init_containers.append(
        client.V1Container(
            name=IMAGE_BUILD_CONTAINER,
            image=images.kaniko,
            image_pull_policy=images.pull_policy,
            args=kaniko_args(config, settings),
            volume_mounts=[workspace, _mount("docker-config", DOCKER_CONFIG_DIR, read_only=True)],
            resources=client.V1ResourceRequirements(
                requests={"cpu": res.image_build_cpu_request, "memory": res.image_build_memory_request},
                limits={"cpu": res.image_build_cpu_limit, "memory": res.image_build_memory_limit},
            ),
        )
    )

    if config.publish_mode is PublishMode.IMPORT:
        publish = client.V1Container(
            name=PUBLISH_CONTAINER,
            image=images.importer,
            image_pull_policy=images.pull_policy,
            command=publish_command(config, settings),
            volume_mounts=[workspace, _mount("containerd-socket", CONTAINERD_SOCKET_PATH)],
            security_context=client.V1SecurityContext(privileged=True),
        )
    else:
        publish = client.V1Container(
            name=PUBLISH_CONTAINER,
            image=images.publisher,
            image_pull_policy=images.pull_policy,
            command=publish_command(config, settings),
            env=[client.V1EnvVar(name="DOCKER_CONFIG", value=DOCKER_CONFIG_DIR)],
            volume_mounts=[workspace, _mount("docker-config", DOCKER_CONFIG_DIR, read_only=True)],
        )
    return init_containers, publish


def _volumes(config: RunConfig, settings: HarborlineConfig) -> list[client.V1Volume]:
    volumes = [
        client.V1Volume(name="workspace", empty_dir=client.V1EmptyDirVolumeSource()),
        client.V1Volume(
            name="docker-config",
            secret=client.V1SecretVolumeSource(
                secret_name=settings.registry.secret_name,
                items=[client.V1KeyToPath(key=".dockerconfigjson", path="config.json")],
            ),
        ),
    ]
    if config.has_build_step:
        claim = settings.resources.build_cache_claim
        if claim:
            cache = client.V1Volume(
                name="build-cache",
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=claim),
            )
        else:
            cache = client.V1Volume(name="build-cache", empty_dir=client.V1EmptyDirVolumeSource())
        volumes.append(cache)
    if config.publish_mode is PublishMode.IMPORT:
        volumes.append(
            client.V1Volume(
                name="containerd-socket",
                host_path=client.V1HostPathVolumeSource(
                    path=settings.resources.containerd_socket, type="Socket"
                ),
            )
        )
    return volumes


# ── Job ──────────────────────────────────────────────────────────────────────


def build_job(run_id: str, config: RunConfig, settings: HarborlineConfig) -> client.V1Job:
    """Construct the Job manifest for one run. Pure: no API calls."""
    name = job_name(run_id, settings.kubernetes.job_prefix)
    labels = {MANAGED_BY_LABEL: MANAGED_BY_VALUE, RUN_ID_LABEL: run_id}
    init_containers, publish = _containers(config, settings)

    host_aliases = None
    if settings.registry.ip and config.registry_host:
        host_aliases = [client.V1HostAlias(ip=settings.registry.ip, hostnames=[config.registry_host])]

    pod_spec = client.V1PodSpec(
        restart_policy="Never",
        service_account_name=settings.kubernetes.service_account,
        init_containers=init_containers,
        containers=[publish],
        volumes=_volumes(config, settings),
        host_aliases=host_aliases,
    )
    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=name, namespace=settings.kubernetes.job_namespace, labels=dict(labels)
        ),
        spec=client.V1JobSpec(
            backoff_limit=0,
            ttl_seconds_after_finished=settings.kubernetes.job_ttl_seconds,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=dict(labels)),
                spec=pod_spec,
            ),
        ),
    )

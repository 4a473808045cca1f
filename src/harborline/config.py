"""Configuration loading for Harborline.

Reads ``harborline.yaml`` into pydantic models and applies ``HARBORLINE_*``
environment overrides. Every section has working defaults, so an empty or
missing file yields a usable configuration for a single-node cluster.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "harborline.yaml"

# RFC 1123 label, leaving room for "-<run id>" in the Job name.
_JOB_PREFIX_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,40}[a-z0-9])?$")


# ── Config Models ────────────────────────────────────────────────────────────


class KubernetesConfig(BaseModel):
    kubeconfig: str | None = None  # path; None = in-cluster, then ~/.kube/config
    master_url: str | None = None  # overrides the API server URL from kubeconfig
    job_namespace: str = "default"
    service_account: str = "default"
    job_prefix: str = "harborline"
    job_ttl_seconds: int = 3600

    @field_validator("job_prefix")
    @classmethod
    def _validate_job_prefix(cls, v: str) -> str:
        if not _JOB_PREFIX_RE.match(v):
            raise ValueError(f"job_prefix must be a lowercase DNS label of at most 42 chars, got {v!r}")
        return v


class RegistryConfig(BaseModel):
    host: str = "harbor.local"
    project: str = "library"
    ip: str | None = None  # written to hostAliases when the host has no DNS
    secret_name: str = "harbor-registry-secret"  # kubernetes.io/dockerconfigjson
    insecure: bool = True  # plain HTTP / self-signed registry


class GitConfig(BaseModel):
    token: str | None = None  # used when a request carries no token
    proxy: str | None = None  # used when a request carries no proxy
    post_buffer: int = 524_288_000
    low_speed_limit: int = 1000
    low_speed_time: int = 30


class ImagesConfig(BaseModel):
    git: str = "alpine/git:latest"
    build: str = "maven:3.9-eclipse-temurin-17"
    kaniko: str = "gcr.io/kaniko-project/executor:latest"
    publisher: str = "gcr.io/go-containerregistry/crane:debug"
    importer: str = "rancher/k3s:latest"  # any image that ships ctr
    pull_policy: str = "IfNotPresent"


class ResourcesConfig(BaseModel):
    image_build_cpu_request: str = "500m"
    image_build_cpu_limit: str = "2"
    image_build_memory_request: str = "1Gi"
    image_build_memory_limit: str = "4Gi"
    build_cache_claim: str | None = None  # PVC for /root/.m2; None = emptyDir
    containerd_socket: str = "/run/k3s/containerd/containerd.sock"


class RuntimeConfig(BaseModel):
    max_concurrent_runs: int = 4
    poll_interval: float = 5.0  # seconds between Kubernetes polls
    pod_appear_attempts: int = 60
    init_container_attempts: int = 360
    pod_running_attempts: int = 60
    log_stream_attempts: int = 120
    job_completion_attempts: int = 120
    conflict_retry_delay: float = 3.0
    rollout_settle_delay: float = 3.0
    wait_log_every: int = 6  # emit a "still waiting" line every N attempts
    sweep_interval: float = 60.0
    inactivity_timeout: float = 1800.0
    keep_failed_jobs: bool = False
    reap_orphans_on_startup: bool = True
    subscriber_queue_size: int = 1000

    @field_validator(
        "max_concurrent_runs",
        "pod_appear_attempts",
        "init_container_attempts",
        "pod_running_attempts",
        "log_stream_attempts",
        "job_completion_attempts",
        "wait_log_every",
        "subscriber_queue_size",
    )
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be at least 1, got {v}")
        return v

    @field_validator("sweep_interval", "inactivity_timeout")
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("poll_interval", "conflict_retry_delay", "rollout_settle_delay")
    @classmethod
    def _non_negative_seconds(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"must not be negative, got {v}")
        return v


class DeployConfig(BaseModel):
    pull_policy_push: str | None = "Always"  # image was pushed under a reused tag
    pull_policy_import: str | None = "IfNotPresent"  # image only exists on the node
    fail_on_error: bool = False  # a failed Deployment update fails the run


class ApiConfig(BaseModel):
    api_key: str | None = None  # Bearer key; None = open API


class HarborlineConfig(BaseModel):
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    images: ImagesConfig = Field(default_factory=ImagesConfig)
    resources: ResourcesConfig = Field(default_factory=ResourcesConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


# ── Config Loader ────────────────────────────────────────────────────────────

# env var → (section, field)
_ENV_OVERRIDES = {
    "HARBORLINE_KUBECONFIG": ("kubernetes", "kubeconfig"),
    "HARBORLINE_MASTER_URL": ("kubernetes", "master_url"),
    "HARBORLINE_NAMESPACE": ("kubernetes", "job_namespace"),
    "HARBORLINE_REGISTRY_HOST": ("registry", "host"),
    "HARBORLINE_REGISTRY_PROJECT": ("registry", "project"),
    "HARBORLINE_REGISTRY_IP": ("registry", "ip"),
    "HARBORLINE_GIT_TOKEN": ("git", "token"),
    "HARBORLINE_GIT_PROXY": ("git", "proxy"),
    "HARBORLINE_API_KEY": ("api", "api_key"),
}


def load_config(path: Path | str | None = None) -> HarborlineConfig:
    """Load Harborline configuration.

    Args:
        path: YAML file to read. Defaults to ``harborline.yaml`` in the
            current directory; a missing file means all defaults.

    Returns:
        Validated HarborlineConfig with environment overrides applied.

    Raises:
        ValueError: If the file does not hold a mapping or fails validation.
    """
    config_path = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_FILE

    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"{config_path}: top level must be a mapping")
        # A section holding only comments parses as None
        raw = {k: v for k, v in raw.items() if v is not None}
    else:
        logger.info("No config file at %s, using defaults", config_path)

    for env_var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            raw.setdefault(section, {})[key] = value

    config = HarborlineConfig(**raw)
    logger.info(
        "Loaded Harborline config: namespace=%s registry=%s/%s max_concurrent_runs=%d",
        config.kubernetes.job_namespace,
        config.registry.host,
        config.registry.project,
        config.runtime.max_concurrent_runs,
    )
    return config

"""Kubernetes API boundary.

``KubeClient`` wraps the blocking official ``kubernetes`` client and runs each
call in a worker thread so the event loop never stalls on the API server.
API failures surface as ``KubeApiError`` with the HTTP status preserved
(status 0 for connection-level failures such as a reset socket);
single-object reads that hit 404 return None instead of raising.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from harborline.config import KubernetesConfig

logger = logging.getLogger(__name__)


class KubeApiError(Exception):
    """A Kubernetes API call failed with an HTTP status."""

    def __init__(self, status: int, reason: str = "", message: str = ""):
        self.status = status
        self.reason = reason
        self.message = message or reason
        super().__init__(f"{status} {reason}: {self.message}".strip())

    @classmethod
    def from_api_exception(cls, exc: ApiException) -> "KubeApiError":
        return cls(status=exc.status or 0, reason=exc.reason or "", message=_body_message(exc))

    @property
    def is_conflict(self) -> bool:
        return self.status == 409

    @property
    def is_forbidden(self) -> bool:
        return self.status == 403

    @property
    def is_invalid(self) -> bool:
        return self.status == 422

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


def _body_message(exc: ApiException) -> str:
    """Pull the human ``message`` field out of a Status body when present."""
    body = exc.body
    if not body:
        return exc.reason or ""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return str(body)[:500]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return str(body)[:500]


def _event_time(event: Any) -> float:
    for ts in (
        getattr(event, "last_timestamp", None),
        getattr(event, "event_time", None),
        getattr(getattr(event, "metadata", None), "creation_timestamp", None),
    ):
        if ts is not None:
            return ts.timestamp()
    return 0.0


def load_api_client(settings: KubernetesConfig) -> client.ApiClient:
    """Build an ApiClient: explicit kubeconfig, else in-cluster, else ~/.kube/config."""
    configuration = client.Configuration()
    if settings.kubeconfig:
        config.load_kube_config(config_file=settings.kubeconfig, client_configuration=configuration)
        logger.info("Kubernetes config loaded from %s", settings.kubeconfig)
    else:
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Kubernetes in-cluster config loaded")
        except config.ConfigException:
            config.load_kube_config(client_configuration=configuration)
            logger.info("Kubernetes config loaded from default kubeconfig")
    if settings.master_url:
        configuration.host = settings.master_url
    return client.ApiClient(configuration)


class KubeClient:
    """Async facade over the Batch, Core and Apps APIs used by the pipeline."""

    def __init__(self, api_client: client.ApiClient | None = None):
        self._api_client = api_client
        self.batch = client.BatchV1Api(api_client)
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)

    @classmethod
    def from_settings(cls, settings: KubernetesConfig) -> "KubeClient":
        return cls(load_api_client(settings))

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise KubeApiError.from_api_exception(e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise KubeApiError(status=0, reason="transport error", message=str(e)) from e

    async def _read(self, fn, *args, **kwargs):
        try:
            return await self._call(fn, *args, **kwargs)
        except KubeApiError as e:
            if e.is_not_found:
                return None
            raise

    def close(self) -> None:
        if self._api_client is not None:
            self._api_client.close()

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def create_job(self, namespace: str, job: client.V1Job) -> client.V1Job:
        return await self._call(self.batch.create_namespaced_job, namespace=namespace, body=job)

    async def get_job(self, namespace: str, name: str) -> client.V1Job | None:
        return await self._read(self.batch.read_namespaced_job, name=name, namespace=namespace)

    async def delete_job(self, namespace: str, name: str) -> bool:
        """Delete a Job and its pods in the background. False if it was already gone."""
        try:
            await self._call(
                self.batch.delete_namespaced_job,
                name=name,
                namespace=namespace,
                propagation_policy="Background",
            )
        except KubeApiError as e:
            if e.is_not_found:
                return False
            raise
        return True

    async def list_jobs(self, namespace: str, label_selector: str) -> list[client.V1Job]:
        result = await self._call(
            self.batch.list_namespaced_job, namespace=namespace, label_selector=label_selector
        )
        return list(result.items or [])

    # ── Pods ─────────────────────────────────────────────────────────────

    async def list_job_pods(self, namespace: str, job_name: str) -> list[client.V1Pod]:
        result = await self._call(
            self.core.list_namespaced_pod, namespace=namespace, label_selector=f"job-name={job_name}"
        )
        return list(result.items or [])

    async def get_pod(self, namespace: str, name: str) -> client.V1Pod | None:
        return await self._read(self.core.read_namespaced_pod, name=name, namespace=namespace)

    async def get_pod_log(self, namespace: str, pod: str, container: str) -> str:
        """Full log of one container (re-fetched on every call)."""
        log = await self._call(
            self.core.read_namespaced_pod_log, name=pod, namespace=namespace, container=container
        )
        return log or ""

    async def list_pod_events(self, namespace: str, pod: str) -> list[Any]:
        """Events whose involved object is ``pod``, oldest first."""
        result = await self._call(
            self.core.list_namespaced_event,
            namespace=namespace,
            field_selector=f"involvedObject.name={pod}",
        )
        return sorted(result.items or [], key=_event_time)

    # ── Deployments ──────────────────────────────────────────────────────

    async def get_deployment(self, namespace: str, name: str) -> client.V1Deployment | None:
        return await self._read(self.apps.read_namespaced_deployment, name=name, namespace=namespace)

    async def set_deployment_image(
        self,
        namespace: str,
        name: str,
        container: str,
        image: str,
        pull_policy: str | None = None,
    ) -> client.V1Deployment:
        """Strategic-merge patch of one container's image (and pull policy)."""
        entry: dict[str, Any] = {"name": container, "image": image}
        if pull_policy:
            entry["imagePullPolicy"] = pull_policy
        body = {"spec": {"template": {"spec": {"containers": [entry]}}}}
        return await self._call(
            self.apps.patch_namespaced_deployment, name=name, namespace=namespace, body=body
        )

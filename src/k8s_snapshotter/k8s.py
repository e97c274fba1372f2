from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import PlatformError, PlatformMutationError, PlatformQueryError

SNAPSHOT_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_VERSION = "v1"
SNAPSHOT_PLURAL = "volumesnapshots"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    batch_api: client.BatchV1Api
    custom_objects_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
        custom_objects_api=client.CustomObjectsApi(api_client),
    )


class ResourceGateway:
    """Thin wrapper over the Kubernetes APIs used by the backup pipeline.

    Every call is bounded by ``request_timeout_seconds``. API failures are
    re-raised as :class:`PlatformQueryError` for reads and
    :class:`PlatformMutationError` for writes. Deletes treat 404 as success.
    """

    def __init__(
        self,
        clients: KubernetesClients,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        self.clients = clients
        self.request_timeout_seconds = request_timeout_seconds

    def list_namespaces(self) -> list[str]:
        namespaces = _safe_kubernetes_call(
            operation="list namespaces",
            hint="Confirm cluster connectivity and RBAC verbs for namespaces.",
            error_type=PlatformQueryError,
            func=lambda: self.clients.core_api.list_namespace(_request_timeout=self.request_timeout_seconds).items,
        )
        return sorted(item.metadata.name for item in namespaces if item.metadata and item.metadata.name)

    def list_volume_claims(
        self,
        namespace: str,
        *,
        label_selector: str | None = None,
    ) -> list[client.V1PersistentVolumeClaim]:
        kwargs: dict[str, Any] = {"namespace": namespace, "_request_timeout": self.request_timeout_seconds}
        if label_selector:
            kwargs["label_selector"] = label_selector
        return _safe_kubernetes_call(
            operation=f"list PVCs in namespace '{namespace}'",
            hint="Check namespace spelling, API reachability, and RBAC verbs for persistentvolumeclaims.",
            error_type=PlatformQueryError,
            func=lambda: self.clients.core_api.list_namespaced_persistent_volume_claim(**kwargs).items,
        )

    def read_volume_claim(self, namespace: str, name: str) -> client.V1PersistentVolumeClaim:
        return _safe_kubernetes_call(
            operation=f"read PVC '{namespace}/{name}'",
            hint="Verify RBAC allows get on persistentvolumeclaims.",
            error_type=PlatformQueryError,
            func=lambda: self.clients.core_api.read_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def create_volume_claim(self, namespace: str, body: dict[str, Any]) -> None:
        _safe_kubernetes_call(
            operation=f"create PVC '{namespace}/{body['metadata']['name']}'",
            hint="Verify RBAC allows create on persistentvolumeclaims and the storage class supports snapshot restore.",
            error_type=PlatformMutationError,
            func=lambda: self.clients.core_api.create_namespaced_persistent_volume_claim(
                namespace=namespace,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def delete_volume_claim(self, namespace: str, name: str) -> None:
        _safe_kubernetes_delete(
            operation=f"delete PVC '{namespace}/{name}'",
            hint="Verify RBAC allows delete on persistentvolumeclaims.",
            func=lambda: self.clients.core_api.delete_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def read_persistent_volume(self, name: str) -> client.V1PersistentVolume:
        return _safe_kubernetes_call(
            operation=f"read PersistentVolume '{name}'",
            hint="Verify the ClusterRole allows get on persistentvolumes.",
            error_type=PlatformQueryError,
            func=lambda: self.clients.core_api.read_persistent_volume(
                name=name,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def create_snapshot(self, namespace: str, body: dict[str, Any]) -> None:
        _safe_kubernetes_call(
            operation=f"create VolumeSnapshot '{namespace}/{body['metadata']['name']}'",
            hint="Confirm the snapshot.storage.k8s.io CRDs are installed and RBAC allows create on volumesnapshots.",
            error_type=PlatformMutationError,
            func=lambda: self.clients.custom_objects_api.create_namespaced_custom_object(
                SNAPSHOT_GROUP,
                SNAPSHOT_VERSION,
                namespace,
                SNAPSHOT_PLURAL,
                body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def read_snapshot(self, namespace: str, name: str) -> dict[str, Any]:
        return _safe_kubernetes_call(
            operation=f"read VolumeSnapshot '{namespace}/{name}'",
            hint="Verify RBAC allows get on volumesnapshots.",
            error_type=PlatformQueryError,
            func=lambda: self.clients.custom_objects_api.get_namespaced_custom_object(
                SNAPSHOT_GROUP,
                SNAPSHOT_VERSION,
                namespace,
                SNAPSHOT_PLURAL,
                name,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def delete_snapshot(self, namespace: str, name: str) -> None:
        _safe_kubernetes_delete(
            operation=f"delete VolumeSnapshot '{namespace}/{name}'",
            hint="Verify RBAC allows delete on volumesnapshots.",
            func=lambda: self.clients.custom_objects_api.delete_namespaced_custom_object(
                SNAPSHOT_GROUP,
                SNAPSHOT_VERSION,
                namespace,
                SNAPSHOT_PLURAL,
                name,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def create_job(self, namespace: str, body: dict[str, Any]) -> None:
        _safe_kubernetes_call(
            operation=f"create Job '{namespace}/{body['metadata']['name']}'",
            hint="Verify RBAC allows create on batch jobs in this namespace.",
            error_type=PlatformMutationError,
            func=lambda: self.clients.batch_api.create_namespaced_job(
                namespace=namespace,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def read_job(self, namespace: str, name: str) -> client.V1Job:
        return _safe_kubernetes_call(
            operation=f"read Job '{namespace}/{name}'",
            hint="Verify RBAC allows get on batch jobs.",
            error_type=PlatformQueryError,
            func=lambda: self.clients.batch_api.read_namespaced_job(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def delete_job(self, namespace: str, name: str) -> None:
        _safe_kubernetes_delete(
            operation=f"delete Job '{namespace}/{name}'",
            hint="Verify RBAC allows delete on batch jobs.",
            func=lambda: self.clients.batch_api.delete_namespaced_job(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def delete_job_pods(self, namespace: str, job_name: str) -> None:
        _safe_kubernetes_delete(
            operation=f"delete pods of Job '{namespace}/{job_name}'",
            hint="Verify RBAC allows deletecollection on pods.",
            func=lambda: self.clients.core_api.delete_collection_namespaced_pod(
                namespace=namespace,
                label_selector=f"job-name={job_name}",
                _request_timeout=self.request_timeout_seconds,
            ),
        )


def _safe_kubernetes_call(
    *,
    operation: str,
    hint: str,
    error_type: type[PlatformError],
    func: Callable[[], T],
) -> T:
    try:
        return func()
    except ApiException as error:
        raise error_type(
            _format_api_exception_message(operation=operation, hint=hint, error=error),
            operation=operation,
            status=error.status,
        ) from error
    except Exception as error:
        raise error_type(
            f"Kubernetes call failed while trying to {operation}: {error}. {hint}",
            operation=operation,
        ) from error


def _safe_kubernetes_delete(*, operation: str, hint: str, func: Callable[[], Any]) -> None:
    try:
        func()
    except ApiException as error:
        if error.status == 404:
            return
        raise PlatformMutationError(
            _format_api_exception_message(operation=operation, hint=hint, error=error),
            operation=operation,
            status=error.status,
        ) from error
    except Exception as error:
        raise PlatformMutationError(
            f"Kubernetes call failed while trying to {operation}: {error}. {hint}",
            operation=operation,
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes call failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )

from __future__ import annotations

import copy
import threading
from types import SimpleNamespace
from typing import Any

import pytest

from k8s_snapshotter.config import LifecycleSettings, PollSettings
from k8s_snapshotter.labels import SOURCE_CLAIM_ANNOTATION
from k8s_snapshotter.manifests import ManifestFactory


def make_claim(
    *,
    namespace: str,
    name: str,
    storage_class: str | None = "fast",
    phase: str = "Bound",
    labels: dict[str, str] | None = None,
    capacity: str | None = "1Gi",
    volume_name: str | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(namespace=namespace, name=name, labels=labels),
        spec=SimpleNamespace(
            storage_class_name=storage_class,
            access_modes=["ReadWriteOnce"],
            volume_name=volume_name if volume_name is not None else f"pv-{name}",
        ),
        status=SimpleNamespace(phase=phase, capacity={"storage": capacity} if capacity else None),
    )


def make_job(*, succeeded: int | None = None, failed: int | None = None, conditions: list[Any] | None = None) -> SimpleNamespace:
    return SimpleNamespace(status=SimpleNamespace(succeeded=succeeded, failed=failed, conditions=conditions))


class FakeGateway:
    """In-memory stand-in for ResourceGateway.

    Snapshots become ready, clones bind, and jobs finish after
    ``reads_until_ready`` reads of the respective object. Jobs whose source
    claim is listed in ``failing_claims`` finish as Failed.
    """

    def __init__(self, *, reads_until_ready: int = 0, restore_size: str | None = "1Gi") -> None:
        self.namespaces: list[str] = []
        self.claims: dict[tuple[str, str], SimpleNamespace] = {}
        self.volumes: dict[str, SimpleNamespace] = {}
        self.snapshots: dict[tuple[str, str], dict[str, Any]] = {}
        self.jobs: dict[tuple[str, str], dict[str, Any]] = {}
        self.deleted_job_pods: list[tuple[str, str]] = []
        self.created: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.failing_claims: set[str] = set()
        self.errors: dict[tuple[str, str], Exception] = {}
        self.reads_until_ready = reads_until_ready
        self.restore_size = restore_size
        self._reads: dict[tuple[str, str, str], int] = {}
        self._lock = threading.Lock()

    def add_claim(self, claim: SimpleNamespace) -> None:
        namespace = claim.metadata.namespace
        if namespace not in self.namespaces:
            self.namespaces.append(namespace)
        self.claims[(namespace, claim.metadata.name)] = claim

    def fail(self, method: str, name: str, error: Exception) -> None:
        self.errors[(method, name)] = error

    def _record(self, method: str, namespace: str, name: str) -> None:
        with self._lock:
            self.calls.append((method, namespace, name))
            error = self.errors.get((method, name))
        if error is not None:
            raise error

    def _ready(self, kind: str, namespace: str, name: str) -> bool:
        with self._lock:
            key = (kind, namespace, name)
            self._reads[key] = self._reads.get(key, 0) + 1
            return self._reads[key] > self.reads_until_ready

    def list_namespaces(self) -> list[str]:
        self._record("list_namespaces", "", "")
        return list(self.namespaces)

    def list_volume_claims(self, namespace: str, *, label_selector: str | None = None) -> list[SimpleNamespace]:
        self._record("list_volume_claims", namespace, label_selector or "")
        return [claim for (ns, _), claim in self.claims.items() if ns == namespace]

    def read_volume_claim(self, namespace: str, name: str) -> SimpleNamespace:
        self._record("read_volume_claim", namespace, name)
        claim = self.claims[(namespace, name)]
        if claim.status.phase == "Pending" and self._ready("pvc", namespace, name):
            claim.status.phase = "Bound"
        return claim

    def create_volume_claim(self, namespace: str, body: dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        self._record("create_volume_claim", namespace, name)
        with self._lock:
            self.claims[(namespace, name)] = make_claim(
                namespace=namespace,
                name=name,
                storage_class=body["spec"].get("storageClassName"),
                phase="Pending",
                labels=dict(body["metadata"]["labels"]),
                capacity=body["spec"]["resources"]["requests"]["storage"],
            )
            self.created[(namespace, name)] = copy.deepcopy(body)

    def delete_volume_claim(self, namespace: str, name: str) -> None:
        self._record("delete_volume_claim", namespace, name)
        with self._lock:
            self.claims.pop((namespace, name), None)

    def read_persistent_volume(self, name: str) -> SimpleNamespace:
        self._record("read_persistent_volume", "", name)
        return self.volumes[name]

    def create_snapshot(self, namespace: str, body: dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        self._record("create_snapshot", namespace, name)
        with self._lock:
            self.created[(namespace, name)] = copy.deepcopy(body)
            stored = copy.deepcopy(body)
            stored["status"] = {"readyToUse": False}
            self.snapshots[(namespace, name)] = stored

    def read_snapshot(self, namespace: str, name: str) -> dict[str, Any]:
        self._record("read_snapshot", namespace, name)
        snapshot = self.snapshots[(namespace, name)]
        if self._ready("snapshot", namespace, name):
            snapshot["status"] = {"readyToUse": True, "restoreSize": self.restore_size}
        return snapshot

    def delete_snapshot(self, namespace: str, name: str) -> None:
        self._record("delete_snapshot", namespace, name)
        with self._lock:
            self.snapshots.pop((namespace, name), None)

    def create_job(self, namespace: str, body: dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        self._record("create_job", namespace, name)
        with self._lock:
            self.created[(namespace, name)] = copy.deepcopy(body)
            self.jobs[(namespace, name)] = copy.deepcopy(body)

    def read_job(self, namespace: str, name: str) -> SimpleNamespace:
        self._record("read_job", namespace, name)
        body = self.jobs[(namespace, name)]
        if not self._ready("job", namespace, name):
            return make_job()
        source_claim = body["metadata"]["annotations"][SOURCE_CLAIM_ANNOTATION]
        if source_claim in self.failing_claims:
            return make_job(failed=1)
        return make_job(succeeded=1)

    def delete_job(self, namespace: str, name: str) -> None:
        self._record("delete_job", namespace, name)
        with self._lock:
            self.jobs.pop((namespace, name), None)

    def delete_job_pods(self, namespace: str, job_name: str) -> None:
        self._record("delete_job_pods", namespace, job_name)
        with self._lock:
            self.deleted_job_pods.append((namespace, job_name))


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def instant_settings() -> LifecycleSettings:
    return LifecycleSettings(
        snapshot_ready_timeout_seconds=5,
        clone_bound_timeout_seconds=5,
        job_timeout_seconds=5,
        poll=PollSettings(initial_interval_seconds=0, max_interval_seconds=0, backoff_factor=1),
    )


@pytest.fixture
def factory() -> ManifestFactory:
    return ManifestFactory(created_by="k8s-snapshotter")

"""Per-volume backup life cycle: snapshot, clone, back up, clean up.

One :class:`VolumeBackupLifecycle` drives a single claim through::

    START -> SNAPSHOT_REQUESTED -> SNAPSHOT_READY -> CLONE_REQUESTED -> CLONE_BOUND
          -> SNAPSHOT_DELETED -> JOB_RUNNING -> JOB_TERMINAL -> CLEANUP -> DONE

Any failure moves it to ``FAILED`` and the exception is re-raised unchanged.

Cleanup runs on the success path only. When a step fails after the clone volume
or backup Job exists, those objects are left in the cluster for inspection.
They carry the created-by label and must be removed by an operator.
"""

from __future__ import annotations

from enum import Enum
import hashlib
import logging
import re
import threading
from typing import Any, Protocol

from .config import LifecycleSettings
from .errors import LifecycleFailureError
from .manifests import ManifestFactory
from .models import ResourceNames, VolumeBackupTask
from .polling import PollPolicy, poll_until

logger = logging.getLogger(__name__)

DNS_LABEL_MAX_LENGTH = 63
_NAME_HASH_LENGTH = 8


class LifecycleState(str, Enum):
    START = "Start"
    SNAPSHOT_REQUESTED = "SnapshotRequested"
    SNAPSHOT_READY = "SnapshotReady"
    CLONE_REQUESTED = "CloneRequested"
    CLONE_BOUND = "CloneBound"
    SNAPSHOT_DELETED = "SnapshotDeleted"
    JOB_RUNNING = "JobRunning"
    JOB_TERMINAL = "JobTerminal"
    CLEANUP = "Cleanup"
    DONE = "Done"
    FAILED = "Failed"


class JobStatus(str, Enum):
    ACTIVE = "Active"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class BackupGateway(Protocol):
    def read_volume_claim(self, namespace: str, name: str) -> Any: ...

    def create_volume_claim(self, namespace: str, body: dict[str, Any]) -> None: ...

    def delete_volume_claim(self, namespace: str, name: str) -> None: ...

    def create_snapshot(self, namespace: str, body: dict[str, Any]) -> None: ...

    def read_snapshot(self, namespace: str, name: str) -> dict[str, Any]: ...

    def delete_snapshot(self, namespace: str, name: str) -> None: ...

    def create_job(self, namespace: str, body: dict[str, Any]) -> None: ...

    def read_job(self, namespace: str, name: str) -> Any: ...

    def delete_job(self, namespace: str, name: str) -> None: ...

    def delete_job_pods(self, namespace: str, job_name: str) -> None: ...


def resource_names(task: VolumeBackupTask, run_id: str) -> ResourceNames:
    snapshot = _sanitize_dns_label(f"{run_id}-{task.volume_claim_name}")
    clone = _sanitize_dns_label(f"{snapshot}-clone")
    job = _sanitize_dns_label(f"backup-{clone}")
    return ResourceNames(snapshot=snapshot, clone=clone, job=job)


def job_status(job: Any) -> JobStatus:
    status = getattr(job, "status", None)
    if status is None:
        return JobStatus.ACTIVE

    for condition in getattr(status, "conditions", None) or []:
        if getattr(condition, "status", None) != "True":
            continue
        if condition.type == "Complete":
            return JobStatus.SUCCEEDED
        if condition.type == "Failed":
            return JobStatus.FAILED

    if (getattr(status, "succeeded", None) or 0) >= 1:
        return JobStatus.SUCCEEDED
    if (getattr(status, "failed", None) or 0) >= 1:
        return JobStatus.FAILED
    return JobStatus.ACTIVE


class VolumeBackupLifecycle:
    def __init__(
        self,
        *,
        gateway: BackupGateway,
        factory: ManifestFactory,
        task: VolumeBackupTask,
        run_id: str,
        settings: LifecycleSettings | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.gateway = gateway
        self.factory = factory
        self.task = task
        self.settings = settings or LifecycleSettings()
        self.stop_event = stop_event
        self.names = resource_names(task, run_id)
        self.state = LifecycleState.START
        self.history: list[LifecycleState] = [LifecycleState.START]
        self.failed_state: LifecycleState | None = None

    def run(self) -> None:
        try:
            self._request_snapshot()
            restore_size = self._wait_snapshot_ready()
            self._request_clone(restore_size)
            self._wait_clone_bound()
            self._delete_snapshot()
            self._start_job()
            outcome = self._wait_job_terminal()
            if outcome is JobStatus.FAILED:
                raise LifecycleFailureError(
                    f"One or more pods for backup job '{self.task.namespace}/{self.names.job}' failed; "
                    f"retaining job and volume '{self.names.clone}' for inspection"
                )
            self._cleanup()
        except Exception:
            self.failed_state = self.state
            self._advance(LifecycleState.FAILED)
            raise
        self._advance(LifecycleState.DONE)
        logger.info("[%s] Backup of volume '%s' completed", self.task.namespace, self.task.volume_claim_name)

    def _advance(self, state: LifecycleState) -> None:
        self.state = state
        self.history.append(state)

    def _policy(self, timeout_seconds: float) -> PollPolicy:
        return PollPolicy.from_settings(self.settings.poll, timeout_seconds=timeout_seconds)

    def _request_snapshot(self) -> None:
        namespace = self.task.namespace
        logger.info("[%s] Snapshotting volume '%s'", namespace, self.task.volume_claim_name)
        self.gateway.create_snapshot(
            namespace,
            self.factory.snapshot(name=self.names.snapshot, namespace=namespace, source_claim=self.task.volume_claim_name),
        )
        self._advance(LifecycleState.SNAPSHOT_REQUESTED)

    def _wait_snapshot_ready(self) -> str | None:
        namespace = self.task.namespace
        logger.info("[%s] Waiting for snapshot '%s' to be ready...", namespace, self.names.snapshot)
        snapshot = poll_until(
            lambda: self.gateway.read_snapshot(namespace, self.names.snapshot),
            lambda body: bool(_snapshot_status(body).get("readyToUse")),
            policy=self._policy(self.settings.snapshot_ready_timeout_seconds),
            description=f"snapshot '{namespace}/{self.names.snapshot}' to become ready",
            stop_event=self.stop_event,
            describe=lambda body: f"readyToUse={_snapshot_status(body).get('readyToUse', False)}",
        )
        self._advance(LifecycleState.SNAPSHOT_READY)
        return _snapshot_status(snapshot).get("restoreSize")

    def _request_clone(self, restore_size: str | None) -> None:
        namespace = self.task.namespace
        source = self.gateway.read_volume_claim(namespace, self.task.volume_claim_name)
        size = restore_size or _claim_capacity(source)
        if not size:
            raise LifecycleFailureError(
                f"snapshot '{namespace}/{self.names.snapshot}' reports no restore size and "
                f"volume '{self.task.volume_claim_name}' has no capacity"
            )
        spec = getattr(source, "spec", None)
        self.gateway.create_volume_claim(
            namespace,
            self.factory.clone_volume(
                name=self.names.clone,
                namespace=namespace,
                snapshot_name=self.names.snapshot,
                size=size,
                storage_class_name=getattr(spec, "storage_class_name", None),
                access_modes=getattr(spec, "access_modes", None),
            ),
        )
        logger.info(
            "[%s] Volume '%s' created from snapshot '%s'",
            namespace,
            self.names.clone,
            self.names.snapshot,
        )
        self._advance(LifecycleState.CLONE_REQUESTED)

    def _wait_clone_bound(self) -> None:
        namespace = self.task.namespace
        logger.info("[%s] Waiting for volume '%s' to be ready...", namespace, self.names.clone)

        def _bound(claim: Any) -> bool:
            phase = _claim_phase(claim)
            if phase == "Lost":
                raise LifecycleFailureError(f"volume '{namespace}/{self.names.clone}' entered phase Lost")
            return phase == "Bound"

        poll_until(
            lambda: self.gateway.read_volume_claim(namespace, self.names.clone),
            _bound,
            policy=self._policy(self.settings.clone_bound_timeout_seconds),
            description=f"volume '{namespace}/{self.names.clone}' to be Bound",
            stop_event=self.stop_event,
            describe=lambda claim: f"phase={_claim_phase(claim)}",
        )
        self._advance(LifecycleState.CLONE_BOUND)

    def _delete_snapshot(self) -> None:
        logger.info("[%s] Deleting snapshot '%s'", self.task.namespace, self.names.snapshot)
        self.gateway.delete_snapshot(self.task.namespace, self.names.snapshot)
        self._advance(LifecycleState.SNAPSHOT_DELETED)

    def _start_job(self) -> None:
        namespace = self.task.namespace
        logger.info("[%s] Creating backup job '%s' for volume '%s'", namespace, self.names.job, self.names.clone)
        self.gateway.create_job(
            namespace,
            self.factory.backup_job(
                name=self.names.job,
                namespace=namespace,
                claim_name=self.names.clone,
                source_claim=self.task.volume_claim_name,
            ),
        )
        self._advance(LifecycleState.JOB_RUNNING)

    def _wait_job_terminal(self) -> JobStatus:
        namespace = self.task.namespace
        logger.info("[%s] Waiting for backup job '%s' to complete...", namespace, self.names.job)
        job = poll_until(
            lambda: self.gateway.read_job(namespace, self.names.job),
            lambda current: job_status(current) is not JobStatus.ACTIVE,
            policy=self._policy(self.settings.job_timeout_seconds),
            description=f"backup job '{namespace}/{self.names.job}' to finish",
            stop_event=self.stop_event,
            describe=lambda current: f"status={job_status(current).value}",
        )
        self._advance(LifecycleState.JOB_TERMINAL)
        return job_status(job)

    def _cleanup(self) -> None:
        namespace = self.task.namespace
        logger.info("[%s] Backup job '%s' completed successfully", namespace, self.names.job)
        self._advance(LifecycleState.CLEANUP)
        logger.info("[%s] Deleting backup job '%s'", namespace, self.names.job)
        self.gateway.delete_job(namespace, self.names.job)
        logger.info("[%s] Deleting pods for backup job '%s'", namespace, self.names.job)
        self.gateway.delete_job_pods(namespace, self.names.job)
        logger.info("[%s] Deleting volume '%s'", namespace, self.names.clone)
        self.gateway.delete_volume_claim(namespace, self.names.clone)


def _snapshot_status(snapshot: dict[str, Any]) -> dict[str, Any]:
    return (snapshot or {}).get("status") or {}


def _claim_phase(claim: Any) -> str:
    status = getattr(claim, "status", None)
    return getattr(status, "phase", None) or "Pending"


def _claim_capacity(claim: Any) -> str | None:
    status = getattr(claim, "status", None)
    capacity = getattr(status, "capacity", None) or {}
    return capacity.get("storage")


def _sanitize_dns_label(value: str, max_length: int = DNS_LABEL_MAX_LENGTH) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered)
    normalized = re.sub(r"-+", "-", normalized).strip("-")
    if normalized == value and len(normalized) <= max_length:
        return normalized

    # Lossy rewrite; suffix a digest of the input so distinct inputs stay distinct.
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:_NAME_HASH_LENGTH]
    prefix = normalized[: max_length - _NAME_HASH_LENGTH - 1].rstrip("-")
    return f"{prefix}-{digest}" if prefix else digest

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import VolumeBackupTask


class SnapshotterError(RuntimeError):
    """Base class for every failure raised by k8s-snapshotter."""


class ConfigError(SnapshotterError):
    """Raised when the runtime configuration is unusable."""


class PlatformError(SnapshotterError):
    def __init__(self, message: str, *, operation: str, status: int | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status = status


class PlatformQueryError(PlatformError):
    """Raised when a read/list call against the Kubernetes API fails."""


class PlatformMutationError(PlatformError):
    """Raised when a create/delete call against the Kubernetes API fails."""


class PollTimeoutError(SnapshotterError):
    """Raised when a polled resource does not reach the wanted state before its deadline."""


class PollCancelledError(PollTimeoutError):
    """Raised when a wait is interrupted by the shared stop event."""


class LifecycleFailureError(SnapshotterError):
    """Raised when the backup workload (or the clone volume) ends in a failed state."""


class VolumeIdError(SnapshotterError, ValueError):
    """Raised when a CSI volume handle cannot be parsed."""


class VolumeIdDecodeError(VolumeIdError):
    pass


class UnsupportedVersionError(VolumeIdError):
    pass


class InvalidClusterIDError(VolumeIdError):
    pass


class InvalidObjectIDError(VolumeIdError):
    pass


class PreconditionError(SnapshotterError):
    """Raised on programming errors such as scheduling after shutdown."""


class SchedulerClosedError(PreconditionError):
    pass


class DuplicateTaskError(PreconditionError):
    pass


class BackupTaskError(SnapshotterError):
    """A single task's failure as reported on the scheduler's error stream."""

    def __init__(self, task: VolumeBackupTask, cause: BaseException) -> None:
        reason = str(cause).strip() or cause.__class__.__name__
        super().__init__(f"backup of {task.namespace}/{task.volume_claim_name} failed: {reason}")
        self.task = task
        self.cause = cause

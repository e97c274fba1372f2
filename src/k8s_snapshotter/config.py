from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping
import os

from .errors import ConfigError
from .labels import CREATED_BY_LABEL, LABEL_VALUE_MAX_LENGTH, is_valid_label_value
from .models import BackupDestination

DEFAULT_CREATED_BY = "k8s-snapshotter"
DEFAULT_BACKUP_IMAGE = "ghcr.io/k8s-snapshotter/backup-runner:latest"
_ENV_PREFIX = "KSNAP_"


@dataclass(frozen=True)
class PollSettings:
    initial_interval_seconds: float = 1.0
    max_interval_seconds: float = 15.0
    backoff_factor: float = 2.0


@dataclass(frozen=True)
class LifecycleSettings:
    snapshot_ready_timeout_seconds: float = 600.0
    clone_bound_timeout_seconds: float = 600.0
    job_timeout_seconds: float = 6 * 3600.0
    poll: PollSettings = PollSettings()


@dataclass(frozen=True)
class AppConfig:
    storage_class_name: str = ""
    created_by: str = DEFAULT_CREATED_BY
    namespaces: tuple[str, ...] = ()
    max_concurrent_backups: int = 4
    snapshot_class_name: str | None = None
    backup_image: str = DEFAULT_BACKUP_IMAGE
    destination: BackupDestination | None = None
    ceph_cluster_id: str | None = None
    kubeconfig_path: str | None = None
    context: str | None = None
    in_cluster: bool = False
    request_timeout_seconds: int = 20
    lifecycle: LifecycleSettings = LifecycleSettings()
    log_level: str = "INFO"

    def validate(self) -> None:
        if not self.storage_class_name.strip():
            raise ConfigError("a storage class name is required (--storage-class-name or KSNAP_STORAGE_CLASS)")
        if not self.created_by.strip():
            raise ConfigError("the created-by label value must not be empty")
        if not is_valid_label_value(self.created_by):
            raise ConfigError(
                f"the created-by value {self.created_by!r} is not a valid {CREATED_BY_LABEL} label value: "
                f"use at most {LABEL_VALUE_MAX_LENGTH} alphanumerics, '-', '_' or '.', "
                "starting and ending with an alphanumeric"
            )
        if self.max_concurrent_backups <= 0:
            raise ConfigError("max_concurrent_backups must be positive")
        if self.request_timeout_seconds <= 0:
            raise ConfigError("request_timeout_seconds must be positive")

        lifecycle = self.lifecycle
        for name in ("snapshot_ready_timeout_seconds", "clone_bound_timeout_seconds", "job_timeout_seconds"):
            if getattr(lifecycle, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if lifecycle.poll.initial_interval_seconds < 0 or lifecycle.poll.max_interval_seconds < 0:
            raise ConfigError("poll intervals must not be negative")
        if lifecycle.poll.backoff_factor < 1:
            raise ConfigError("poll backoff factor must be at least 1")


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if environ is None else environ

    def _get(name: str) -> str | None:
        value = env.get(f"{_ENV_PREFIX}{name}", "").strip()
        return value or None

    try:
        poll = PollSettings(
            initial_interval_seconds=float(_get("POLL_INITIAL_INTERVAL_SECONDS") or 1.0),
            max_interval_seconds=float(_get("POLL_MAX_INTERVAL_SECONDS") or 15.0),
            backoff_factor=float(_get("POLL_BACKOFF_FACTOR") or 2.0),
        )
        lifecycle = LifecycleSettings(
            snapshot_ready_timeout_seconds=float(_get("SNAPSHOT_READY_TIMEOUT_SECONDS") or 600.0),
            clone_bound_timeout_seconds=float(_get("CLONE_BOUND_TIMEOUT_SECONDS") or 600.0),
            job_timeout_seconds=float(_get("JOB_TIMEOUT_SECONDS") or 6 * 3600.0),
            poll=poll,
        )
        max_concurrent_backups = int(_get("MAX_CONCURRENT_BACKUPS") or 4)
        request_timeout_seconds = int(_get("REQUEST_TIMEOUT_SECONDS") or 20)
    except ValueError as error:
        raise ConfigError(f"invalid numeric setting in environment: {error}") from error

    namespaces = tuple(part.strip() for part in (_get("NAMESPACES") or "").split(",") if part.strip())

    return AppConfig(
        storage_class_name=_get("STORAGE_CLASS") or "",
        created_by=_get("CREATED_BY") or DEFAULT_CREATED_BY,
        namespaces=namespaces,
        max_concurrent_backups=max_concurrent_backups,
        snapshot_class_name=_get("SNAPSHOT_CLASS"),
        backup_image=_get("BACKUP_IMAGE") or DEFAULT_BACKUP_IMAGE,
        destination=build_destination(
            s3_url=_get("S3_URL"),
            s3_bucket=_get("S3_BUCKET"),
            s3_access_key=_get("S3_ACCESS_KEY"),
            s3_secret_key=_get("S3_SECRET_KEY"),
        ),
        ceph_cluster_id=_get("CEPH_CLUSTER_ID"),
        kubeconfig_path=_get("KUBECONFIG"),
        context=_get("CONTEXT"),
        in_cluster=_flag_enabled(_get("IN_CLUSTER")),
        request_timeout_seconds=request_timeout_seconds,
        lifecycle=lifecycle,
        log_level=(_get("LOG_LEVEL") or "INFO").upper(),
    )


def build_destination(
    *,
    s3_url: str | None,
    s3_bucket: str | None,
    s3_access_key: str | None,
    s3_secret_key: str | None,
) -> BackupDestination | None:
    values = {
        "s3_url": s3_url,
        "s3_bucket": s3_bucket,
        "s3_access_key": s3_access_key,
        "s3_secret_key": s3_secret_key,
    }
    provided = {name for name, value in values.items() if value}
    if not provided:
        return None
    missing = sorted(set(values) - provided)
    if missing:
        raise ConfigError(f"incomplete S3 destination, missing: {', '.join(missing)}")
    return BackupDestination(
        s3_url=s3_url or "",
        s3_bucket=s3_bucket or "",
        s3_access_key=s3_access_key or "",
        s3_secret_key=s3_secret_key or "",
    )


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}

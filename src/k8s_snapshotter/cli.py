"""Command-line entry point: discover volumes, back them up in parallel, report."""

from __future__ import annotations

import argparse
from dataclasses import replace
from datetime import UTC, datetime
import logging
import signal
import sys
import threading
from typing import Any, Mapping, Sequence

from .config import AppConfig, build_destination, load_config
from .discovery import find_eligible_volume_claims
from .errors import ConfigError, PlatformQueryError, SnapshotterError, VolumeIdError
from .k8s import KubernetesAuthenticationError, ResourceGateway, load_kubernetes_clients
from .lifecycle import VolumeBackupLifecycle
from .manifests import ManifestFactory
from .models import VolumeBackupTask
from .scheduler import BackupJobScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BACKUP_FAILED = 1
EXIT_INVALID_CONFIG = 2
EXIT_AUTH_FAILED = 3


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="k8s-snapshotter",
        description="Snapshot, clone and back up every bound PVC of a storage class",
    )
    parser.add_argument("--storage-class-name", help="Storage class whose volumes are backed up")
    parser.add_argument("--in-cluster", action="store_true", default=None, help="Use the pod's service account")
    parser.add_argument("--kubeconfig", help="Path to a kubeconfig file")
    parser.add_argument("--context", help="kubeconfig context to use")
    parser.add_argument("--created-by", help="Value of the app.kubernetes.io/created-by label on created objects")
    parser.add_argument(
        "-n",
        "--namespace",
        action="append",
        dest="namespaces",
        help="Namespace to back up (repeatable, default: all namespaces)",
    )
    parser.add_argument("--max-concurrent-backups", type=int, help="Number of volumes backed up in parallel")
    parser.add_argument("--snapshot-class-name", help="VolumeSnapshotClass for created snapshots")
    parser.add_argument("--backup-image", help="Container image of the backup job")
    parser.add_argument("--s3-url", help="URL of the S3 endpoint where backups are stored")
    parser.add_argument("--s3-bucket", help="S3 bucket where backups are stored")
    parser.add_argument("--s3-access-key", help="Access key for the S3 bucket")
    parser.add_argument("--s3-secret-key", help="Secret key for the S3 bucket")
    parser.add_argument("--ceph-cluster-id", help="Only back up volumes on this ceph-csi cluster")
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> AppConfig:
    base = load_config(environ)
    overrides: dict[str, Any] = {}
    for field_name, value in (
        ("storage_class_name", args.storage_class_name),
        ("in_cluster", args.in_cluster),
        ("kubeconfig_path", args.kubeconfig),
        ("context", args.context),
        ("created_by", args.created_by),
        ("max_concurrent_backups", args.max_concurrent_backups),
        ("snapshot_class_name", args.snapshot_class_name),
        ("backup_image", args.backup_image),
        ("ceph_cluster_id", args.ceph_cluster_id),
    ):
        if value is not None:
            overrides[field_name] = value
    if args.namespaces:
        overrides["namespaces"] = tuple(sorted({name.strip() for name in args.namespaces if name.strip()}))
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if any((args.s3_url, args.s3_bucket, args.s3_access_key, args.s3_secret_key)):
        overrides["destination"] = build_destination(
            s3_url=args.s3_url,
            s3_bucket=args.s3_bucket,
            s3_access_key=args.s3_access_key,
            s3_secret_key=args.s3_secret_key,
        )

    app_config = replace(base, **overrides)
    app_config.validate()
    return app_config


def discover_tasks(
    gateway: ResourceGateway,
    app_config: AppConfig,
) -> tuple[list[VolumeBackupTask], list[SnapshotterError]]:
    """Collect backup tasks from every target namespace.

    A failed PVC listing only skips its namespace and is returned as an error.
    A volume handle that cannot be decoded aborts discovery entirely.
    """
    namespaces = list(app_config.namespaces) or gateway.list_namespaces()
    tasks: list[VolumeBackupTask] = []
    errors: list[SnapshotterError] = []
    for namespace in namespaces:
        try:
            found = find_eligible_volume_claims(
                gateway,
                namespace,
                app_config.storage_class_name,
                created_by=app_config.created_by,
                cluster_id=app_config.ceph_cluster_id,
            )
        except PlatformQueryError as error:
            logger.error("[%s] Volume discovery failed: %s", namespace, error)
            errors.append(error)
            continue

        if found:
            logger.info("[%s] Starting namespace backup (%d volumes)", namespace, len(found))
        else:
            logger.info("[%s] No bound volumes found, skipping namespace", namespace)
        tasks.extend(found)
    return tasks, errors


def run_backups(
    *,
    gateway: ResourceGateway,
    app_config: AppConfig,
    run_id: str,
    stop_event: threading.Event | None = None,
) -> list[SnapshotterError]:
    """Back up every eligible volume and return all errors encountered.

    Raises :class:`VolumeIdError` before anything is scheduled when a volume
    handle is structurally invalid.
    """
    tasks, errors = discover_tasks(gateway, app_config)
    factory = ManifestFactory(
        created_by=app_config.created_by,
        snapshot_class_name=app_config.snapshot_class_name,
        backup_image=app_config.backup_image,
        destination=app_config.destination,
    )

    def _run_one(task: VolumeBackupTask) -> None:
        VolumeBackupLifecycle(
            gateway=gateway,
            factory=factory,
            task=task,
            run_id=run_id,
            settings=app_config.lifecycle,
            stop_event=stop_event,
        ).run()

    with BackupJobScheduler(_run_one, max_workers=app_config.max_concurrent_backups) as scheduler:
        for task in tasks:
            scheduler.schedule(task)

        for error in scheduler.wait():
            logger.error("[%s] %s", error.task.namespace, error)
            errors.append(error)
    return errors


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        app_config = build_config(args)
    except ConfigError as error:
        _configure_logging("INFO")
        logger.error("Invalid configuration: %s", error)
        return EXIT_INVALID_CONFIG

    _configure_logging(app_config.log_level)

    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=app_config.kubeconfig_path,
            context=app_config.context,
            in_cluster=app_config.in_cluster,
        )
    except KubernetesAuthenticationError as error:
        logger.error("%s", error)
        return EXIT_AUTH_FAILED

    gateway = ResourceGateway(clients, request_timeout_seconds=app_config.request_timeout_seconds)
    stop_event = threading.Event()
    _install_stop_handlers(stop_event)
    run_id = datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S")

    try:
        errors = run_backups(gateway=gateway, app_config=app_config, run_id=run_id, stop_event=stop_event)
    except VolumeIdError as error:
        logger.error("Invalid volume handle, aborting before any backup was started: %s", error)
        return EXIT_INVALID_CONFIG
    except PlatformQueryError as error:
        logger.error("Unable to enumerate namespaces: %s", error)
        return EXIT_BACKUP_FAILED

    if errors:
        logger.error("Backup failed with %d error(s)", len(errors))
        return EXIT_BACKUP_FAILED
    logger.info("Backup completed successfully")
    return EXIT_OK


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(levelname)s] %(message)s",
        stream=sys.stdout,
    )


def _install_stop_handlers(stop_event: threading.Event) -> None:
    def _handle(signum: int, _frame: object) -> None:
        logger.warning("Received %s, cancelling outstanding waits", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


if __name__ == "__main__":
    sys.exit(main())

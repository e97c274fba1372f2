from __future__ import annotations

import copy
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from .config import DEFAULT_BACKUP_IMAGE
from .labels import (
    CREATED_BY_LABEL,
    SNAPSHOT_LABEL,
    SOURCE_CLAIM_ANNOTATION,
    SOURCE_CLAIM_LABEL,
    label_value,
)
from .models import BackupDestination

_ASSETS_DIR = Path(__file__).parent / "assets"


class ManifestFactory:
    """Build VolumeSnapshot, clone PVC and backup Job bodies from the packaged templates."""

    def __init__(
        self,
        *,
        created_by: str,
        snapshot_class_name: str | None = None,
        backup_image: str = DEFAULT_BACKUP_IMAGE,
        destination: BackupDestination | None = None,
    ) -> None:
        self.created_by = created_by
        self.snapshot_class_name = snapshot_class_name
        self.backup_image = backup_image
        self.destination = destination

    @property
    def created_by_labels(self) -> dict[str, str]:
        return {CREATED_BY_LABEL: self.created_by}

    def source_claim_labels(self, source_claim: str) -> dict[str, str]:
        return {**self.created_by_labels, SOURCE_CLAIM_LABEL: label_value(source_claim)}

    def snapshot(self, *, name: str, namespace: str, source_claim: str) -> dict[str, Any]:
        body = _load_template("volume_snapshot.yaml")
        _set_metadata(
            body,
            name=name,
            namespace=namespace,
            labels=self.source_claim_labels(source_claim),
            annotations={SOURCE_CLAIM_ANNOTATION: source_claim},
        )
        body["spec"]["source"]["persistentVolumeClaimName"] = source_claim
        if self.snapshot_class_name:
            body["spec"]["volumeSnapshotClassName"] = self.snapshot_class_name
        return body

    def clone_volume(
        self,
        *,
        name: str,
        namespace: str,
        snapshot_name: str,
        size: str,
        storage_class_name: str | None = None,
        access_modes: list[str] | None = None,
    ) -> dict[str, Any]:
        body = _load_template("clone_volume.yaml")
        _set_metadata(
            body,
            name=name,
            namespace=namespace,
            labels={**self.created_by_labels, SNAPSHOT_LABEL: label_value(snapshot_name)},
        )
        spec = body["spec"]
        spec["resources"]["requests"]["storage"] = size
        spec["dataSource"]["name"] = snapshot_name
        if storage_class_name:
            spec["storageClassName"] = storage_class_name
        if access_modes:
            spec["accessModes"] = list(access_modes)
        return body

    def backup_job(self, *, name: str, namespace: str, claim_name: str, source_claim: str) -> dict[str, Any]:
        body = _load_template("backup_job.yaml")
        labels = self.source_claim_labels(source_claim)
        _set_metadata(
            body,
            name=name,
            namespace=namespace,
            labels=labels,
            annotations={SOURCE_CLAIM_ANNOTATION: source_claim},
        )
        pod_template = body["spec"]["template"]
        pod_template["metadata"]["labels"] = dict(labels)

        container = pod_template["spec"]["containers"][0]
        container["image"] = self.backup_image
        container["env"] = _destination_env(self.destination, namespace=namespace, source_claim=source_claim)
        pod_template["spec"]["volumes"][0]["persistentVolumeClaim"]["claimName"] = claim_name
        return body


@lru_cache(maxsize=None)
def _read_template(file_name: str) -> dict[str, Any]:
    document = yaml.safe_load((_ASSETS_DIR / file_name).read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        raise ValueError(f"manifest template {file_name} must be a mapping")
    return document


def _load_template(file_name: str) -> dict[str, Any]:
    # Cached templates are shared, so each manifest gets its own copy.
    return copy.deepcopy(_read_template(file_name))


def _set_metadata(
    body: dict[str, Any],
    *,
    name: str,
    namespace: str,
    labels: dict[str, str],
    annotations: dict[str, str] | None = None,
) -> None:
    metadata = body["metadata"]
    metadata["name"] = name
    metadata["namespace"] = namespace
    metadata["labels"] = dict(labels)
    if annotations:
        metadata["annotations"] = dict(annotations)


def _destination_env(
    destination: BackupDestination | None,
    *,
    namespace: str,
    source_claim: str,
) -> list[dict[str, str]]:
    env = [
        {"name": "BACKUP_NAMESPACE", "value": namespace},
        {"name": "BACKUP_SOURCE_CLAIM", "value": source_claim},
        {"name": "BACKUP_DATA_DIR", "value": "/data"},
    ]
    if destination is not None:
        env.extend(
            [
                {"name": "S3_URL", "value": destination.s3_url},
                {"name": "S3_BUCKET", "value": destination.s3_bucket},
                {"name": "S3_ACCESS_KEY", "value": destination.s3_access_key},
                {"name": "S3_SECRET_KEY", "value": destination.s3_secret_key},
            ]
        )
    return env

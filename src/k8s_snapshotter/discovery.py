from __future__ import annotations

import logging
from typing import Any, Protocol

from .labels import CREATED_BY_LABEL
from .models import VolumeBackupTask
from .volume_id import decode_volume_id

logger = logging.getLogger(__name__)


class VolumeClaimSource(Protocol):
    def list_volume_claims(self, namespace: str, *, label_selector: str | None = None) -> list[Any]: ...

    def read_persistent_volume(self, name: str) -> Any: ...


def find_eligible_volume_claims(
    gateway: VolumeClaimSource,
    namespace: str,
    storage_class_name: str,
    *,
    created_by: str,
    cluster_id: str | None = None,
) -> list[VolumeBackupTask]:
    """Return backup tasks for the Bound claims of ``storage_class_name`` in ``namespace``.

    Claims labelled as created by this tool (``created_by``) are never returned, so
    clone volumes from earlier runs are not backed up again. When ``cluster_id`` is
    given, only claims whose CSI volume handle decodes to that Ceph cluster are kept;
    a handle that cannot be decoded raises :class:`~k8s_snapshotter.errors.VolumeIdError`.
    """
    if not namespace or not namespace.strip():
        raise ValueError("namespace must not be empty")
    if not storage_class_name or not storage_class_name.strip():
        raise ValueError("storage_class_name must not be empty")

    claims = gateway.list_volume_claims(
        namespace,
        label_selector=f"{CREATED_BY_LABEL}!={created_by}",
    )

    tasks: list[VolumeBackupTask] = []
    for claim in claims:
        name = claim.metadata.name if claim.metadata else None
        if not name:
            continue
        if not _is_eligible(claim, storage_class_name=storage_class_name, created_by=created_by):
            continue
        if cluster_id is not None and not _matches_cluster(gateway, claim, cluster_id=cluster_id):
            logger.debug("[%s] Skipping volume '%s': not on ceph cluster '%s'", namespace, name, cluster_id)
            continue
        tasks.append(VolumeBackupTask(namespace=namespace, volume_claim_name=name))

    tasks.sort(key=lambda task: task.volume_claim_name)
    return tasks


def _is_eligible(claim: Any, *, storage_class_name: str, created_by: str) -> bool:
    phase = claim.status.phase if claim.status else None
    if phase != "Bound":
        return False
    claim_storage_class = claim.spec.storage_class_name if claim.spec else None
    if claim_storage_class != storage_class_name:
        return False
    labels = (claim.metadata.labels if claim.metadata else None) or {}
    return labels.get(CREATED_BY_LABEL) != created_by


def _matches_cluster(gateway: VolumeClaimSource, claim: Any, *, cluster_id: str) -> bool:
    volume_name = claim.spec.volume_name if claim.spec else None
    if not volume_name:
        return False
    volume = gateway.read_persistent_volume(volume_name)
    csi = volume.spec.csi if volume.spec else None
    if csi is None or not csi.volume_handle:
        return False

    decoded = decode_volume_id(csi.volume_handle)
    logger.debug(
        "[%s] Volume '%s' maps to subvolume '%s' on ceph cluster '%s'",
        claim.metadata.namespace,
        claim.metadata.name,
        decoded.subvolume_name,
        decoded.cluster_id,
    )
    return decoded.cluster_id == cluster_id

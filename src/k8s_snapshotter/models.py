from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class VolumeBackupTask:
    namespace: str
    volume_claim_name: str


@dataclass(frozen=True)
class ResourceNames:
    snapshot: str
    clone: str
    job: str


@dataclass(frozen=True)
class BackupDestination:
    s3_url: str
    s3_bucket: str
    s3_access_key: str
    s3_secret_key: str


@dataclass(frozen=True)
class DecodedVolumeId:
    encoding_version: int
    cluster_id: str
    pool_id: int
    object_id: str

    @property
    def subvolume_name(self) -> str:
        return f"csi-vol-{self.object_id}"

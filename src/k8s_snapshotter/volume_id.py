"""Decode ceph-csi composite volume handles.

A ceph-csi volume handle looks like::

    0001-0009-rook-ceph-0000000000000001-8d4ea6a6-0f3e-11ec-9d1b-0242ac110004

i.e. ``VVVV-LLLL-<cluster id>-PPPPPPPPPPPPPPPP-<object uuid>`` where ``VVVV`` is the
encoding version, ``LLLL`` the cluster ID length and ``P...`` the pool ID, all
big-endian hex. The object UUID names the CephFS subvolume (``csi-vol-<uuid>``).
"""

from __future__ import annotations

import re

from .errors import (
    InvalidClusterIDError,
    InvalidObjectIDError,
    UnsupportedVersionError,
    VolumeIdDecodeError,
)
from .models import DecodedVolumeId

SUPPORTED_ENCODING_VERSION = 1
VERSION_HEX_DIGITS = 4
CLUSTER_ID_LENGTH_HEX_DIGITS = 4
MAX_CLUSTER_ID_LENGTH = 36
POOL_ID_HEX_DIGITS = 16
OBJECT_ID_LENGTH = 36
SEPARATOR = "-"

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")


def decode_volume_id(value: str) -> DecodedVolumeId:
    cursor = 0

    version_field, cursor = _take(value, cursor, VERSION_HEX_DIGITS, field="encoding version")
    encoding_version = _parse_hex(version_field, field="encoding version")
    if encoding_version != SUPPORTED_ENCODING_VERSION:
        raise UnsupportedVersionError(f"unsupported ceph volume ID (version {encoding_version})")
    cursor = _expect_separator(value, cursor, after="encoding version")

    length_field, cursor = _take(value, cursor, CLUSTER_ID_LENGTH_HEX_DIGITS, field="cluster ID length")
    cluster_id_length = _parse_hex(length_field, field="cluster ID length")
    if cluster_id_length > MAX_CLUSTER_ID_LENGTH:
        raise InvalidClusterIDError(
            f"invalid cluster ID: declared length {cluster_id_length} exceeds {MAX_CLUSTER_ID_LENGTH}"
        )
    cursor = _expect_separator(value, cursor, after="cluster ID length")

    cluster_id, cursor = _take(value, cursor, cluster_id_length, field="cluster ID")
    cursor = _expect_separator(value, cursor, after="cluster ID")

    pool_field, cursor = _take(value, cursor, POOL_ID_HEX_DIGITS, field="pool ID")
    pool_id = int.from_bytes(bytes.fromhex(_require_hex(pool_field, field="pool ID")), "big", signed=True)
    cursor = _expect_separator(value, cursor, after="pool ID")

    object_id = value[cursor:]
    if len(object_id) != OBJECT_ID_LENGTH:
        raise InvalidObjectIDError(
            f"invalid object ID: expected {OBJECT_ID_LENGTH} characters, got {len(object_id)}"
        )

    return DecodedVolumeId(
        encoding_version=encoding_version,
        cluster_id=cluster_id,
        pool_id=pool_id,
        object_id=object_id,
    )


def encode_volume_id(volume_id: DecodedVolumeId) -> str:
    if len(volume_id.cluster_id) > MAX_CLUSTER_ID_LENGTH:
        raise InvalidClusterIDError(f"cluster ID longer than {MAX_CLUSTER_ID_LENGTH} characters")
    if len(volume_id.object_id) != OBJECT_ID_LENGTH:
        raise InvalidObjectIDError(f"object ID must be {OBJECT_ID_LENGTH} characters")
    pool_hex = volume_id.pool_id.to_bytes(8, "big", signed=True).hex()
    return SEPARATOR.join(
        (
            f"{volume_id.encoding_version:04x}",
            f"{len(volume_id.cluster_id):04x}",
            volume_id.cluster_id,
            pool_hex,
            volume_id.object_id,
        )
    )


def _take(value: str, cursor: int, width: int, *, field: str) -> tuple[str, int]:
    end = cursor + width
    if end > len(value):
        raise VolumeIdDecodeError(
            f"volume ID truncated while reading {field}: need {width} characters at offset {cursor}"
        )
    return value[cursor:end], end


def _expect_separator(value: str, cursor: int, *, after: str) -> int:
    if cursor >= len(value) or value[cursor] != SEPARATOR:
        raise VolumeIdDecodeError(f"expected '{SEPARATOR}' after {after} at offset {cursor}")
    return cursor + 1


def _require_hex(field_value: str, *, field: str) -> str:
    if not _HEX_DIGITS.fullmatch(field_value):
        raise VolumeIdDecodeError(f"{field} is not valid hex: {field_value!r}")
    return field_value


def _parse_hex(field_value: str, *, field: str) -> int:
    return int.from_bytes(bytes.fromhex(_require_hex(field_value, field=field)), "big")

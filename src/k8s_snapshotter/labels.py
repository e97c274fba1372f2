from __future__ import annotations

import hashlib
import re

CREATED_BY_LABEL = "app.kubernetes.io/created-by"
SOURCE_CLAIM_LABEL = "k8s-snapshotter/source-claim"
SOURCE_CLAIM_ANNOTATION = "k8s-snapshotter/source-claim"
SNAPSHOT_LABEL = "k8s-snapshotter/snapshot"

LABEL_VALUE_MAX_LENGTH = 63
_LABEL_VALUE = re.compile(r"([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?")
_VALUE_HASH_LENGTH = 8


def is_valid_label_value(value: str) -> bool:
    return len(value) <= LABEL_VALUE_MAX_LENGTH and _LABEL_VALUE.fullmatch(value) is not None


def label_value(value: str) -> str:
    """Return ``value`` if Kubernetes accepts it as a label value, else a shortened form.

    The shortened form keeps a readable prefix and appends a digest of the full
    input, so distinct long values map to distinct labels.
    """
    if is_valid_label_value(value):
        return value

    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:_VALUE_HASH_LENGTH]
    prefix = re.sub(r"[^-A-Za-z0-9_.]", "-", value)[: LABEL_VALUE_MAX_LENGTH - _VALUE_HASH_LENGTH - 1]
    prefix = re.sub(r"^[^A-Za-z0-9]+|[^A-Za-z0-9]+$", "", prefix)
    return f"{prefix}-{digest}" if prefix else digest

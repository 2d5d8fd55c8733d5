#!/usr/bin/env python3
"""
Deterministic names for objects generated from a rancher.cattle.io Cluster
"""

import hashlib
import re

# Kubernetes object names are limited to 63 characters
MAX_NAME_LENGTH = 63
HASH_LENGTH = 5
DOWNSTREAM_HASH_LENGTH = 10
DOWNSTREAM_PREFIX = "c"
_DIGEST_SUFFIX = re.compile(r"-[0-9a-f]{10}$")


def _is_alphanumeric(char: str) -> bool:
    return "a" <= char <= "z" or "0" <= char <= "9"


def safe_concat_name(*parts: str) -> str:
    """
    Join parts with "-" and shorten the result to a valid object name.

    Names that do not fit are cut and suffixed with a short sha256 digest of
    the full joined string.
    """
    full = "-".join(parts)
    if len(full) <= MAX_NAME_LENGTH:
        return full

    digest = hashlib.sha256(full.encode("utf-8")).hexdigest()[:HASH_LENGTH]
    keep = MAX_NAME_LENGTH - HASH_LENGTH - 1
    # The cut must not leave a trailing "-" or "."
    if not _is_alphanumeric(full[keep - 1]):
        keep -= 1
    return f"{full[:keep]}-{digest}"


def downstream_cluster_name(namespace: str, name: str) -> str:
    """
    Name of the management.cattle.io Cluster generated for namespace/name.

    "c-<namespace>-<name>" is only unambiguous when the namespace holds no
    "-", so any other pair gets a digest of "<namespace>/<name>" appended.
    Plain names that end like a digest suffix are hashed too, so the plain
    and hashed forms never overlap.
    """
    plain = "-".join((DOWNSTREAM_PREFIX, namespace, name))
    if (
        "-" not in namespace
        and len(plain) <= MAX_NAME_LENGTH
        and not _DIGEST_SUFFIX.search(plain)
    ):
        return plain

    digest = hashlib.sha256(f"{namespace}/{name}".encode("utf-8")).hexdigest()[:DOWNSTREAM_HASH_LENGTH]
    base = plain[: MAX_NAME_LENGTH - len(digest) - 1].rstrip("-.")
    return f"{base}-{digest}"

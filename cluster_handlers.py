#!/usr/bin/env python3

import kopf
import logging
import asyncio
import copy
import json
import time
from collections import defaultdict
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Tuple

from clients import (
    apply_objects,
    get_cluster,
    get_management_cluster,
    update_cluster,
    update_cluster_status,
)
from config import MANAGEMENT_API_VERSION
from kstatus import READY, condition_is_true, merge_ready, set_active, set_transitioning
from kubeconfig import get_kubeconfig, kubeconfig_token
from metrics import (
    cluster_reconcile_duration,
    record_reconcile_error,
    record_reconcile_success,
    update_cluster_state,
)
from naming import downstream_cluster_name

logger = logging.getLogger(__name__)

DESCRIPTION_ANNOTATION = "field.cattle.io/description"
REGISTRATION_TOKEN_NAME = "default-token"

# TODO: confirm with the provisioning owners whether a placeholder endpoint
# should still be written once every engine reports its real endpoint
DEFAULT_CONTROL_PLANE_ENDPOINT = {"host": "localhost", "port": 6443}


class VariantKind(Enum):
    """Cluster spec variants, in the order they are checked"""

    IMPORTED = "importedConfig"
    REFERENCED = "referencedConfig"
    RKE = "rancherKubernetesEngineConfig"
    EKS = "eksConfig"
    K3S = "k3sConfig"
    RKE2 = "rke2Config"


class Variant(NamedTuple):
    kind: VariantKind
    config: Dict


class MissingCredentialError(kopf.PermanentError):
    """Cluster is ready but no kubeconfig secret could be built for it"""


class ReferencedClusterNotFound(kopf.TemporaryError):
    """referencedConfig points at a management cluster that does not exist"""


ObjectsAndStatus = Tuple[List[Dict], Dict]


def detect_variant(spec: Optional[Dict]) -> Optional[Variant]:
    """Return the first configured variant of a cluster spec"""
    spec = spec or {}
    for kind in VariantKind:
        config = spec.get(kind.value)
        if config is not None:
            return Variant(kind, config)
    return None


def on_change(key: str, cluster: Optional[Dict]) -> Optional[Dict]:
    """
    Fill in required spec fields of a cluster.

    A missing controlPlaneEndpoint is set to localhost:6443 and the cluster
    is written back. Clusters that need no defaulting are returned as is.
    """
    if cluster is None:
        return None

    if (cluster.get("spec") or {}).get("controlPlaneEndpoint") is None:
        cluster = copy.deepcopy(cluster)
        cluster["spec"] = dict(cluster.get("spec") or {})
        cluster["spec"]["controlPlaneEndpoint"] = dict(
            DEFAULT_CONTROL_PLANE_ENDPOINT
        )
        logger.info(f"Setting placeholder controlPlaneEndpoint on cluster {key}")
        return update_cluster(cluster)
    return cluster


def generate_cluster(cluster: Dict, status: Dict) -> ObjectsAndStatus:
    """
    Compute the desired child objects and status of a cluster.

    Clusters without a recognised variant produce no objects and keep their
    status.
    """
    variant = detect_variant(cluster.get("spec"))
    if variant is None:
        return [], status

    kind, config = variant
    if kind is VariantKind.IMPORTED:
        return import_cluster(cluster, status)
    if kind is VariantKind.REFERENCED:
        return reference_cluster(cluster, status, config)
    if kind is VariantKind.RKE:
        spec = {kind.value: config}
        auth_endpoint = cluster["spec"].get("localClusterAuthEndpoint")
        if auth_endpoint is not None:
            spec["localClusterAuthEndpoint"] = auth_endpoint
        return create_cluster(cluster, status, spec)
    if kind in (VariantKind.EKS, VariantKind.K3S, VariantKind.RKE2):
        return create_cluster(cluster, status, {kind.value: config})
    raise ValueError(f"Unhandled cluster variant: {kind}")


def build_management_cluster(cluster: Dict, spec: Dict) -> Dict:
    metadata = cluster["metadata"]
    annotations = metadata.get("annotations") or {}

    spec = dict(spec)
    spec["displayName"] = metadata["name"]
    spec["description"] = annotations.get(DESCRIPTION_ANNOTATION, "")
    spec["fleetWorkspaceName"] = metadata["namespace"]

    new_metadata = {"name": downstream_cluster_name(metadata["namespace"], metadata["name"])}
    if metadata.get("labels"):
        new_metadata["labels"] = metadata["labels"]
    if annotations:
        new_metadata["annotations"] = annotations

    return {"metadata": new_metadata, "spec": spec}


def encode_to_map(obj: Dict) -> Dict:
    """Round-trip through JSON, failing on values the API cannot store"""
    return json.loads(json.dumps(obj, sort_keys=True))


def create_cluster(cluster: Dict, status: Dict, spec: Dict) -> ObjectsAndStatus:
    new_cluster = build_management_cluster(cluster, spec)

    # management.cattle.io clusters have no status subresource, so only
    # metadata and spec are sent to avoid clobbering status owned by Rancher
    data = encode_to_map(new_cluster)
    data = {
        "metadata": data["metadata"],
        "spec": data["spec"],
    }
    data["kind"] = "Cluster"
    data["apiVersion"] = MANAGEMENT_API_VERSION

    return update_status([data], cluster, status, new_cluster)


def registration_token(management_cluster_name: str) -> Dict:
    return {
        "apiVersion": MANAGEMENT_API_VERSION,
        "kind": "ClusterRegistrationToken",
        "metadata": {
            "name": REGISTRATION_TOKEN_NAME,
            "namespace": management_cluster_name,
        },
        "spec": {"clusterName": management_cluster_name},
    }


def import_cluster(cluster: Dict, status: Dict) -> ObjectsAndStatus:
    """Generate a management cluster for an imported cluster plus its registration token"""
    objects, status = create_cluster(cluster, status, {VariantKind.IMPORTED.value: {}})
    objects.append(registration_token(status["clusterName"]))
    return objects, status


def reference_cluster(cluster: Dict, status: Dict, config: Dict) -> ObjectsAndStatus:
    """Track an existing management cluster without managing it"""
    management_cluster_name = (config or {}).get("managementClusterName")
    if not management_cluster_name:
        raise kopf.PermanentError("referencedConfig.managementClusterName is required")

    existing = get_management_cluster(management_cluster_name)
    if existing is None:
        raise ReferencedClusterNotFound(
            f"Referenced management cluster {management_cluster_name} not found",
            delay=30,
        )
    return update_status([], cluster, status, existing)


def update_status(
    objects: List[Dict], cluster: Dict, status: Dict, management_cluster: Dict
) -> ObjectsAndStatus:
    """
    Merge the state of the management cluster into the cluster status.

    Readiness is read from the management cluster's Ready condition and is
    never reset once set, since dropping it would delete the kubeconfig
    secret. Ready clusters get their kubeconfig secret and the Token it
    authenticates with added to objects.
    """
    objects = list(objects)
    status = copy.deepcopy(status or {})
    management_cluster_name = management_cluster["metadata"]["name"]

    existing = get_management_cluster(management_cluster_name)
    ready = existing is not None and condition_is_true(existing, READY)

    status["ready"] = merge_ready(status.get("ready", False), ready)
    status["observedGeneration"] = cluster["metadata"].get("generation", 0)
    status["clusterName"] = management_cluster_name
    if status["ready"]:
        set_active(status)
    else:
        set_transitioning(status, "")

    if status["ready"]:
        secret = get_kubeconfig(cluster, status)
        if secret is None:
            raise MissingCredentialError(
                f"No kubeconfig secret for ready cluster {management_cluster_name}"
            )
        objects.append(kubeconfig_token(cluster))
        objects.append(secret)
        status["clientSecretName"] = secret["metadata"]["name"]

    return objects, status


def cluster_state(status: Dict) -> str:
    if status.get("ready"):
        return "Ready"
    if status.get("clusterName"):
        return "Pending"
    return "Unconfigured"


# One reconciliation per cluster at a time, shared by the cluster handlers
# and by forwarded management cluster events
_reconcile_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


async def reconcile_cluster(cluster: Optional[Dict], namespace: str, name: str):
    """Main reconciliation point for rancher.cattle.io Cluster"""
    key = f"{namespace}/{name}"

    async with _reconcile_locks[key]:
        start_time = time.time()
        try:
            if cluster is not None and cluster.get("metadata", {}).get("deletionTimestamp"):
                # Deletion is handled by cleanup_cluster
                cluster = None
            cluster = on_change(key, cluster)
            if cluster is None:
                logger.debug(f"Cluster {key} is gone, nothing to reconcile")
                return

            logger.info(f"Reconciling cluster: {key}")
            status = cluster.get("status") or {}
            objects, new_status = generate_cluster(cluster, status)

            apply_objects(namespace, name, objects)
            if new_status != status:
                await update_cluster_status(name, namespace, new_status)

            update_cluster_state(namespace, name, cluster_state(new_status))
            duration = time.time() - start_time
            cluster_reconcile_duration.labels(
                namespace=namespace, cluster=name
            ).observe(duration)
            record_reconcile_success(namespace, name)

        except kopf.TemporaryError:
            record_reconcile_error(namespace, name, "temporary")
            raise
        except kopf.PermanentError:
            record_reconcile_error(namespace, name, "permanent")
            raise
        except Exception as e:
            logger.error(f"Failed to reconcile cluster {key}: {e}")
            record_reconcile_error(namespace, name, "unknown")
            raise kopf.TemporaryError(f"Cluster reconciliation failed: {e}", delay=60)


async def reconcile_cluster_key(namespace: str, name: str):
    """Reconcile a cluster by key, reading its latest version first"""
    await reconcile_cluster(get_cluster(namespace, name), namespace, name)


async def cleanup_cluster(namespace: str, name: str):
    """Remove every object generated for a deleted cluster"""
    key = f"{namespace}/{name}"
    async with _reconcile_locks[key]:
        logger.info(f"Cleaning up objects of cluster: {key}")
        apply_objects(namespace, name, [])
    _reconcile_locks.pop(key, None)

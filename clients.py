#!/usr/bin/env python3

import copy
import hashlib
import json
import kubernetes
import logging
import sys
from typing import Dict, List, Optional
import os
from pathlib import Path

from kubernetes.client.rest import ApiException

from config import (
    API_GROUP,
    API_VERSION,
    CLUSTER_PLURAL,
    MANAGEMENT_API_VERSION,
    MANAGEMENT_GROUP,
    MANAGEMENT_VERSION,
)

logger = logging.getLogger(__name__)

# Labels and annotations stamped on every applied object so that stale
# children of an owner can be found and pruned later
OWNER_HASH_LABEL = "objectset.rio.cattle.io/hash"
OWNER_ID_ANNOTATION = "objectset.rio.cattle.io/id"
OWNER_GVK_ANNOTATION = "objectset.rio.cattle.io/owner-gvk"
OWNER_NAME_ANNOTATION = "objectset.rio.cattle.io/owner-name"
OWNER_NAMESPACE_ANNOTATION = "objectset.rio.cattle.io/owner-namespace"
APPLIED_ANNOTATION = "objectset.rio.cattle.io/applied"
APPLY_SET_ID = "cluster-create"
OWNER_GVK = f"{API_GROUP}/{API_VERSION}, Kind=Cluster"

# Status fields written by this operator, everything else belongs to others
OWNED_STATUS_FIELDS = (
    "ready",
    "observedGeneration",
    "clusterName",
    "clientSecretName",
    "conditions",
)

# (apiVersion, kind) -> (group, version, plural, namespaced)
CUSTOM_RESOURCES = {
    (MANAGEMENT_API_VERSION, "Cluster"): (
        MANAGEMENT_GROUP, MANAGEMENT_VERSION, "clusters", False
    ),
    (MANAGEMENT_API_VERSION, "ClusterRegistrationToken"): (
        MANAGEMENT_GROUP, MANAGEMENT_VERSION, "clusterregistrationtokens", True
    ),
    (MANAGEMENT_API_VERSION, "Token"): (
        MANAGEMENT_GROUP, MANAGEMENT_VERSION, "tokens", False
    ),
}

# Kinds whose stale objects are deleted when an owner no longer wants them
PRUNED_KINDS = (
    (MANAGEMENT_API_VERSION, "Cluster"),
    (MANAGEMENT_API_VERSION, "ClusterRegistrationToken"),
    (MANAGEMENT_API_VERSION, "Token"),
    ("v1", "Secret"),
)

api_client = None
core_v1 = None
custom_objects_api = None


def setup_kubernetes_client():
    global api_client, core_v1, custom_objects_api

    kubeconfig_path = os.environ.get("KUBECONFIG", "~/.kube/config")
    expanded_kubeconfig = os.path.expanduser(kubeconfig_path)
    kubeconfig_file = Path(expanded_kubeconfig)

    logger.info(f"KUBECONFIG variable: {kubeconfig_path}")

    loaded = False
    if kubeconfig_file.exists():
        logger.info(f"Kubeconfig file found: {kubeconfig_file}")
        try:
            kubernetes.config.load_kube_config(config_file=expanded_kubeconfig)
            logger.info("Successfully loaded kubeconfig")
            loaded = True
        except kubernetes.config.ConfigException as e:
            logger.warning(f"Failed to load kubeconfig: {e}")
    else:
        logger.warning(f"Kubeconfig file NOT found: {kubeconfig_file}")

    if not loaded:
        logger.info("Switching to in-cluster connection attempt...")

        if not os.environ.get("KUBERNETES_SERVICE_HOST") or not os.environ.get("KUBERNETES_SERVICE_PORT"):
            logger.error("KUBERNETES_SERVICE_HOST and KUBERNETES_SERVICE_PORT variables not set, in-cluster config impossible")

        try:
            kubernetes.config.load_incluster_config()
            logger.info("Successfully loaded in-cluster config")
        except kubernetes.config.ConfigException as e:
            logger.error(f"In-cluster connection error: {e}")
            sys.exit(1)

    api_client = kubernetes.client.ApiClient()
    core_v1 = kubernetes.client.CoreV1Api(api_client)
    custom_objects_api = kubernetes.client.CustomObjectsApi(api_client)


def get_cluster(namespace: str, name: str) -> Optional[Dict]:
    """Get rancher.cattle.io Cluster, None if it does not exist"""
    try:
        return custom_objects_api.get_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=CLUSTER_PLURAL,
            name=name,
        )
    except ApiException as e:
        if e.status == 404:
            return None
        raise


def update_cluster(cluster: Dict) -> Dict:
    """Replace a rancher.cattle.io Cluster and return the stored object"""
    metadata = cluster["metadata"]
    updated = custom_objects_api.replace_namespaced_custom_object(
        group=API_GROUP,
        version=API_VERSION,
        namespace=metadata["namespace"],
        plural=CLUSTER_PLURAL,
        name=metadata["name"],
        body=cluster,
    )
    logger.info(f"Updated cluster {metadata['namespace']}/{metadata['name']}")
    return updated


def get_management_cluster(name: str) -> Optional[Dict]:
    """Get management.cattle.io Cluster, None if it does not exist"""
    try:
        return custom_objects_api.get_cluster_custom_object(
            group=MANAGEMENT_GROUP,
            version=MANAGEMENT_VERSION,
            plural="clusters",
            name=name,
        )
    except ApiException as e:
        if e.status == 404:
            return None
        raise


def owner_hash(namespace: str, name: str) -> str:
    key = f"{OWNER_GVK} {namespace}/{name}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


def _stamp_owner(obj: Dict, namespace: str, name: str) -> Dict:
    metadata = obj.setdefault("metadata", {})
    labels = dict(metadata.get("labels") or {})
    annotations = dict(metadata.get("annotations") or {})
    labels[OWNER_HASH_LABEL] = owner_hash(namespace, name)
    annotations[OWNER_ID_ANNOTATION] = APPLY_SET_ID
    annotations[OWNER_GVK_ANNOTATION] = OWNER_GVK
    annotations[OWNER_NAME_ANNOTATION] = name
    annotations[OWNER_NAMESPACE_ANNOTATION] = namespace
    metadata["labels"] = labels
    metadata["annotations"] = annotations
    # Record which keys were applied, so keys dropped later can be removed.
    # Only the key tree is kept, values such as secret data stay out of it
    annotations[APPLIED_ANNOTATION] = json.dumps(_key_tree(obj), sort_keys=True)
    return obj


def _key_tree(obj: Dict) -> Dict:
    return {
        key: _key_tree(value) if isinstance(value, dict) else None
        for key, value in obj.items()
    }


def _last_applied(existing: Dict) -> Dict:
    annotations = (existing.get("metadata") or {}).get("annotations") or {}
    applied = annotations.get(APPLIED_ANNOTATION)
    if not applied:
        return {}
    try:
        return json.loads(applied)
    except ValueError:
        logger.warning(f"Ignoring unreadable {APPLIED_ANNOTATION} annotation")
        return {}


def merge_patch(last_applied: Dict, desired: Dict) -> Dict:
    """
    Merge patch from the last applied object to the desired one.

    Keys that were applied before and are no longer desired are set to None,
    which deletes them. Keys added by other writers are left alone.
    """
    patch = copy.deepcopy(desired)
    for key, value in last_applied.items():
        if key not in desired:
            patch[key] = None
        elif isinstance(value, dict) and isinstance(desired[key], dict):
            patch[key] = merge_patch(value, desired[key])
    return patch


def _object_key(obj: Dict):
    metadata = obj.get("metadata", {})
    return (obj.get("apiVersion"), obj.get("kind"), metadata.get("namespace"), metadata["name"])


def _read_object(obj: Dict) -> Optional[Dict]:
    api_version, kind, namespace, name = _object_key(obj)
    try:
        if (api_version, kind) == ("v1", "Secret"):
            return api_client.sanitize_for_serialization(
                core_v1.read_namespaced_secret(name, namespace)
            )
        group, version, plural, namespaced = CUSTOM_RESOURCES[(api_version, kind)]
        if namespaced:
            return custom_objects_api.get_namespaced_custom_object(
                group=group, version=version, namespace=namespace, plural=plural, name=name
            )
        return custom_objects_api.get_cluster_custom_object(
            group=group, version=version, plural=plural, name=name
        )
    except ApiException as e:
        if e.status == 404:
            return None
        raise


def _create_object(obj: Dict):
    api_version, kind, namespace, name = _object_key(obj)
    if (api_version, kind) == ("v1", "Secret"):
        core_v1.create_namespaced_secret(namespace, obj)
    else:
        group, version, plural, namespaced = CUSTOM_RESOURCES[(api_version, kind)]
        if namespaced:
            custom_objects_api.create_namespaced_custom_object(
                group=group, version=version, namespace=namespace, plural=plural, body=obj
            )
        else:
            custom_objects_api.create_cluster_custom_object(
                group=group, version=version, plural=plural, body=obj
            )
    logger.info(f"Created {kind}: {name}")


def _patch_object(obj: Dict, existing: Dict):
    api_version, kind, namespace, name = _object_key(obj)
    body = merge_patch(_last_applied(existing), obj)
    if (api_version, kind) == ("v1", "Secret"):
        core_v1.patch_namespaced_secret(name, namespace, body)
    else:
        group, version, plural, namespaced = CUSTOM_RESOURCES[(api_version, kind)]
        if namespaced:
            custom_objects_api.patch_namespaced_custom_object(
                group=group, version=version, namespace=namespace, plural=plural, name=name, body=body
            )
        else:
            custom_objects_api.patch_cluster_custom_object(
                group=group, version=version, plural=plural, name=name, body=body
            )
    logger.debug(f"Patched {kind}: {name}")


def _list_owned(api_version: str, kind: str, selector: str) -> List[Dict]:
    if (api_version, kind) == ("v1", "Secret"):
        secrets = core_v1.list_secret_for_all_namespaces(label_selector=selector)
        return [
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {"name": s.metadata.name, "namespace": s.metadata.namespace},
            }
            for s in secrets.items
        ]
    group, version, plural, _ = CUSTOM_RESOURCES[(api_version, kind)]
    result = custom_objects_api.list_cluster_custom_object(
        group=group, version=version, plural=plural, label_selector=selector
    )
    return [
        {
            "apiVersion": api_version,
            "kind": kind,
            "metadata": {
                "name": item["metadata"]["name"],
                "namespace": item["metadata"].get("namespace"),
            },
        }
        for item in result.get("items", [])
    ]


def _delete_object(obj: Dict):
    api_version, kind, namespace, name = _object_key(obj)
    try:
        if (api_version, kind) == ("v1", "Secret"):
            core_v1.delete_namespaced_secret(name, namespace)
        else:
            group, version, plural, namespaced = CUSTOM_RESOURCES[(api_version, kind)]
            if namespaced:
                custom_objects_api.delete_namespaced_custom_object(
                    group=group, version=version, namespace=namespace, plural=plural, name=name
                )
            else:
                custom_objects_api.delete_cluster_custom_object(
                    group=group, version=version, plural=plural, name=name
                )
        logger.info(f"Pruned {kind}: {name}")
    except ApiException as e:
        if e.status != 404:
            raise


def apply_objects(owner_namespace: str, owner_name: str, objects: List[Dict]):
    """
    Make objects the complete set of children of the given owner

    Missing objects are created. Existing ones are merge-patched against the
    last applied version, so keys that are no longer desired are removed.
    Previously applied children of the owner that are not in objects are
    deleted. Applying the same set twice changes nothing.
    """
    desired = set()
    for obj in objects:
        obj = _stamp_owner(copy.deepcopy(obj), owner_namespace, owner_name)
        desired.add(_object_key(obj))
        existing = _read_object(obj)
        if existing is None:
            _create_object(obj)
        else:
            _patch_object(obj, existing)

    selector = f"{OWNER_HASH_LABEL}={owner_hash(owner_namespace, owner_name)}"
    for api_version, kind in PRUNED_KINDS:
        for existing in _list_owned(api_version, kind, selector):
            if _object_key(existing) not in desired:
                _delete_object(existing)


async def update_cluster_status(
    cluster_name: str, namespace: str, status: Dict
):
    """Update rancher.cattle.io Cluster status fields owned by this operator"""
    try:
        body = {
            "status": {
                key: status[key] for key in OWNED_STATUS_FIELDS if key in status
            }
        }

        custom_objects_api.patch_namespaced_custom_object_status(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=CLUSTER_PLURAL,
            name=cluster_name,
            body=body,
        )
        logger.debug(f"Updated cluster status: {cluster_name}")

    except Exception as e:
        logger.error(f"Failed to update cluster status: {e}")
        raise

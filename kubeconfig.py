#!/usr/bin/env python3
"""
Kubeconfig secrets for ready clusters

The bearer token is an HMAC of the configured signing key over the cluster's
identity and is registered with Rancher as a management.cattle.io Token, so
repeated reconciliations produce identical objects.
"""

import base64
import hashlib
import hmac
import logging
from typing import Dict, Optional

import kopf
import yaml

import config
from metrics import record_kubeconfig_generated
from naming import safe_concat_name

logger = logging.getLogger(__name__)

KUBECONFIG_KEY = "value"


def kubeconfig_secret_name(cluster_name: str) -> str:
    return safe_concat_name(cluster_name, "kubeconfig")


def kubeconfig_token_name(namespace: str, name: str) -> str:
    digest = hashlib.sha256(f"{namespace}/{name}".encode("utf-8")).hexdigest()[:16]
    return f"kubeconfig-{digest}"


def _token_value(cluster: Dict) -> str:
    if not config.TOKEN_SIGNING_KEY:
        raise kopf.PermanentError("RANCHER_OPERATOR_TOKEN_SIGNING_KEY is not set")

    metadata = cluster["metadata"]
    message = f"{metadata['namespace']}/{metadata['name']}/{metadata.get('uid', '')}"
    return hmac.new(
        config.TOKEN_SIGNING_KEY.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def kubeconfig_token(cluster: Dict) -> Dict:
    """Token object that authenticates the kubeconfig of a cluster"""
    metadata = cluster["metadata"]
    return {
        "apiVersion": config.MANAGEMENT_API_VERSION,
        "kind": "Token",
        "metadata": {"name": kubeconfig_token_name(metadata["namespace"], metadata["name"])},
        "authProvider": "local",
        "description": f"kubeconfig for cluster {metadata['namespace']}/{metadata['name']}",
        "isDerived": True,
        "token": _token_value(cluster),
        "ttl": 0,
        "userId": config.TOKEN_USER_ID,
    }


def render_kubeconfig(management_cluster_name: str, token: str) -> str:
    """Render a kubeconfig that reaches the cluster through the Rancher proxy"""
    cluster_entry = {
        "server": f"{config.SERVER_URL}/k8s/clusters/{management_cluster_name}",
    }
    if config.CA_CERT:
        cluster_entry["certificate-authority-data"] = base64.b64encode(
            config.CA_CERT.encode("utf-8")
        ).decode("utf-8")

    data = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": "cluster", "cluster": cluster_entry}],
        "users": [{"name": "user", "user": {"token": token}}],
        "contexts": [
            {"name": "default", "context": {"cluster": "cluster", "user": "user"}}
        ],
        "current-context": "default",
    }
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)


def get_kubeconfig(cluster: Dict, status: Dict) -> Optional[Dict]:
    """
    Build the kubeconfig Secret for a rancher.cattle.io Cluster

    Returns None only when the status does not name a management cluster yet.
    """
    metadata = cluster["metadata"]
    namespace = metadata["namespace"]
    name = metadata["name"]
    management_cluster_name = status.get("clusterName")
    if not management_cluster_name:
        return None

    try:
        token = kubeconfig_token(cluster)
    except kopf.PermanentError:
        record_kubeconfig_generated(namespace, name, False)
        raise

    record_kubeconfig_generated(namespace, name, True)
    bearer = f"{token['metadata']['name']}:{token['token']}"
    kubeconfig = render_kubeconfig(management_cluster_name, bearer)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": kubeconfig_secret_name(name), "namespace": namespace},
        "type": "Opaque",
        "data": {
            KUBECONFIG_KEY: base64.b64encode(kubeconfig.encode("utf-8")).decode("utf-8"),
        },
    }

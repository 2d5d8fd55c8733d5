#!/usr/bin/env python3
"""
Prometheus metrics for the Rancher cluster operator
"""

import logging
from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server

logger = logging.getLogger(__name__)

# Cluster metrics
clusters_by_state = Gauge(
    "rancher_operator_clusters_by_state",
    "Clusters per reconciliation state",
    ["namespace", "cluster", "state"],
)

# Operation metrics
cluster_reconcile_duration = Histogram(
    "rancher_operator_cluster_reconcile_duration_seconds",
    "Time spent reconciling a cluster",
    ["namespace", "cluster"],
)

cluster_reconcile_errors = Counter(
    "rancher_operator_cluster_reconcile_errors_total",
    "Total number of cluster reconciliation errors",
    ["namespace", "cluster", "error_type"],
)

cluster_reconcile_success = Counter(
    "rancher_operator_cluster_reconcile_success_total",
    "Total number of successful cluster reconciliations",
    ["namespace", "cluster"],
)

# Related resource forwarding
related_events_forwarded = Counter(
    "rancher_operator_related_events_forwarded_total",
    "Management cluster events that triggered an owner reconciliation",
)

related_events_dropped = Counter(
    "rancher_operator_related_events_dropped_total",
    "Management cluster events without an owning cluster",
)

# Kubeconfig generation metrics
kubeconfig_generation_success = Counter(
    "rancher_operator_kubeconfig_generation_success_total",
    "Total number of successful kubeconfig generations",
    ["namespace", "cluster"],
)

kubeconfig_generation_errors = Counter(
    "rancher_operator_kubeconfig_generation_errors_total",
    "Total number of kubeconfig generation errors",
    ["namespace", "cluster"],
)

# Operator info
operator_info = Info(
    "rancher_operator",
    "Rancher cluster operator information",
)

CLUSTER_STATES = ("Unconfigured", "Pending", "Ready")


def init_metrics(port: int = 0):
    """Initialize operator metrics and serve them when a port is given"""
    operator_info.info(
        {
            "version": "v1",
            "name": "rancher-cluster-operator",
            "description": "Generates management clusters from rancher.cattle.io clusters",
        }
    )
    if port:
        start_http_server(port)
        logger.info(f"Prometheus metrics served on port {port}")
    logger.info("Prometheus metrics initialized")


def update_cluster_state(namespace: str, cluster_name: str, state: str):
    """Mark cluster as being in exactly one state"""
    for s in CLUSTER_STATES:
        clusters_by_state.labels(
            namespace=namespace, cluster=cluster_name, state=s
        ).set(1 if s == state else 0)


def record_reconcile_success(namespace: str, cluster_name: str):
    """Record successful cluster reconciliation"""
    cluster_reconcile_success.labels(
        namespace=namespace, cluster=cluster_name
    ).inc()


def record_reconcile_error(namespace: str, cluster_name: str, error_type: str):
    """Record cluster reconciliation error"""
    cluster_reconcile_errors.labels(
        namespace=namespace, cluster=cluster_name, error_type=error_type
    ).inc()


def record_related_event(forwarded: bool):
    if forwarded:
        related_events_forwarded.inc()
    else:
        related_events_dropped.inc()


def record_kubeconfig_generated(namespace: str, cluster_name: str, success: bool):
    """Record kubeconfig generation attempt"""
    if success:
        kubeconfig_generation_success.labels(
            namespace=namespace, cluster=cluster_name
        ).inc()
    else:
        kubeconfig_generation_errors.labels(
            namespace=namespace, cluster=cluster_name
        ).inc()

#!/usr/bin/env python3

import copy
import kopf
import logging

import config
from clients import setup_kubernetes_client
from cluster_handlers import cleanup_cluster, reconcile_cluster
from metrics import init_metrics
from related import cluster_index_keys, forward_management_cluster_event

# Configure logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@kopf.index(config.API_GROUP, config.API_VERSION, config.CLUSTER_PLURAL)
def clusters_by_management_cluster(namespace, name, status, **kwargs):
    """Index rancher.cattle.io clusters by the management cluster they generated"""
    return {key: (namespace, name) for key in cluster_index_keys(status)}


# rancher.cattle.io Cluster handlers
@kopf.on.create(config.API_GROUP, config.API_VERSION, config.CLUSTER_PLURAL)
@kopf.on.update(config.API_GROUP, config.API_VERSION, config.CLUSTER_PLURAL)
@kopf.on.resume(config.API_GROUP, config.API_VERSION, config.CLUSTER_PLURAL)
async def cluster_handler(body, name, namespace, **kwargs):
    await reconcile_cluster(copy.deepcopy(dict(body)), namespace, name)


@kopf.on.delete(config.API_GROUP, config.API_VERSION, config.CLUSTER_PLURAL)
async def cluster_delete_handler(name, namespace, **kwargs):
    await cleanup_cluster(namespace, name)


@kopf.on.event(config.MANAGEMENT_GROUP, config.MANAGEMENT_VERSION, "clusters")
async def management_cluster_handler(name, clusters_by_management_cluster: kopf.Index, **kwargs):
    await forward_management_cluster_event(name, clusters_by_management_cluster)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_):
    settings.posting.level = logging.WARNING
    # Keep kopf bookkeeping out of annotations, they are copied to management clusters
    settings.persistence.progress_storage = kopf.StatusProgressStorage()
    settings.persistence.diffbase_storage = kopf.StatusDiffBaseStorage()

    setup_kubernetes_client()
    init_metrics(config.METRICS_PORT)
    logger.info("Rancher cluster operator started")


if __name__ == "__main__":
    kopf.run()

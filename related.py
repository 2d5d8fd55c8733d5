#!/usr/bin/env python3
"""
Re-trigger rancher.cattle.io clusters when their management cluster changes

rancher.cattle.io clusters are indexed by the management cluster named in
their status; a management cluster event looks up its owner in that index and
reconciles it.
"""

import asyncio
import logging
from typing import Dict, List, Mapping, Optional, Tuple

import kopf

from cluster_handlers import reconcile_cluster_key
from metrics import record_related_event

logger = logging.getLogger(__name__)

ClusterKey = Tuple[str, str]

# kopf does not retry event handlers, so forwarded reconciliations retry here
FORWARD_ATTEMPTS = 5
FORWARD_BACKOFF = 5
FORWARD_MAX_BACKOFF = 60


def cluster_index_keys(status: Optional[Dict]) -> List[str]:
    """Index keys of a rancher.cattle.io cluster: its management cluster name, if any"""
    cluster_name = (status or {}).get("clusterName")
    if not cluster_name:
        return []
    return [cluster_name]


def select_owner(index: Mapping, cluster_name: str) -> Optional[ClusterKey]:
    """Pick the owning cluster of a management cluster, lowest key first"""
    if not cluster_name or cluster_name not in index:
        return None
    owners = sorted(tuple(owner) for owner in index[cluster_name])
    if not owners:
        return None
    return owners[0]


async def forward_management_cluster_event(
    cluster_name: str, index: Mapping
) -> Optional[ClusterKey]:
    """Reconcile the owner of a changed management cluster"""
    owner = select_owner(index, cluster_name)
    if owner is None:
        # Management clusters not created by this operator are ignored
        logger.debug(f"No cluster owns management cluster {cluster_name}")
        record_related_event(False)
        return None

    namespace, name = owner
    logger.info(
        f"Management cluster {cluster_name} changed, reconciling cluster {namespace}/{name}"
    )
    record_related_event(True)

    delay = FORWARD_BACKOFF
    for attempt in range(1, FORWARD_ATTEMPTS + 1):
        try:
            await reconcile_cluster_key(namespace, name)
        except kopf.TemporaryError as e:
            if attempt == FORWARD_ATTEMPTS:
                raise
            logger.warning(
                f"Reconciling cluster {namespace}/{name} failed (attempt {attempt}), retrying in {delay}s: {e}"
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, FORWARD_MAX_BACKOFF)
        else:
            break
    return owner

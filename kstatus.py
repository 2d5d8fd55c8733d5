#!/usr/bin/env python3
"""
Readiness helpers for rancher.cattle.io Cluster status

Conditions follow the kstatus convention: an object is either Active
(Ready=True) or Transitioning (Reconciling=True). No timestamps are written
so re-running on unchanged input yields identical status.
"""

from typing import Dict, List

READY = "Ready"
RECONCILING = "Reconciling"
STALLED = "Stalled"


def merge_ready(old: bool, new: bool) -> bool:
    """Readiness never goes back to False once set"""
    return bool(old) or bool(new)


def _set_condition(conditions: List[Dict], cond_type: str, value: bool, message: str = ""):
    for cond in conditions:
        if cond.get("type") == cond_type:
            cond["status"] = "True" if value else "False"
            cond["message"] = message
            return
    conditions.append(
        {
            "type": cond_type,
            "status": "True" if value else "False",
            "message": message,
        }
    )


def set_active(status: Dict):
    conditions = status.setdefault("conditions", [])
    _set_condition(conditions, READY, True)
    _set_condition(conditions, RECONCILING, False)
    _set_condition(conditions, STALLED, False)


def set_transitioning(status: Dict, message: str = ""):
    conditions = status.setdefault("conditions", [])
    _set_condition(conditions, READY, False)
    _set_condition(conditions, RECONCILING, True, message)
    _set_condition(conditions, STALLED, False)


def condition_is_true(obj: Dict, cond_type: str) -> bool:
    """Check a condition in obj["status"]["conditions"]"""
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == cond_type:
            return cond.get("status") == "True"
    return False

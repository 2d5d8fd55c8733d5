#!/usr/bin/env python3
"""
Operator configuration read from the environment
"""

import os

API_GROUP = "rancher.cattle.io"
API_VERSION = "v1"
CLUSTER_PLURAL = "clusters"

MANAGEMENT_GROUP = "management.cattle.io"
MANAGEMENT_VERSION = "v3"
MANAGEMENT_API_VERSION = f"{MANAGEMENT_GROUP}/{MANAGEMENT_VERSION}"


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"RANCHER_OPERATOR_{key}", default)


def _env_int(key: str, default: int) -> int:
    return int(_env(key, str(default)))


SERVER_URL = _env("SERVER_URL", "https://localhost").rstrip("/")
CA_CERT = _env("CA_CERT")
LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()
METRICS_PORT = _env_int("METRICS_PORT", 8080)

# Kubeconfig tokens are derived from this key, so it must stay stable
TOKEN_SIGNING_KEY = _env("TOKEN_SIGNING_KEY")
TOKEN_USER_ID = _env("TOKEN_USER_ID", "admin")

#!/usr/bin/env python3
"""
Unit tests for kubeconfig secret generation
"""

import base64
import kopf
import pytest
import yaml
from unittest.mock import patch
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kubeconfig import get_kubeconfig, kubeconfig_token, kubeconfig_token_name

CLUSTER = {"metadata": {"name": "prod", "namespace": "fleet", "uid": "1234"}}
STATUS = {"ready": True, "clusterName": "c-fleet-prod"}


def decode(secret):
    return yaml.safe_load(base64.b64decode(secret["data"]["value"]).decode("utf-8"))


@patch("config.TOKEN_SIGNING_KEY", "test-signing-key")
class TestKubeconfig:
    """Tests for kubeconfig secrets"""

    def test_new_secret(self):
        secret = get_kubeconfig(CLUSTER, STATUS)

        assert secret["kind"] == "Secret"
        assert secret["metadata"] == {"name": "prod-kubeconfig", "namespace": "fleet"}
        kubeconfig = decode(secret)
        assert kubeconfig["clusters"][0]["cluster"]["server"].endswith("/k8s/clusters/c-fleet-prod")
        assert kubeconfig["current-context"] == "default"

    def test_bearer_names_registered_token(self):
        secret = get_kubeconfig(CLUSTER, STATUS)
        token = kubeconfig_token(CLUSTER)

        bearer = decode(secret)["users"][0]["user"]["token"]
        assert bearer == f"{token['metadata']['name']}:{token['token']}"
        assert token["kind"] == "Token"
        assert token["metadata"]["name"] == kubeconfig_token_name("fleet", "prod")

    def test_repeated_generation_is_identical(self):
        assert get_kubeconfig(CLUSTER, STATUS) == get_kubeconfig(CLUSTER, STATUS)
        assert kubeconfig_token(CLUSTER) == kubeconfig_token(CLUSTER)

    def test_recreated_cluster_gets_new_token(self):
        recreated = {"metadata": dict(CLUSTER["metadata"], uid="5678")}

        assert kubeconfig_token(recreated)["token"] != kubeconfig_token(CLUSTER)["token"]
        # The token object keeps its name, so the old value is replaced
        assert kubeconfig_token(recreated)["metadata"] == kubeconfig_token(CLUSTER)["metadata"]

    def test_no_management_cluster(self):
        assert get_kubeconfig(CLUSTER, {"ready": True}) is None


class TestSigningKey:
    """Tests for the token signing key"""

    @patch("config.TOKEN_SIGNING_KEY", "")
    def test_missing_key_is_permanent(self):
        with pytest.raises(kopf.PermanentError):
            get_kubeconfig(CLUSTER, STATUS)

    def test_key_changes_token(self):
        with patch("config.TOKEN_SIGNING_KEY", "key-a"):
            first = kubeconfig_token(CLUSTER)["token"]
        with patch("config.TOKEN_SIGNING_KEY", "key-b"):
            second = kubeconfig_token(CLUSTER)["token"]

        assert first != second


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

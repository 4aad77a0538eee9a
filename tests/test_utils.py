"""
Tests for version parsing, API retries and resource builders.
"""
import base64

import pytest
from kubernetes_asyncio.client import ApiException

from dbaas_operator.config.logging import add_operator_context
from dbaas_operator.core.resources import (
    build_auth_secret,
    build_client_service,
    build_key_file_secret,
    merge_service_ports,
)
from dbaas_operator.models.database import MongoDB
from dbaas_operator.utils.retry import is_retryable_k8s_error, retry_on_k8s_error
from dbaas_operator.utils.version import parse_version, uses_tls_flags
from tests.fakes import mongodb, sharded_mongodb


@pytest.mark.parametrize("version, expected", [
    ("4.4", (4, 4, 0)),
    ("4.2.3", (4, 2, 3)),
    ("4.0.5-v3", (4, 0, 5)),
    ("percona-4.2.7", (4, 2, 7)),
])
def test_parse_version(version, expected):
    assert parse_version(version) == expected


def test_tls_flag_cutover():
    assert uses_tls_flags("4.2.0")
    assert uses_tls_flags("5.0.2")
    assert not uses_tls_flags("4.0.11")
    assert not uses_tls_flags("3.6.8-v1")


def test_retryable_statuses():
    assert is_retryable_k8s_error(ApiException(status=503))
    assert not is_retryable_k8s_error(ApiException(status=404))
    assert not is_retryable_k8s_error(ValueError())


@pytest.mark.asyncio
async def test_retry_on_k8s_error_retries_server_errors():
    calls = []

    @retry_on_k8s_error(max_retries=2, initial_delay=0.001)
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ApiException(status=429)
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_on_k8s_error_gives_up_on_client_errors():
    calls = []

    @retry_on_k8s_error(max_retries=3, initial_delay=0.001)
    async def missing():
        calls.append(1)
        raise ApiException(status=404)

    with pytest.raises(ApiException):
        await missing()
    assert len(calls) == 1


def test_service_template_ports_override_by_name():
    merged = merge_service_ports(
        [{"name": "db", "port": 27017, "protocol": "TCP"}],
        [{"name": "db", "nodePort": 30017}, {"name": "extra", "port": 1}],
    )

    assert merged == [
        {"name": "db", "port": 27017, "protocol": "TCP", "nodePort": 30017},
        {"name": "extra", "port": 1},
    ]


def test_client_service_uses_template_and_router_selector():
    db = MongoDB.from_object(sharded_mongodb(serviceTemplate={
        "metadata": {"annotations": {"lb": "internal"}},
        "spec": {"type": "LoadBalancer", "ports": [{"name": "db", "port": 27018}]},
    }))

    service = build_client_service(db)

    assert service["metadata"]["name"] == "mgo-sh"
    assert service["metadata"]["annotations"] == {"lb": "internal"}
    assert service["spec"]["type"] == "LoadBalancer"
    assert service["spec"]["ports"][0]["port"] == 27018
    assert service["spec"]["selector"]["mongodb.kubedb.com/node.mongos"] == "mgo-sh-mongos"


def test_generated_secrets():
    db = MongoDB.from_object(mongodb(replicaSet={"name": "rs0"}))

    auth = build_auth_secret(db, password="pw")
    key = build_key_file_secret(db, key="k")

    assert auth["metadata"]["name"] == "mgo-auth"
    assert base64.b64decode(auth["data"]["username"]) == b"root"
    assert base64.b64decode(auth["data"]["password"]) == b"pw"
    assert key["metadata"]["name"] == "mgo-key"
    assert base64.b64decode(key["data"]["key.txt"]) == b"k"
    assert build_auth_secret(db)["data"]["password"] != build_auth_secret(db)["data"]["password"]


def test_log_events_carry_operator_context():
    event = add_operator_context(None, "info", {"event": "reconcile_started"})

    assert event["operator"] == "dbaas-operator"
    assert "watch_namespace" in event
    assert event["event"] == "reconcile_started"

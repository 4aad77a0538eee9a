"""
Tests for the dependency gate.
"""
import pytest

from dbaas_operator.core.dependencies import DependencyGate, all_dependencies, dependency_set
from dbaas_operator.core.topology import resolve_node_roles
from dbaas_operator.models.database import MongoDB
from dbaas_operator.services.object_store import SECRET
from tests.fakes import FakeObjectStore, mongodb, sharded_mongodb

TLS = {"issuerRef": {"apiGroup": "cert-manager.io", "kind": "Issuer", "name": "mongo-ca"}}


def _deps(obj):
    db = MongoDB.from_object(obj)
    return all_dependencies(db, resolve_node_roles(db))


def test_standalone_needs_only_credentials():
    assert _deps(mongodb()) == ["mgo-auth"]


def test_replica_set_needs_key_file():
    assert _deps(mongodb(replicaSet={"name": "rs0"})) == ["mgo-auth", "mgo-key"]


def test_tls_adds_certificates():
    assert _deps(mongodb(tls=TLS)) == ["mgo-auth", "mgo-key", "mgo-client-cert", "mgo-server-cert"]


def test_exporter_certificate_only_when_monitored():
    deps = _deps(mongodb(tls=TLS, monitor={"agent": "prometheus.io/builtin"}))

    assert "mgo-metrics-exporter-cert" in deps


def test_custom_certificate_names_are_used():
    tls = dict(TLS, certificates=[{"alias": "client", "secretName": "my-client"}])

    assert "my-client" in _deps(mongodb(tls=tls))


def test_sharded_server_certificates_per_node():
    db = MongoDB.from_object(sharded_mongodb(shards=2, tls=TLS))
    roles = resolve_node_roles(db)

    assert dependency_set(db, roles[1]) == [
        "mgo-sh-auth",
        "mgo-sh-key",
        "mgo-sh-client-cert",
        "mgo-sh-shard0-server-cert",
    ]
    deps = all_dependencies(db, roles)
    assert deps.count("mgo-sh-client-cert") == 1
    assert {
        "mgo-sh-configsvr-server-cert",
        "mgo-sh-shard0-server-cert",
        "mgo-sh-shard1-server-cert",
        "mgo-sh-mongos-server-cert",
    } <= set(deps)


@pytest.mark.asyncio
async def test_gate_reports_missing_in_order():
    store = FakeObjectStore()
    store.put(SECRET, {"metadata": {"name": "b", "namespace": "demo"}})
    gate = DependencyGate(store)

    result = await gate.check("demo", ["a", "b", "c"])

    assert not result.ready
    assert result.missing == ["a", "c"]


@pytest.mark.asyncio
async def test_gate_ignores_other_namespaces():
    store = FakeObjectStore()
    store.put(SECRET, {"metadata": {"name": "a", "namespace": "other"}})

    result = await DependencyGate(store).check("demo", ["a"])

    assert result.missing == ["a"]


@pytest.mark.asyncio
async def test_gate_ready_when_everything_exists():
    store = FakeObjectStore()
    store.put(SECRET, {"metadata": {"name": "a", "namespace": "demo"}})

    result = await DependencyGate(store).check("demo", ["a"])

    assert result.ready
    assert result.missing == []

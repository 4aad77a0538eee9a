"""
Tests for topology resolution.
"""
from dbaas_operator.core.topology import RoleKind, resolve_node_roles
from dbaas_operator.models.database import LABEL_NODE_SHARD, MongoDB
from tests.fakes import mongodb, sharded_mongodb


def test_standalone_has_one_replica():
    roles = resolve_node_roles(MongoDB.from_object(mongodb()))

    assert len(roles) == 1
    role = roles[0]
    assert role.kind == RoleKind.STANDALONE
    assert role.workload_name == "mgo"
    assert role.governing_service_name == "mgo-pods"
    assert role.replicas == 1
    assert not role.clustered
    assert role.replica_set_name is None


def test_replica_set_uses_spec_replicas():
    roles = resolve_node_roles(MongoDB.from_object(mongodb(replicaSet={"name": "rs0"}, replicas=3)))

    assert [r.kind for r in roles] == [RoleKind.REPLICA_SET]
    assert roles[0].replicas == 3
    assert roles[0].replica_set_name == "rs0"
    assert roles[0].clustered


def test_sharded_roles_come_in_creation_order():
    db = MongoDB.from_object(sharded_mongodb())

    roles = resolve_node_roles(db)

    assert [r.workload_name for r in roles] == [
        "mgo-sh-configsvr",
        "mgo-sh-shard0",
        "mgo-sh-shard1",
        "mgo-sh-shard2",
        "mgo-sh-mongos",
    ]
    assert [r.replicas for r in roles] == [3, 2, 2, 2, 2]
    assert [r.replica_set_name for r in roles] == ["cnfRepSet", "shard0", "shard1", "shard2", None]
    assert [r.shard_index for r in roles if r.kind == RoleKind.SHARD] == [0, 1, 2]


def test_router_holds_no_data():
    roles = resolve_node_roles(MongoDB.from_object(sharded_mongodb()))

    router = roles[-1]
    assert router.kind == RoleKind.ROUTER
    assert not router.data_bearing
    assert router.storage is None
    assert router.strategy == {"type": "RollingUpdate"}
    assert all(r.data_bearing and r.storage for r in roles[:-1])


def test_shard_selectors_are_distinct():
    roles = resolve_node_roles(MongoDB.from_object(sharded_mongodb(shards=2)))
    shards = [r for r in roles if r.kind == RoleKind.SHARD]

    assert shards[0].selectors[LABEL_NODE_SHARD] == "mgo-sh-shard0"
    assert shards[1].selectors[LABEL_NODE_SHARD] == "mgo-sh-shard1"
    assert shards[0].labels["kubedb.com/name"] == "mgo-sh"


def test_prefixes_rename_workloads():
    obj = sharded_mongodb(shards=1)
    top = obj["spec"]["shardTopology"]
    top["shard"]["prefix"] = "part"
    top["configServer"]["prefix"] = "cfg"
    top["mongos"]["prefix"] = "router"

    roles = resolve_node_roles(MongoDB.from_object(obj))

    assert [r.workload_name for r in roles] == ["mgo-sh-cfg", "mgo-sh-part0", "mgo-sh-router"]
    assert roles[0].kind == RoleKind.CONFIG_SERVER
    assert roles[0].governing_service_name == "mgo-sh-cfg-pods"

"""
Tests for StatefulSet synthesis.
"""
import pytest

from dbaas_operator.core.topology import RoleKind, resolve_node_roles
from dbaas_operator.core.workload import (
    build_env,
    build_statefulset,
    upsert_argument_list,
    upsert_env_vars,
)
from dbaas_operator.exceptions import ValidationError, VersionNotFoundError
from dbaas_operator.models.database import MongoDB
from dbaas_operator.models.version import MongoDBVersion
from tests.fakes import mongodb, mongodb_version, sharded_mongodb

TLS = {"issuerRef": {"apiGroup": "cert-manager.io", "kind": "Issuer", "name": "mongo-ca"}}


def _build(obj, version="4.4.6", role_index=0):
    db = MongoDB.from_object(obj)
    role = resolve_node_roles(db)[role_index]
    return build_statefulset(db, role, MongoDBVersion.from_object(mongodb_version(version)))


def _container(sts, name="mongodb"):
    for container in sts["spec"]["template"]["spec"]["containers"]:
        if container["name"] == name:
            return container
    raise AssertionError(f"no container {name}")


def _env(container):
    return {e["name"]: e.get("value") for e in container["env"]}


def test_upsert_env_vars_replaces_in_place():
    merged = upsert_env_vars(
        [{"name": "A", "value": "1"}, {"name": "B", "value": "2"}],
        {"name": "A", "value": "x"},
        {"name": "C", "value": "3"},
    )

    assert merged == [
        {"name": "A", "value": "x"},
        {"name": "B", "value": "2"},
        {"name": "C", "value": "3"},
    ]


def test_upsert_argument_list_keys_on_flag():
    merged = upsert_argument_list(["--port=27017", "--auth"], ["--port=27018", "--quiet"])

    assert merged == ["--port=27018", "--auth", "--quiet"]


def test_pod_template_env_wins_over_topology():
    db = MongoDB.from_object(mongodb(
        replicaSet={"name": "rs0"},
        replicas=3,
        podTemplate={"spec": {"env": [{"name": "REPLICA_SET", "value": "custom"}, {"name": "TZ", "value": "UTC"}]}},
    ))
    role = resolve_node_roles(db)[0]

    env = build_env(db, role)

    names = [e["name"] for e in env]
    assert names.index("MONGO_INITDB_ROOT_USERNAME") == 0
    values = {e["name"]: e.get("value") for e in env}
    assert values["REPLICA_SET"] == "custom"
    assert values["TZ"] == "UTC"
    assert values["CLUSTER_AUTH_MODE"] == "keyFile"


def test_standalone_statefulset_shape():
    sts = _build(mongodb())

    assert sts["metadata"]["name"] == "mgo"
    assert sts["spec"]["replicas"] == 1
    assert sts["spec"]["serviceName"] == "mgo-pods"
    assert sts["spec"]["updateStrategy"] == {"type": "OnDelete"}
    container = _container(sts)
    assert container["command"] == ["mongod"]
    assert "--replSet=rs0" not in container["args"]
    assert "AUTH" not in _env(container)
    volume_names = [v["name"] for v in sts["spec"]["template"]["spec"]["volumes"]]
    assert "keydir" not in volume_names
    assert sts["spec"]["template"]["spec"]["initContainers"][0]["image"] == "kubedb/mongodb-init:4.1"


def test_replica_set_mounts_key_file():
    sts = _build(mongodb(replicaSet={"name": "rs0"}, replicas=3))

    container = _container(sts)
    assert "--replSet=rs0" in container["args"]
    assert "--keyFile=/data/configdb/key.txt" in container["args"]
    keydir = [v for v in sts["spec"]["template"]["spec"]["volumes"] if v["name"] == "keydir"]
    assert keydir[0]["secret"]["secretName"] == "mgo-key"
    assert _container(sts)["lifecycle"]["postStart"]["exec"]["command"][2].endswith("-service=mgo-pods")


def test_tls_flags_follow_engine_version():
    new = _container(_build(mongodb(tls=TLS), version="4.2.3"))["args"]
    old = _container(_build(mongodb(tls=TLS), version="4.0.5"))["args"]

    assert "--tlsMode=requireTLS" in new
    assert "--tlsCAFile=/var/run/mongodb/tls/ca.crt" in new
    assert "--sslMode=requireSSL" in old
    assert "--sslPEMKeyFile=/var/run/mongodb/tls/mongo.pem" in old


def test_tls_mounts_certificate_secrets():
    sts = _build(mongodb(tls=TLS))

    secrets = {
        v["name"]: v["secret"]["secretName"]
        for v in sts["spec"]["template"]["spec"]["volumes"]
        if "secret" in v
    }
    assert secrets["client-cert"] == "mgo-client-cert"
    assert secrets["server-cert"] == "mgo-server-cert"


def test_sharded_server_cert_is_per_node():
    sts = _build(sharded_mongodb(tls=TLS), role_index=1)

    secrets = {
        v["name"]: v["secret"]["secretName"]
        for v in sts["spec"]["template"]["spec"]["volumes"]
        if "secret" in v
    }
    assert secrets["server-cert"] == "mgo-sh-shard0-server-cert"


def test_exporter_sidecar_when_monitored():
    sts = _build(mongodb(monitor={"agent": "prometheus.io/builtin", "prometheus": {"exporter": {"port": 9216}}}))

    exporter = _container(sts, "exporter")
    assert exporter["image"] == "kubedb/percona-mongodb-exporter:v0.8.0"
    assert "--web.listen-address=:9216" in exporter["args"]
    assert "--web.telemetry-path=/metrics" in exporter["args"]
    assert exporter["ports"][0]["containerPort"] == 9216


def test_no_exporter_without_monitoring():
    containers = _build(mongodb())["spec"]["template"]["spec"]["containers"]

    assert [c["name"] for c in containers] == ["mongodb"]


def test_shard_index_substituted_in_affinity():
    obj = sharded_mongodb(shards=2)
    obj["spec"]["shardTopology"]["shard"]["podTemplate"] = {
        "spec": {
            "affinity": {
                "podAntiAffinity": {
                    "preferredDuringSchedulingIgnoredDuringExecution": [{
                        "weight": 100,
                        "podAffinityTerm": {
                            "labelSelector": {"matchLabels": {"mongodb.kubedb.com/node.shard": "mgo-sh-shard${SHARD_INDEX}"}},
                            "topologyKey": "kubernetes.io/hostname",
                        },
                    }],
                },
            },
        },
    }

    shard1 = _build(obj, role_index=2)

    terms = shard1["spec"]["template"]["spec"]["affinity"]["podAntiAffinity"][
        "preferredDuringSchedulingIgnoredDuringExecution"
    ]
    labels = terms[0]["podAffinityTerm"]["labelSelector"]["matchLabels"]
    assert labels == {"mongodb.kubedb.com/node.shard": "mgo-sh-shard1"}


def test_router_has_no_data_volume_and_points_at_config_servers():
    obj = sharded_mongodb()
    db = MongoDB.from_object(obj)
    roles = resolve_node_roles(db)
    assert roles[-1].kind == RoleKind.ROUTER

    sts = _build(obj, role_index=len(roles) - 1)

    assert "volumeClaimTemplates" not in sts["spec"]
    assert sts["spec"]["updateStrategy"] == {"type": "RollingUpdate"}
    container = _container(sts)
    assert container["command"] == ["mongos"]
    configdb = [a for a in container["args"] if a.startswith("--configdb=")][0]
    assert configdb == (
        "--configdb=cnfRepSet/"
        "mgo-sh-configsvr-0.mgo-sh-configsvr-pods.demo.svc:27017,"
        "mgo-sh-configsvr-1.mgo-sh-configsvr-pods.demo.svc:27017,"
        "mgo-sh-configsvr-2.mgo-sh-configsvr-pods.demo.svc:27017"
    )
    assert all(m["name"] != "datadir" for m in container["volumeMounts"])


def test_ephemeral_storage_uses_size_limited_empty_dir():
    sts = _build(mongodb(storageType="Ephemeral", storage={"resources": {"requests": {"storage": "2Gi"}}}))

    data = [v for v in sts["spec"]["template"]["spec"]["volumes"] if v["name"] == "datadir"]
    assert data == [{"name": "datadir", "emptyDir": {"sizeLimit": "2Gi"}}]
    assert "volumeClaimTemplates" not in sts["spec"]


def test_volume_claim_template_defaults_access_mode():
    sts = _build(mongodb(storage={"storageClassName": "fast", "resources": {"requests": {"storage": "1Gi"}}}))

    claim = sts["spec"]["volumeClaimTemplates"][0]
    assert claim["metadata"]["name"] == "datadir"
    assert claim["metadata"]["annotations"] == {"volume.beta.kubernetes.io/storage-class": "fast"}
    assert claim["spec"]["accessModes"] == ["ReadWriteOnce"]


def test_builder_is_deterministic():
    assert _build(mongodb(replicaSet={"name": "rs0"}, replicas=3)) == _build(
        mongodb(replicaSet={"name": "rs0"}, replicas=3)
    )


def test_missing_version_is_rejected():
    db = MongoDB.from_object(mongodb())

    with pytest.raises(VersionNotFoundError):
        build_statefulset(db, resolve_node_roles(db)[0], None)


def test_incomplete_version_is_rejected():
    db = MongoDB.from_object(mongodb())
    version = MongoDBVersion.from_object(mongodb_version(exporter=""))

    with pytest.raises(ValidationError):
        build_statefulset(db, resolve_node_roles(db)[0], version)


def test_cluster_auth_follows_whether_tls_is_on():
    without_certs = _container(_build(mongodb(replicaSet={"name": "rs0"}, replicas=3, sslMode="requireSSL")))
    with_certs = _container(_build(mongodb(replicaSet={"name": "rs0"}, replicas=3, tls=TLS)))

    assert "--clusterAuthMode=keyFile" in without_certs["args"]
    assert not any(arg.startswith("--tls") for arg in without_certs["args"])
    assert "--clusterAuthMode=x509" in with_certs["args"]

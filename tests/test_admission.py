"""
Tests for the admission contract.
"""
import pytest

from dbaas_operator.core.admission import validate_create, validate_delete, validate_spec, validate_update
from dbaas_operator.exceptions import AdmissionDeniedError, ValidationError, VersionNotFoundError
from dbaas_operator.models.database import MongoDB
from dbaas_operator.models.version import MongoDBVersion
from tests.fakes import mongodb, mongodb_version, sharded_mongodb

VERSION = MongoDBVersion.from_object(mongodb_version())


def _db(**spec) -> MongoDB:
    return MongoDB.from_object(mongodb(**spec))


def test_valid_standalone_passes():
    validate_spec(_db(), VERSION)


def test_valid_sharded_passes():
    validate_spec(MongoDB.from_object(sharded_mongodb()), VERSION)


@pytest.mark.parametrize("spec, message", [
    ({"replicas": 3}, "invalid for 'MongoDB Standalone' instance"),
    ({"replicaSet": {"name": "rs0"}, "replicas": 0}, "Must be greater than zero"),
    ({"storage": None}, "'spec.storage' is missing"),
    ({"storageType": "Ephemeral", "storage": None, "terminationPolicy": "Halt"}, "can not be used for 'Ephemeral'"),
    ({"halted": True}, "requires 'spec.terminationPolicy: Halt'"),
    ({"sslMode": "disabled", "clusterAuthMode": "x509"}, "can't have disabled"),
    ({"tls": {}, "sslMode": "allowSSL", "clusterAuthMode": "sendX509"}, "can't have allowSSL"),
    ({"sslMode": "disabled", "clusterAuthMode": "sendKeyFile"}, "can't have disabled"),
    (
        {"replicaSet": {"name": "rs0"}, "replicas": 3, "sslMode": "requireSSL"},
        "mongodb.spec.tls is required when mongodb.spec.sslMode is set to requireSSL",
    ),
    (
        {"podTemplate": {"spec": {"env": [{"name": "MONGO_INITDB_ROOT_PASSWORD", "value": "x"}]}}},
        "MONGO_INITDB_ROOT_PASSWORD is forbidden",
    ),
])
def test_invalid_specs_are_rejected(spec, message):
    with pytest.raises(ValidationError) as exc_info:
        validate_spec(_db(**spec), VERSION)

    assert message in exc_info.value.message


def test_ephemeral_without_storage_is_fine():
    validate_spec(_db(storageType="Ephemeral", storage=None), VERSION)


@pytest.mark.parametrize("mutate, message", [
    (lambda top: top["shard"].update(shards=0), "shard.shards 0 invalid"),
    (lambda top: top["mongos"].update(replicas=0), "mongos.replicas 0 invalid"),
    (lambda top: top["configServer"].pop("storage"), "configServer.storage' is missing"),
])
def test_invalid_shard_topologies(mutate, message):
    obj = sharded_mongodb()
    mutate(obj["spec"]["shardTopology"])

    with pytest.raises(ValidationError) as exc_info:
        validate_spec(MongoDB.from_object(obj), VERSION)

    assert message in exc_info.value.message


def test_sharded_rejects_top_level_replicas():
    with pytest.raises(ValidationError):
        validate_spec(MongoDB.from_object(sharded_mongodb(replicas=3)), VERSION)


def test_version_checks():
    with pytest.raises(VersionNotFoundError):
        validate_spec(_db(), None)
    with pytest.raises(ValidationError, match="deprecated"):
        validate_spec(_db(), MongoDBVersion.from_object(mongodb_version(deprecated=True)))
    with pytest.raises(ValidationError, match="invalid mongodbVersion"):
        validate_spec(_db(), MongoDBVersion.from_object(mongodb_version(db="")))
    with pytest.raises(ValidationError, match="is missing"):
        validate_spec(_db(version=""), VERSION)


def test_create_wraps_validation_errors():
    with pytest.raises(AdmissionDeniedError) as exc_info:
        validate_create(_db(replicas=2), VERSION)

    assert exc_info.value.details["violations"]


def test_update_rejects_immutable_changes():
    old = _db(replicaSet={"name": "rs0"}, authSecret={"name": "creds"})
    new = _db(replicaSet={"name": "rs1"}, authSecret={"name": "other"}, storageType="Ephemeral")

    with pytest.raises(AdmissionDeniedError) as exc_info:
        validate_update(old, new)

    assert exc_info.value.details["violations"] == [
        "spec.authSecret",
        "spec.replicaSet.name",
        "spec.storageType",
    ]


def test_update_allows_mutable_changes_and_defaulting():
    old = _db(replicaSet={"name": "rs0"}, replicas=3, storageType=None)
    new = _db(
        replicaSet={"name": "rs0"},
        replicas=5,
        storageType="Durable",
        authSecret={"name": "mgo-auth"},
        init={"waitForInitialRestore": True},
    )

    validate_update(old, new)


def test_update_rejects_shard_prefix_change():
    old = MongoDB.from_object(sharded_mongodb())
    changed = sharded_mongodb()
    changed["spec"]["shardTopology"]["shard"]["prefix"] = "part"
    old_with_prefix = sharded_mongodb()
    old_with_prefix["spec"]["shardTopology"]["shard"]["prefix"] = "shard"

    validate_update(old, MongoDB.from_object(changed))
    with pytest.raises(AdmissionDeniedError):
        validate_update(MongoDB.from_object(old_with_prefix), MongoDB.from_object(changed))


def test_delete_respects_do_not_terminate():
    validate_delete(_db(terminationPolicy="WipeOut"))

    with pytest.raises(AdmissionDeniedError):
        validate_delete(_db(terminationPolicy="DoNotTerminate"))

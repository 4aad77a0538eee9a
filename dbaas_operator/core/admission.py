"""
Admission contract for MongoDB objects.

These checks are what an admission webhook would enforce before an object
is persisted. The reconciler runs ``validate_spec`` itself on every pass so
that an object which slipped past admission still ends up ``Failed`` with a
reason instead of producing broken workloads.
"""
from typing import Any, Dict, List, Optional

from dbaas_operator.config.logging import get_logger
from dbaas_operator.exceptions import (
    AdmissionDeniedError,
    ValidationError,
    VersionNotFoundError,
)
from dbaas_operator.models.database import (
    ClusterAuthMode,
    MongoDB,
    PodTemplateSpec,
    SSLMode,
    StorageType,
    TerminationPolicy,
)
from dbaas_operator.models.version import MongoDBVersion

logger = get_logger(__name__)

# Owned by the operator; users must not set them through the pod template
FORBIDDEN_ENV_VARS = (
    "MONGO_INITDB_ROOT_USERNAME",
    "MONGO_INITDB_ROOT_PASSWORD",
)


def _check_env(template: Optional[PodTemplateSpec], path: str) -> None:
    if template is None:
        return
    for var in template.spec.env:
        if var.get("name") in FORBIDDEN_ENV_VARS:
            raise ValidationError(
                f"environment variable {var['name']} is forbidden to use in {path}",
                details={"field": path, "env": var["name"]},
            )


def _check_storage(storage_type: StorageType, storage: Optional[Dict[str, Any]], path: str) -> None:
    if storage_type == StorageType.DURABLE and not storage:
        raise ValidationError(f"'{path}' is missing for durable storage type", details={"field": path})


def _check_topology(db: MongoDB) -> None:
    spec = db.spec
    top = spec.shard_topology
    if top is not None:
        if spec.replicas is not None:
            raise ValidationError("doesn't support 'spec.replicas' when spec.shardTopology is set")
        if spec.pod_template is not None:
            raise ValidationError("doesn't support 'spec.podTemplate' when spec.shardTopology is set")
        if spec.storage is not None:
            raise ValidationError("doesn't support 'spec.storage' when spec.shardTopology is set")
        for path, value in (
            ("spec.shardTopology.shard.shards", top.shard.shards),
            ("spec.shardTopology.shard.replicas", top.shard.replicas),
            ("spec.shardTopology.configServer.replicas", top.config_server.replicas),
            ("spec.shardTopology.mongos.replicas", top.mongos.replicas),
        ):
            if value < 1:
                raise ValidationError(
                    f"{path} {value} invalid. Must be greater than zero when spec.shardTopology is set",
                    details={"field": path},
                )
        _check_env(top.shard.pod_template, "spec.shardTopology.shard.podTemplate")
        _check_env(top.config_server.pod_template, "spec.shardTopology.configServer.podTemplate")
        _check_env(top.mongos.pod_template, "spec.shardTopology.mongos.podTemplate")
        _check_storage(db.storage_type(), top.shard.storage, "spec.shardTopology.shard.storage")
        _check_storage(db.storage_type(), top.config_server.storage, "spec.shardTopology.configServer.storage")
        return

    replicas = 1 if spec.replicas is None else spec.replicas
    if replicas < 1:
        raise ValidationError(
            f'spec.replicas "{replicas}" invalid. Must be greater than zero in non-shardTopology',
            details={"field": "spec.replicas"},
        )
    if spec.replica_set is None and replicas != 1:
        raise ValidationError(
            f"spec.replicas \"{replicas}\" invalid for 'MongoDB Standalone' instance. Value must be one",
            details={"field": "spec.replicas"},
        )
    _check_env(spec.pod_template, "spec.podTemplate")
    _check_storage(db.storage_type(), spec.storage, "spec.storage")


def _check_version(db: MongoDB, version: Optional[MongoDBVersion]) -> None:
    if not db.spec.version:
        raise ValidationError("'spec.version' is missing", details={"field": "spec.version"})
    if version is None:
        raise VersionNotFoundError(db.spec.version)
    if version.spec.deprecated:
        raise ValidationError(
            f"mongoDB {db.key} is using deprecated version {version.name}. Skipped processing",
            details={"version": version.name},
        )
    missing = version.missing_images()
    if missing:
        raise ValidationError(
            f"mongodb {db.key} is using invalid mongodbVersion {version.name}",
            details={"version": version.name, "missing": missing},
        )


def validate_spec(db: MongoDB, version: Optional[MongoDBVersion]) -> None:
    """
    Structural validation of a database spec against its version metadata.

    Raises:
        ValidationError: on the first problem found
        VersionNotFoundError: if ``version`` is None
    """
    _check_version(db, version)
    _check_topology(db)

    ssl_mode = db.effective_ssl_mode()
    cluster_auth = db.spec.cluster_auth_mode
    if cluster_auth in (ClusterAuthMode.X509, ClusterAuthMode.SEND_X509) and ssl_mode in (
        SSLMode.DISABLED,
        SSLMode.ALLOW,
    ):
        raise ValidationError(
            f"can't have {ssl_mode.value} set to mongodb.spec.sslMode when "
            f"mongodb.spec.clusterAuthMode is set to {cluster_auth.value}"
        )
    if cluster_auth == ClusterAuthMode.SEND_KEY_FILE and ssl_mode == SSLMode.DISABLED:
        raise ValidationError(
            f"can't have {ssl_mode.value} set to mongodb.spec.sslMode when "
            f"mongodb.spec.clusterAuthMode is set to {cluster_auth.value}"
        )
    if ssl_mode != SSLMode.DISABLED and db.spec.tls is None:
        raise ValidationError(
            f"mongodb.spec.tls is required when mongodb.spec.sslMode is set to {ssl_mode.value}",
            details={"field": "spec.tls"},
        )

    policy = db.termination_policy()
    if db.storage_type() == StorageType.EPHEMERAL and policy == TerminationPolicy.HALT:
        raise ValidationError("'spec.terminationPolicy: Halt' can not be used for 'Ephemeral' storage")
    if db.spec.halted and policy != TerminationPolicy.HALT:
        raise ValidationError(
            "'spec.halted' requires 'spec.terminationPolicy: Halt'",
            details={"field": "spec.halted", "policy": policy.value},
        )


def validate_create(db: MongoDB, version: Optional[MongoDBVersion]) -> None:
    """
    Raises:
        AdmissionDeniedError: if the spec does not validate
    """
    try:
        validate_spec(db, version)
    except ValidationError as e:
        logger.info("admission_denied", operation="create", namespace=db.namespace, name=db.name, error=e.message)
        raise AdmissionDeniedError(e.message, violations=[e.message]) from e


def _immutable_fields(db: MongoDB) -> Dict[str, Any]:
    spec = db.spec
    fields: Dict[str, Any] = {
        "spec.storageType": spec.storage_type,
        "spec.storage": spec.storage,
        "spec.authSecret": spec.auth_secret.name if spec.auth_secret else None,
        "spec.replicaSet.name": spec.replica_set.name if spec.replica_set else None,
    }
    if spec.tls is not None:
        for cert in spec.tls.certificates:
            fields[f"spec.tls.certificates[{cert.alias}].secretName"] = cert.secret_name
    top = spec.shard_topology
    if top is not None:
        fields["spec.shardTopology.shard.storage"] = top.shard.storage
        fields["spec.shardTopology.configServer.storage"] = top.config_server.storage
        fields["spec.shardTopology.shard.prefix"] = top.shard.prefix
        fields["spec.shardTopology.configServer.prefix"] = top.config_server.prefix
        fields["spec.shardTopology.mongos.prefix"] = top.mongos.prefix
    return fields


def validate_update(old: MongoDB, new: MongoDB) -> None:
    """
    Reject changes to fields that cannot change once set.

    A field that was unset before may be set by the update; that is how
    defaults get filled in.

    Raises:
        AdmissionDeniedError: listing every changed immutable field
    """
    before = _immutable_fields(old)
    after = _immutable_fields(new)
    violations: List[str] = sorted(
        field for field, value in before.items() if value is not None and after.get(field) != value
    )
    if violations:
        logger.info("admission_denied", operation="update", namespace=new.namespace, name=new.name, fields=violations)
        raise AdmissionDeniedError(
            "At least one of the following was changed: " + ", ".join(violations),
            violations=violations,
        )


def validate_delete(db: MongoDB) -> None:
    """
    Raises:
        AdmissionDeniedError: if the termination policy is DoNotTerminate
    """
    if db.termination_policy() == TerminationPolicy.DO_NOT_TERMINATE:
        raise AdmissionDeniedError(
            f'mongodb "{db.key}" can\'t be terminated. To delete, change spec.terminationPolicy'
        )

"""
Builders for the non-workload objects a database owns:
governing and client Services, the stats Service, RBAC and generated Secrets.
"""
import base64
import secrets
from typing import Any, Dict, List, Optional, Tuple

from dbaas_operator.core.topology import NodeRole
from dbaas_operator.core.workload import DB_PORT_NAME, EXPORTER_PORT_NAME, KEY_FILE, compact
from dbaas_operator.models.database import (
    GROUP,
    MONGODB_PORT,
    PLURAL,
    MongoDB,
)

AUTH_USERNAME = "root"
PASSWORD_LENGTH = 16
KEY_FILE_BYTES = 756

# Fields copied verbatim from spec.serviceTemplate.spec onto the client Service
_SERVICE_TEMPLATE_FIELDS = (
    "type",
    "clusterIP",
    "externalIPs",
    "loadBalancerIP",
    "loadBalancerSourceRanges",
    "externalTrafficPolicy",
    "healthCheckNodePort",
)


def _metadata(db: MongoDB, name: str, labels: Dict[str, str], annotations: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return compact({
        "name": name,
        "namespace": db.namespace,
        "labels": dict(labels),
        "annotations": dict(annotations or {}),
        "ownerReferences": [db.owner_reference()],
    })


def merge_service_ports(base: List[Dict[str, Any]], overrides: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """User ports replace defaults with the same name; others are appended."""
    merged = [dict(p) for p in base]
    index = {p.get("name"): i for i, p in enumerate(merged)}
    for port in overrides:
        name = port.get("name")
        if name in index:
            merged[index[name]] = {**merged[index[name]], **port}
        else:
            merged.append(dict(port))
    return merged


def build_governing_service(db: MongoDB, role: NodeRole) -> Dict[str, Any]:
    """Headless Service that gives each pod of ``role`` a stable DNS name."""
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(db, role.governing_service_name, role.labels),
        "spec": {
            "selector": dict(role.selectors),
            "type": "ClusterIP",
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "ports": [{"name": DB_PORT_NAME, "port": MONGODB_PORT}],
        },
    }


def build_client_service(db: MongoDB) -> Dict[str, Any]:
    """Client-facing Service. Points at the routers of a sharded cluster."""
    template = db.spec.service_template
    template_spec = template.spec if template else {}
    annotations = template.metadata.annotations if template else {}

    selector = db.mongos_selectors() if db.is_sharded else db.offshoot_selectors()
    default_port = {
        "name": DB_PORT_NAME,
        "protocol": "TCP",
        "port": MONGODB_PORT,
        "targetPort": DB_PORT_NAME,
    }
    spec: Dict[str, Any] = {
        "selector": selector,
        "ports": merge_service_ports([default_port], template_spec.get("ports", [])),
    }
    for field in _SERVICE_TEMPLATE_FIELDS:
        value = template_spec.get(field)
        if value:
            spec[field] = value

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(db, db.offshoot_name(), db.offshoot_labels(), annotations),
        "spec": spec,
    }


def build_stats_service(db: MongoDB) -> Dict[str, Any]:
    selector = db.mongos_selectors() if db.is_sharded else db.offshoot_selectors()
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(db, db.stats_service_name(), db.stats_service_labels()),
        "spec": {
            "selector": selector,
            "ports": [{
                "name": EXPORTER_PORT_NAME,
                "protocol": "TCP",
                "port": db.exporter_port(),
                "targetPort": EXPORTER_PORT_NAME,
            }],
        },
    }


def build_rbac(db: MongoDB) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
    """ServiceAccount, Role and RoleBinding used by the database pods."""
    labels = db.offshoot_labels()
    sa_name = db.service_account_name()
    role_name = db.offshoot_name()

    service_account = {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": _metadata(db, sa_name, labels),
    }
    role = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": _metadata(db, role_name, labels),
        "rules": [
            {
                "apiGroups": [GROUP],
                "resources": [PLURAL],
                "resourceNames": [db.name],
                "verbs": ["get"],
            },
            {
                "apiGroups": [""],
                "resources": ["services", "endpoints", "pods"],
                "verbs": ["get", "list", "watch"],
            },
        ],
    }
    role_binding = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": _metadata(db, role_name, labels),
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "Role",
            "name": role_name,
        },
        "subjects": [{
            "kind": "ServiceAccount",
            "name": sa_name,
            "namespace": db.namespace,
        }],
    }
    return service_account, role, role_binding


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def build_auth_secret(db: MongoDB, password: Optional[str] = None) -> Dict[str, Any]:
    """Root credential secret with a freshly generated password."""
    password = password or secrets.token_urlsafe(PASSWORD_LENGTH)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "kubernetes.io/basic-auth",
        "metadata": _metadata(db, db.auth_secret_name(), db.offshoot_labels()),
        "data": {
            "username": _b64(AUTH_USERNAME),
            "password": _b64(password),
        },
    }


def build_key_file_secret(db: MongoDB, key: Optional[str] = None) -> Dict[str, Any]:
    """Shared keyfile used for internal member authentication."""
    key = key or base64.b64encode(secrets.token_bytes(KEY_FILE_BYTES)).decode("ascii")
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": _metadata(db, db.key_file_secret_name(), db.offshoot_labels()),
        "data": {KEY_FILE: _b64(key)},
    }

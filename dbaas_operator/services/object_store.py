"""
Object store collaborator.

``ObjectStore`` is the narrow interface the reconciler, termination engine
and version catalog talk to. Objects are plain camelCase dicts exactly as the
API server serves them. ``KubernetesObjectStore`` implements it on top of
kubernetes_asyncio; tests use an in-memory fake.

Error contract:
- reads of a missing object return None
- deleting a missing object returns False
- every other API failure surfaces as ``TransientStoreError`` (after
  retryable status codes were retried in place)
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
from kubernetes_asyncio import client, watch
from kubernetes_asyncio.client import ApiException

from dbaas_operator.config.logging import get_logger
from dbaas_operator.exceptions import TransientStoreError
from dbaas_operator.models.database import GROUP, KIND, PLURAL, VERSION
from dbaas_operator.models.version import CATALOG_GROUP, CATALOG_PLURAL, CATALOG_VERSION
from dbaas_operator.utils.retry import retry_on_k8s_error

logger = get_logger(__name__)

MERGE_PATCH = "application/merge-patch+json"

# Kinds handled by the store
MONGODB = KIND
MONGODB_VERSION = "MongoDBVersion"
STATEFULSET = "StatefulSet"
SERVICE = "Service"
SERVICE_ACCOUNT = "ServiceAccount"
ROLE = "Role"
ROLE_BINDING = "RoleBinding"
SECRET = "Secret"
PVC = "PersistentVolumeClaim"
POD = "Pod"
EVENT = "Event"


def label_selector(labels: Optional[Dict[str, str]]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class ObjectStore(ABC):
    """Key-value object store with optimistic concurrency."""

    @abstractmethod
    async def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: str = "",
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """List objects; an empty namespace lists across all namespaces."""

    @abstractmethod
    async def create(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def patch(
        self,
        kind: str,
        namespace: str,
        name: str,
        patch: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply a JSON merge patch. When ``resource_version`` is given the
        patch fails with a 409 conflict if the object changed meanwhile.
        """

    @abstractmethod
    async def patch_status(
        self, kind: str, namespace: str, name: str, status: Dict[str, Any]
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def delete(self, kind: str, namespace: str, name: str) -> bool:
        ...

    async def watch(
        self,
        kind: str,
        namespace: str = "",
        resource_version: Optional[str] = None,
        timeout_seconds: int = 300,
    ) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """Yield ``(event_type, object)`` pairs until the server closes the stream."""
        raise NotImplementedError
        yield  # pragma: no cover


# kind -> (api attribute, method suffix)
_TYPED_KINDS = {
    STATEFULSET: ("apps_api", "stateful_set"),
    SERVICE: ("core_api", "service"),
    SERVICE_ACCOUNT: ("core_api", "service_account"),
    SECRET: ("core_api", "secret"),
    PVC: ("core_api", "persistent_volume_claim"),
    POD: ("core_api", "pod"),
    EVENT: ("core_api", "event"),
    ROLE: ("rbac_api", "role"),
    ROLE_BINDING: ("rbac_api", "role_binding"),
}

# kind -> (group, version, plural, namespaced)
_CUSTOM_KINDS = {
    MONGODB: (GROUP, VERSION, PLURAL, True),
    MONGODB_VERSION: (CATALOG_GROUP, CATALOG_VERSION, CATALOG_PLURAL, False),
}


def _translate(e: Exception, action: str, kind: str, name: str = "") -> TransientStoreError:
    status = getattr(e, "status", None)
    reason = getattr(e, "reason", None) or str(e)
    return TransientStoreError(
        f"{action} {kind} {name}: {reason}".strip(),
        status=status,
        details={"kind": kind, "name": name, "status": status},
    )


class KubernetesObjectStore(ObjectStore):
    """ObjectStore backed by the Kubernetes API server."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core_api = client.CoreV1Api(api_client)
        self.apps_api = client.AppsV1Api(api_client)
        self.rbac_api = client.RbacAuthorizationV1Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)

    async def close(self):
        if self.api_client:
            await self.api_client.close()

    def _serialize(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def _typed(self, kind: str, verb: str, namespaced: bool = True):
        api_attr, suffix = _TYPED_KINDS[kind]
        api = getattr(self, api_attr)
        if namespaced:
            return getattr(api, f"{verb}_namespaced_{suffix}")
        return getattr(api, f"{verb}_{suffix}_for_all_namespaces")

    @retry_on_k8s_error()
    async def _get(self, kind: str, namespace: str, name: str):
        if kind in _CUSTOM_KINDS:
            group, version, plural, namespaced = _CUSTOM_KINDS[kind]
            if namespaced:
                return await self.custom_api.get_namespaced_custom_object(
                    group, version, namespace, plural, name
                )
            return await self.custom_api.get_cluster_custom_object(group, version, plural, name)
        return await self._typed(kind, "read")(name, namespace)

    async def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._serialize(await self._get(kind, namespace, name))
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e, "get", kind, name)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise _translate(e, "get", kind, name)

    @retry_on_k8s_error()
    async def _list(self, kind: str, namespace: str, selector: Optional[str]):
        kwargs = {"label_selector": selector} if selector else {}
        if kind in _CUSTOM_KINDS:
            group, version, plural, namespaced = _CUSTOM_KINDS[kind]
            if namespaced and namespace:
                return await self.custom_api.list_namespaced_custom_object(
                    group, version, namespace, plural, **kwargs
                )
            return await self.custom_api.list_cluster_custom_object(group, version, plural, **kwargs)
        if namespace:
            return await self._typed(kind, "list")(namespace, **kwargs)
        return await self._typed(kind, "list", namespaced=False)(**kwargs)

    async def list(
        self,
        kind: str,
        namespace: str = "",
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        try:
            result = self._serialize(await self._list(kind, namespace, label_selector(labels)))
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise _translate(e, "list", kind)
        return result.get("items") or []

    @retry_on_k8s_error()
    async def _create(self, kind: str, namespace: str, body: Dict[str, Any]):
        if kind in _CUSTOM_KINDS:
            group, version, plural, _ = _CUSTOM_KINDS[kind]
            return await self.custom_api.create_namespaced_custom_object(
                group, version, namespace, plural, body
            )
        return await self._typed(kind, "create")(namespace, body)

    async def create(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = obj.get("metadata", {})
        try:
            created = await self._create(kind, meta.get("namespace", ""), obj)
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise _translate(e, "create", kind, meta.get("name", ""))
        return self._serialize(created)

    @retry_on_k8s_error()
    async def _patch(self, kind: str, namespace: str, name: str, body: Dict[str, Any]):
        if kind in _CUSTOM_KINDS:
            group, version, plural, _ = _CUSTOM_KINDS[kind]
            return await self.custom_api.patch_namespaced_custom_object(
                group, version, namespace, plural, name, body,
                _content_type=MERGE_PATCH,
            )
        return await self._typed(kind, "patch")(name, namespace, body, _content_type=MERGE_PATCH)

    async def patch(
        self,
        kind: str,
        namespace: str,
        name: str,
        patch: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = dict(patch)
        if resource_version:
            body["metadata"] = {**body.get("metadata", {}), "resourceVersion": resource_version}
        try:
            patched = await self._patch(kind, namespace, name, body)
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise _translate(e, "patch", kind, name)
        return self._serialize(patched)

    @retry_on_k8s_error()
    async def _patch_status(self, kind: str, namespace: str, name: str, body: Dict[str, Any]):
        group, version, plural, _ = _CUSTOM_KINDS[kind]
        return await self.custom_api.patch_namespaced_custom_object_status(
            group, version, namespace, plural, name, body,
            _content_type=MERGE_PATCH,
        )

    async def patch_status(
        self, kind: str, namespace: str, name: str, status: Dict[str, Any]
    ) -> Dict[str, Any]:
        try:
            patched = await self._patch_status(kind, namespace, name, {"status": status})
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise _translate(e, "patch status of", kind, name)
        return self._serialize(patched)

    @retry_on_k8s_error()
    async def _delete(self, kind: str, namespace: str, name: str):
        body = client.V1DeleteOptions(propagation_policy="Background")
        if kind in _CUSTOM_KINDS:
            group, version, plural, _ = _CUSTOM_KINDS[kind]
            return await self.custom_api.delete_namespaced_custom_object(
                group, version, namespace, plural, name, body=body
            )
        return await self._typed(kind, "delete")(name, namespace, body=body)

    async def delete(self, kind: str, namespace: str, name: str) -> bool:
        try:
            await self._delete(kind, namespace, name)
        except ApiException as e:
            if e.status == 404:
                return False
            raise _translate(e, "delete", kind, name)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise _translate(e, "delete", kind, name)
        return True

    async def watch(
        self,
        kind: str,
        namespace: str = "",
        resource_version: Optional[str] = None,
        timeout_seconds: int = 300,
    ) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        kwargs: Dict[str, Any] = {"timeout_seconds": timeout_seconds}
        if resource_version:
            kwargs["resource_version"] = resource_version

        if kind in _CUSTOM_KINDS:
            group, version, plural, namespaced = _CUSTOM_KINDS[kind]
            if namespaced and namespace:
                func, args = self.custom_api.list_namespaced_custom_object, (group, version, namespace, plural)
            else:
                func, args = self.custom_api.list_cluster_custom_object, (group, version, plural)
        elif namespace:
            func, args = self._typed(kind, "list"), (namespace,)
        else:
            func, args = self._typed(kind, "list", namespaced=False), ()

        w = watch.Watch()
        try:
            async for event in w.stream(func, *args, **kwargs):
                if isinstance(event, str):
                    continue
                event_type = event.get("type", "")
                raw = event.get("raw_object") or self._serialize(event.get("object"))
                if event_type == "ERROR":
                    code = raw.get("code") if isinstance(raw, dict) else None
                    raise TransientStoreError(f"watch {kind}: {raw}", status=code)
                yield event_type, raw
        except ApiException as e:
            raise _translate(e, "watch", kind)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise _translate(e, "watch", kind)
        finally:
            w.stop()
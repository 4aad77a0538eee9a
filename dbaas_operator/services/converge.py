"""
Converge: get-or-create, else diff-and-patch.

The desired object is overlaid onto the live one so that fields set by the
API server or by other controllers survive, then only the difference is sent
as a JSON merge patch. Reconciling an unchanged object therefore performs no
write at all.
"""
import copy
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from dbaas_operator.config.logging import get_logger
from dbaas_operator.exceptions import NamingCollisionError, TransientStoreError
from dbaas_operator.models.database import MongoDB
from dbaas_operator.services.object_store import ObjectStore

logger = get_logger(__name__)


class Verb(str, Enum):
    CREATED = "created"
    PATCHED = "patched"
    UNCHANGED = "unchanged"


def _by_name(item: Any) -> Optional[str]:
    if isinstance(item, dict):
        return item.get("name")
    return None


def _by_metadata_name(item: Any) -> Optional[str]:
    if isinstance(item, dict):
        return item.get("metadata", {}).get("name")
    return None


# Lists merged element-wise by key instead of being replaced wholesale
NAMED_LISTS: Dict[str, Callable[[Any], Optional[str]]] = {
    "containers": _by_name,
    "initContainers": _by_name,
    "volumes": _by_name,
    "volumeMounts": _by_name,
    "ports": _by_name,
    "volumeClaimTemplates": _by_metadata_name,
}


def ensure_owner_reference(refs: Optional[List[Dict[str, Any]]], owner: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Add ``owner`` to ``refs`` or refresh the entry with the same uid."""
    result = [dict(r) for r in refs or []]
    for i, ref in enumerate(result):
        if ref.get("uid") == owner.get("uid"):
            result[i] = {**ref, **owner}
            return result
    result.append(dict(owner))
    return result


def remove_owner_reference(refs: Optional[List[Dict[str, Any]]], uid: Optional[str]) -> List[Dict[str, Any]]:
    return [dict(r) for r in refs or [] if r.get("uid") != uid]


def _merge_named_list(live: List[Any], desired: List[Any], key: Callable[[Any], Optional[str]]) -> List[Any]:
    desired_keys = [key(item) for item in desired]
    if None in desired_keys:
        return copy.deepcopy(desired)
    live_by_key = {key(item): item for item in live if key(item) is not None}
    merged = [
        overlay(live_by_key[k], item) if k in live_by_key else copy.deepcopy(item)
        for k, item in zip(desired_keys, desired)
    ]
    wanted = set(desired_keys)
    merged.extend(copy.deepcopy(item) for item in live if key(item) not in wanted)
    return merged


def overlay(live: Any, desired: Any, field: Optional[str] = None) -> Any:
    """
    Return a copy of ``live`` with every field of ``desired`` applied.

    Dicts merge recursively. Lists named in ``NAMED_LISTS`` merge by key
    and other lists are replaced. Owner references are ensured rather than
    replaced.
    """
    if isinstance(live, dict) and isinstance(desired, dict):
        result = copy.deepcopy(live)
        for k, value in desired.items():
            if k == "ownerReferences":
                refs = result.get(k)
                for owner in value:
                    refs = ensure_owner_reference(refs, owner)
                result[k] = refs
            elif k in result:
                result[k] = overlay(result[k], value, k)
            else:
                result[k] = copy.deepcopy(value)
        return result
    if isinstance(live, list) and isinstance(desired, list) and field in NAMED_LISTS:
        return _merge_named_list(live, desired, NAMED_LISTS[field])
    return copy.deepcopy(desired)


def json_merge_diff(live: Dict[str, Any], merged: Dict[str, Any]) -> Dict[str, Any]:
    """Merge patch that turns ``live`` into ``merged``. Never removes keys."""
    patch: Dict[str, Any] = {}
    for k, value in merged.items():
        if k not in live:
            patch[k] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(live[k], dict):
            sub = json_merge_diff(live[k], value)
            if sub:
                patch[k] = sub
        elif value != live[k]:
            patch[k] = copy.deepcopy(value)
    return patch


def check_ownership_labels(kind: str, live: Dict[str, Any], owner: MongoDB) -> None:
    """
    Refuse to touch an object that exists under a managed name but does
    not carry this database's identifying labels.

    Raises:
        NamingCollisionError: if the labels are missing or name another database
    """
    labels = live.get("metadata", {}).get("labels")
    if not owner.owns_labels(labels):
        meta = live.get("metadata", {})
        raise NamingCollisionError(kind, meta.get("namespace", owner.namespace), meta.get("name", ""))


async def converge(
    store: ObjectStore,
    kind: str,
    desired: Dict[str, Any],
    owner: MongoDB,
    check_collision: bool = True,
) -> Tuple[Verb, Dict[str, Any]]:
    """
    Bring the stored object in line with ``desired``.

    Returns:
        The verb describing what happened and the resulting object

    Raises:
        NamingCollisionError: if a foreign object occupies the name
        TransientStoreError: on store failures, including conflicts
    """
    meta = desired["metadata"]
    namespace, name = meta.get("namespace", ""), meta["name"]

    live = await store.get(kind, namespace, name)
    if live is None:
        try:
            created = await store.create(kind, desired)
            logger.info("object_created", kind=kind, namespace=namespace, name=name)
            return Verb.CREATED, created
        except TransientStoreError as e:
            if not e.is_conflict:
                raise
            # Created concurrently; fall through to the patch path
            live = await store.get(kind, namespace, name)
            if live is None:
                raise

    if check_collision:
        check_ownership_labels(kind, live, owner)

    merged = overlay(live, desired)
    patch = json_merge_diff(live, merged)
    if not patch:
        return Verb.UNCHANGED, live

    patched = await store.patch(
        kind,
        namespace,
        name,
        patch,
        resource_version=live.get("metadata", {}).get("resourceVersion"),
    )
    logger.info("object_patched", kind=kind, namespace=namespace, name=name, fields=sorted(patch))
    return Verb.PATCHED, patched


async def ensure_exists(store: ObjectStore, kind: str, desired: Dict[str, Any]) -> Tuple[Verb, Dict[str, Any]]:
    """Create ``desired`` if nothing exists under its name. Never patches."""
    meta = desired["metadata"]
    namespace, name = meta.get("namespace", ""), meta["name"]
    live = await store.get(kind, namespace, name)
    if live is not None:
        return Verb.UNCHANGED, live
    try:
        created = await store.create(kind, desired)
    except TransientStoreError as e:
        if not e.is_conflict:
            raise
        live = await store.get(kind, namespace, name)
        if live is None:
            raise
        return Verb.UNCHANGED, live
    logger.info("object_created", kind=kind, namespace=namespace, name=name)
    return Verb.CREATED, created


def combine_verbs(verbs: List[Verb]) -> Verb:
    """Created if everything was created, unchanged if nothing changed, else patched."""
    if verbs and all(v == Verb.CREATED for v in verbs):
        return Verb.CREATED
    if all(v == Verb.UNCHANGED for v in verbs):
        return Verb.UNCHANGED
    return Verb.PATCHED

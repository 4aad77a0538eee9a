"""
Tests for get-or-create-or-patch.
"""
import pytest

from dbaas_operator.exceptions import NamingCollisionError
from dbaas_operator.models.database import MongoDB
from dbaas_operator.services.converge import (
    Verb,
    combine_verbs,
    converge,
    ensure_exists,
    json_merge_diff,
    overlay,
    remove_owner_reference,
)
from dbaas_operator.services.object_store import MONGODB, SECRET, SERVICE
from tests.fakes import FakeObjectStore, mongodb


@pytest.fixture
def owner():
    store = FakeObjectStore()
    return MongoDB.from_object(store.put(MONGODB, mongodb()))


def _service(owner, port=27017, **labels):
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": "mgo",
            "namespace": "demo",
            "labels": {**owner.offshoot_labels(), **labels},
            "ownerReferences": [owner.owner_reference()],
        },
        "spec": {"ports": [{"name": "db", "port": port}]},
    }


def test_overlay_keeps_live_only_fields():
    live = {"spec": {"clusterIP": "10.0.0.1", "ports": [{"name": "db", "port": 1}]}}
    desired = {"spec": {"ports": [{"name": "db", "port": 2}]}}

    assert overlay(live, desired) == {"spec": {"clusterIP": "10.0.0.1", "ports": [{"name": "db", "port": 2}]}}


def test_overlay_merges_named_lists_by_name():
    live = {"containers": [{"name": "a", "image": "x", "tty": True}, {"name": "sidecar"}]}
    desired = {"containers": [{"name": "a", "image": "y"}]}

    merged = overlay(live, desired)

    assert merged["containers"] == [{"name": "a", "image": "y", "tty": True}, {"name": "sidecar"}]


def test_overlay_ensures_owner_references():
    live = {"metadata": {"ownerReferences": [{"uid": "other", "kind": "Thing"}]}}
    desired = {"metadata": {"ownerReferences": [{"uid": "mine", "kind": "MongoDB"}]}}

    refs = overlay(live, desired)["metadata"]["ownerReferences"]

    assert [r["uid"] for r in refs] == ["other", "mine"]
    assert remove_owner_reference(refs, "mine") == [{"uid": "other", "kind": "Thing"}]


def test_json_merge_diff_only_reports_changes():
    live = {"a": 1, "b": {"c": 2, "d": 3}}

    assert json_merge_diff(live, {"a": 1, "b": {"c": 2, "d": 4}}) == {"b": {"d": 4}}
    assert json_merge_diff(live, live) == {}


def test_combine_verbs():
    assert combine_verbs([Verb.CREATED, Verb.CREATED]) == Verb.CREATED
    assert combine_verbs([Verb.UNCHANGED, Verb.UNCHANGED]) == Verb.UNCHANGED
    assert combine_verbs([Verb.CREATED, Verb.UNCHANGED]) == Verb.PATCHED
    assert combine_verbs([]) == Verb.UNCHANGED


@pytest.mark.asyncio
async def test_converge_creates_then_is_idempotent(owner):
    store = FakeObjectStore()

    verb, created = await converge(store, SERVICE, _service(owner), owner)
    assert verb == Verb.CREATED
    assert created["metadata"]["uid"]

    verb, _ = await converge(store, SERVICE, _service(owner), owner)
    assert verb == Verb.UNCHANGED
    assert store.writes == [("create", SERVICE, "mgo")]


@pytest.mark.asyncio
async def test_converge_patches_only_the_difference(owner):
    store = FakeObjectStore()
    await converge(store, SERVICE, _service(owner), owner)

    verb, patched = await converge(store, SERVICE, _service(owner, port=27018), owner)

    assert verb == Verb.PATCHED
    assert patched["spec"]["ports"] == [{"name": "db", "port": 27018}]
    assert store.writes_of("patch") == ["mgo"]


@pytest.mark.asyncio
async def test_converge_refuses_foreign_objects(owner):
    store = FakeObjectStore()
    foreign = store.put(SERVICE, {"metadata": {"name": "mgo", "namespace": "demo"}, "spec": {}})

    with pytest.raises(NamingCollisionError) as exc_info:
        await converge(store, SERVICE, _service(owner), owner)

    assert exc_info.value.message == 'intended Service "demo/mgo" already exists'
    assert store.peek(SERVICE, "demo", "mgo") == foreign
    assert store.writes == []


@pytest.mark.asyncio
async def test_ensure_exists_never_patches(owner):
    store = FakeObjectStore()
    store.put(SECRET, {"metadata": {"name": "mgo-auth", "namespace": "demo"}, "data": {"password": "b2xk"}})
    desired = {"metadata": {"name": "mgo-auth", "namespace": "demo"}, "data": {"password": "bmV3"}}

    verb, live = await ensure_exists(store, SECRET, desired)

    assert verb == Verb.UNCHANGED
    assert live["data"] == {"password": "b2xk"}
    assert store.writes == []

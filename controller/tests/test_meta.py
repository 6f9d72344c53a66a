from __future__ import annotations

from types import SimpleNamespace

import pytest
from kubernetes.client import V1ObjectMeta, V1OwnerReference

from controller.src.meta import (
    DeletedFinalStateUnknown,
    InvalidKeyError,
    get_controller_of,
    is_controlled_by,
    meta_namespace_key,
    new_controller_ref,
    object_metadata,
    split_meta_namespace_key,
)


def _obj(name: str | None = "web", namespace: str | None = "default", owner_references=None, uid=None):
    return SimpleNamespace(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=uid,
            owner_references=owner_references,
        )
    )


def _ref(uid: str, controller: bool | None = True, kind: str = "InferenceJob") -> V1OwnerReference:
    return V1OwnerReference(
        api_version="samplecontroller.k8s.io/v1alpha1",
        kind=kind,
        name="job-1",
        uid=uid,
        controller=controller,
    )


class TestKeys:
    def test_namespaced_object_key(self) -> None:
        assert meta_namespace_key(_obj()) == "default/web"

    def test_cluster_scoped_object_key(self) -> None:
        assert meta_namespace_key(_obj(namespace=None)) == "web"

    def test_tombstone_key_is_returned_verbatim(self) -> None:
        tombstone = DeletedFinalStateUnknown(key="ns/old", obj=_obj())

        assert meta_namespace_key(tombstone) == "ns/old"

    def test_object_without_name_has_no_key(self) -> None:
        with pytest.raises(InvalidKeyError):
            meta_namespace_key(_obj(name=None))
        with pytest.raises(InvalidKeyError):
            meta_namespace_key("not-an-object")

    @pytest.mark.parametrize(
        ("key", "expected"),
        [("default/web", ("default", "web")), ("web", ("", "web"))],
    )
    def test_split_valid_keys(self, key: str, expected: tuple[str, str]) -> None:
        assert split_meta_namespace_key(key) == expected

    @pytest.mark.parametrize("key", ["", "a/b/c", "default/", "/"])
    def test_split_rejects_malformed_keys(self, key: str) -> None:
        with pytest.raises(InvalidKeyError):
            split_meta_namespace_key(key)

    def test_object_metadata_rejects_non_objects(self) -> None:
        assert object_metadata(object()) is None
        assert object_metadata(_obj(name="")) is None
        assert object_metadata(_obj()).name == "web"


class TestOwnership:
    def test_get_controller_of_skips_non_controller_refs(self) -> None:
        controller_ref = _ref("uid-2")
        obj = _obj(owner_references=[_ref("uid-1", controller=None), controller_ref])

        assert get_controller_of(obj) is controller_ref

    def test_get_controller_of_without_refs(self) -> None:
        assert get_controller_of(_obj()) is None
        assert get_controller_of(object()) is None

    def test_is_controlled_by_compares_uid_not_name(self) -> None:
        owner = _obj(name="job-1", uid="uid-1")
        same_name_other_uid = _obj(name="job-1", uid="uid-9")
        obj = _obj(owner_references=[_ref("uid-1")])

        assert is_controlled_by(obj, owner) is True
        assert is_controlled_by(obj, same_name_other_uid) is False
        assert is_controlled_by(_obj(), owner) is False

    def test_new_controller_ref(self) -> None:
        owner = _obj(name="job-1", uid="uid-1")

        ref = new_controller_ref(owner, "samplecontroller.k8s.io/v1alpha1", "InferenceJob")

        assert ref.name == "job-1"
        assert ref.uid == "uid-1"
        assert ref.kind == "InferenceJob"
        assert ref.api_version == "samplecontroller.k8s.io/v1alpha1"
        assert ref.controller is True
        assert ref.block_owner_deletion is True

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiClient, V1Deployment, V1ObjectMeta, V1ObjectReference

API_GROUP = "samplecontroller.k8s.io"
API_VERSION = "v1alpha1"
GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"
KIND = "InferenceJob"
PLURAL = "inferencejobs"

_SERIALIZER = ApiClient()


@dataclass
class InferenceJobSpec:
    deployment_name: str = ""
    replicas: int | None = None
    image_to_deploy: str = ""


@dataclass
class InferenceJobStatus:
    available_replicas: int = 0


@dataclass
class InferenceJob:
    """Typed view of an ``InferenceJob`` custom object.

    The custom objects API hands back plain camelCase dicts; the informer
    converts them with :meth:`from_dict` so the rest of the controller works
    with attribute access, the same way it does for ``V1Deployment``.
    Instances held by the informer cache are shared and must be treated as
    read-only: use :meth:`deep_copy` before changing anything.
    """

    metadata: V1ObjectMeta
    spec: InferenceJobSpec = field(default_factory=InferenceJobSpec)
    status: InferenceJobStatus = field(default_factory=InferenceJobStatus)
    api_version: str = GROUP_VERSION
    kind: str = KIND

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> InferenceJob:
        meta = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        status = raw.get("status") or {}

        replicas = spec.get("replicas")
        return cls(
            metadata=V1ObjectMeta(
                name=meta.get("name"),
                namespace=meta.get("namespace"),
                uid=meta.get("uid"),
                resource_version=meta.get("resourceVersion"),
                generation=meta.get("generation"),
                labels=meta.get("labels"),
                annotations=meta.get("annotations"),
            ),
            spec=InferenceJobSpec(
                deployment_name=spec.get("deploymentName") or "",
                replicas=None if replicas is None else int(replicas),
                image_to_deploy=spec.get("imageToDeploy") or "",
            ),
            status=InferenceJobStatus(
                available_replicas=int(status.get("availableReplicas") or 0),
            ),
            api_version=raw.get("apiVersion") or GROUP_VERSION,
            kind=raw.get("kind") or KIND,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the camelCase shape the API server expects."""
        spec: dict[str, Any] = {
            "deploymentName": self.spec.deployment_name,
            "imageToDeploy": self.spec.image_to_deploy,
        }
        if self.spec.replicas is not None:
            spec["replicas"] = self.spec.replicas
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": _SERIALIZER.sanitize_for_serialization(self.metadata),
            "spec": spec,
            "status": {"availableReplicas": self.status.available_replicas},
        }

    def deep_copy(self) -> InferenceJob:
        return copy.deepcopy(self)


@dataclass(frozen=True)
class GroupVersionKind:
    api_version: str
    kind: str


class Scheme:
    """Registry mapping Python model types to their ``apiVersion``/``kind``.

    Objects read from list calls do not carry ``kind``, so anything that has
    to reference an object generically (events, owner references) resolves
    it here.  A scheme is built once at startup and passed to the components
    that need it.
    """

    def __init__(self) -> None:
        self._kinds: dict[type, GroupVersionKind] = {}

    def add_known_type(self, model: type, api_version: str, kind: str) -> None:
        existing = self._kinds.get(model)
        if existing is not None and existing != GroupVersionKind(api_version, kind):
            raise ValueError(f"{model.__name__} is already registered as {existing}")
        self._kinds[model] = GroupVersionKind(api_version=api_version, kind=kind)

    def kind_for_type(self, model: type) -> GroupVersionKind:
        try:
            return self._kinds[model]
        except KeyError:
            raise LookupError(f"{model.__name__} is not registered in the scheme") from None

    def kind_for(self, obj: Any) -> GroupVersionKind:
        return self.kind_for_type(type(obj))

    def object_reference(self, obj: Any) -> V1ObjectReference:
        gvk = self.kind_for(obj)
        metadata = obj.metadata
        return V1ObjectReference(
            api_version=gvk.api_version,
            kind=gvk.kind,
            name=metadata.name,
            namespace=metadata.namespace,
            uid=metadata.uid,
            resource_version=metadata.resource_version,
        )


def add_to_scheme(scheme: Scheme) -> None:
    scheme.add_known_type(InferenceJob, GROUP_VERSION, KIND)


def build_scheme() -> Scheme:
    """Return a scheme with the built-in types used here plus ``InferenceJob``."""
    scheme = Scheme()
    scheme.add_known_type(V1Deployment, "apps/v1", "Deployment")
    add_to_scheme(scheme)
    return scheme

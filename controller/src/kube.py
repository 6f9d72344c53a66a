from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi, V1Deployment
from kubernetes.config.config_exception import ConfigException

from controller.src.informer import Informer
from controller.src.resources import API_GROUP, API_VERSION, PLURAL, InferenceJob

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, CustomObjectsApi]:
    """Return CoreV1, AppsV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.CustomObjectsApi()


def create_deployment(apps_api: AppsV1Api, deployment: V1Deployment) -> V1Deployment:
    return apps_api.create_namespaced_deployment(
        namespace=deployment.metadata.namespace,
        body=deployment,
    )


def update_deployment(apps_api: AppsV1Api, deployment: V1Deployment) -> V1Deployment:
    """Replace a Deployment with a freshly computed object.

    The body carries no ``resourceVersion``, so the API server applies it
    unconditionally rather than rejecting it as a stale write.
    """
    return apps_api.replace_namespaced_deployment(
        name=deployment.metadata.name,
        namespace=deployment.metadata.namespace,
        body=deployment,
    )


def update_inference_job_status(custom_api: CustomObjectsApi, job: InferenceJob) -> None:
    """Write ``job`` through the status subresource.

    The status endpoint ignores spec changes, so only ``status`` is
    persisted.  The body keeps the cached ``resourceVersion``; a concurrent
    modification surfaces as ``409 Conflict`` and the sync is retried.
    """
    custom_api.replace_namespaced_custom_object_status(
        group=API_GROUP,
        version=API_VERSION,
        namespace=job.metadata.namespace,
        plural=PLURAL,
        name=job.metadata.name,
        body=job.to_dict(),
    )


def build_deployment_informer(
    apps_api: AppsV1Api,
    namespace: str,
    resync_period_seconds: int,
) -> Informer:
    if namespace:
        return Informer(
            name="deployments",
            list_func=apps_api.list_namespaced_deployment,
            list_kwargs={"namespace": namespace},
            resync_period_seconds=resync_period_seconds,
        )
    return Informer(
        name="deployments",
        list_func=apps_api.list_deployment_for_all_namespaces,
        resync_period_seconds=resync_period_seconds,
    )


def build_inference_job_informer(
    custom_api: CustomObjectsApi,
    namespace: str,
    resync_period_seconds: int,
) -> Informer:
    if namespace:
        return Informer(
            name="inferencejobs",
            list_func=custom_api.list_namespaced_custom_object,
            list_kwargs={
                "group": API_GROUP,
                "version": API_VERSION,
                "namespace": namespace,
                "plural": PLURAL,
            },
            transform=InferenceJob.from_dict,
            resync_period_seconds=resync_period_seconds,
        )
    return Informer(
        name="inferencejobs",
        list_func=custom_api.list_cluster_custom_object,
        list_kwargs={"group": API_GROUP, "version": API_VERSION, "plural": PLURAL},
        transform=InferenceJob.from_dict,
        resync_period_seconds=resync_period_seconds,
    )

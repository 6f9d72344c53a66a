from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any

from kubernetes.client import (
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
)

from controller.src.config import ControllerConfig
from controller.src.events import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING, EventRecorder
from controller.src.informer import Informer, NotFoundError, wait_for_cache_sync
from controller.src.kube import (
    build_deployment_informer,
    build_inference_job_informer,
    create_deployment,
    update_deployment,
    update_inference_job_status,
)
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
from controller.src.metrics import METRICS
from controller.src.resources import GroupVersionKind, InferenceJob, Scheme
from controller.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

CONTROLLER_AGENT_NAME = "inferencejob-controller"

# Event reasons and messages recorded against InferenceJobs.
SUCCESS_SYNCED = "Synced"
ERR_RESOURCE_EXISTS = "ErrResourceExists"
ERR_CONFLICT_RETRIES_EXHAUSTED = "ConflictRetriesExhausted"
MESSAGE_RESOURCE_EXISTS = 'Resource "{name}" already exists and is not managed by InferenceJob'
MESSAGE_RESOURCE_SYNCED = "InferenceJob synced successfully"


class SyncOutcome(str, Enum):
    SYNCED = "synced"
    DROPPED = "dropped"


class ResourceExistsError(RuntimeError):
    """A Deployment with the target name exists but is not controlled by the InferenceJob."""

    def __init__(self, inference_job: InferenceJob, deployment_name: str) -> None:
        super().__init__(MESSAGE_RESOURCE_EXISTS.format(name=deployment_name))
        self.inference_job = inference_job
        self.deployment_name = deployment_name


class CacheSyncError(RuntimeError):
    """The informer caches did not sync before shutdown or the startup timeout."""


def container_name_for_image(image: str) -> str:
    """Return the image reference up to its first ``:`` (``nginx:1.25`` -> ``nginx``)."""
    return image.split(":", 1)[0]


def new_deployment(job: InferenceJob, owner_kind: GroupVersionKind) -> V1Deployment:
    """Build the Deployment an InferenceJob asks for.

    The controller owner reference lets :meth:`InferenceJobController.handle_object`
    map Deployment events back to the InferenceJob.  ``replicas`` is copied
    as-is; ``None`` leaves the API server default in place.
    """
    labels = {
        "app": job.spec.image_to_deploy,
        "controller": job.metadata.name,
    }
    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(
            name=job.spec.deployment_name,
            namespace=job.metadata.namespace,
            owner_references=[
                new_controller_ref(job, owner_kind.api_version, owner_kind.kind),
            ],
        ),
        spec=V1DeploymentSpec(
            replicas=job.spec.replicas,
            selector=V1LabelSelector(match_labels=dict(labels)),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=dict(labels)),
                spec=V1PodSpec(
                    containers=[
                        V1Container(
                            name=container_name_for_image(job.spec.image_to_deploy),
                            image=job.spec.image_to_deploy,
                        )
                    ]
                ),
            ),
        ),
    )


def _deployment_replicas(deployment: Any) -> int | None:
    return getattr(getattr(deployment, "spec", None), "replicas", None)


def _available_replicas(deployment: Any) -> int:
    return getattr(getattr(deployment, "status", None), "available_replicas", None) or 0


class InferenceJobController:
    """Level-triggered controller converging Deployments onto InferenceJobs.

    Informer callbacks only ever enqueue ``namespace/name`` keys of
    InferenceJobs; all decisions are made by :meth:`sync_handler`, which
    re-reads the current state from the listers each time.  The rate
    limited work queue is the only synchronisation between workers: a key
    handed out by ``get`` is not handed out again until ``done``, so one
    InferenceJob is never synced by two workers at once.

    Failure policy per key:
        success                 ``forget`` (clears backoff)
        malformed / not found   dropped, ``forget``
        API error               ``add_rate_limited`` (exponential backoff)
        name conflict           ``add_rate_limited`` until
                                ``conflict_retry_limit`` retries, then dropped
                                with a ``ConflictRetriesExhausted`` event
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        custom_api: CustomObjectsApi,
        deployment_informer: Informer,
        inference_job_informer: Informer,
        recorder: EventRecorder,
        scheme: Scheme,
        queue: RateLimitingQueue | None = None,
        conflict_retry_limit: int = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        if conflict_retry_limit < 0:
            raise ValueError("conflict_retry_limit must be >= 0")

        self.apps_api = apps_api
        self.custom_api = custom_api
        self.deployment_informer = deployment_informer
        self.inference_job_informer = inference_job_informer
        self.recorder = recorder
        self.conflict_retry_limit = conflict_retry_limit
        self.logger = logger or logging.getLogger(__name__)
        # An empty queue is falsy (it defines __len__).
        self.queue = queue if queue is not None else RateLimitingQueue(name="InferenceJobs")
        self.owner_kind = scheme.kind_for_type(InferenceJob)

        self.deployments_lister = deployment_informer.lister()
        self.inference_jobs_lister = inference_job_informer.lister()
        self.ready = threading.Event()

        self.logger.info("Setting up event handlers")
        inference_job_informer.add_event_handler(
            on_add=self.enqueue_inference_job,
            on_update=lambda old, new: self.enqueue_inference_job(new),
        )
        deployment_informer.add_event_handler(
            on_add=self.handle_object,
            on_update=self.handle_deployment_update,
            on_delete=self.handle_object,
        )

    def enqueue_inference_job(self, obj: Any) -> None:
        """Put the ``namespace/name`` key of an InferenceJob on the work queue."""
        try:
            key = meta_namespace_key(obj)
        except InvalidKeyError:
            self.logger.exception("Cannot compute work queue key for InferenceJob")
            return
        self.queue.add(key)

    def handle_deployment_update(self, old: Any, new: Any) -> None:
        old_version = getattr(getattr(old, "metadata", None), "resource_version", None)
        new_version = getattr(getattr(new, "metadata", None), "resource_version", None)
        if old_version == new_version:
            # Periodic resync redelivers unchanged Deployments; two versions
            # of the same Deployment always differ in resourceVersion.
            return
        self.handle_object(new)

    def handle_object(self, obj: Any) -> None:
        """Enqueue the InferenceJob controlling a Deployment, if there is one.

        Deletion notifications may carry a :class:`DeletedFinalStateUnknown`
        tombstone instead of the object; it is unwrapped here so nothing past
        this point sees one.  Objects without an InferenceJob controller, and
        orphans whose InferenceJob is gone from the cache, are skipped.
        """
        if isinstance(obj, DeletedFinalStateUnknown):
            if object_metadata(obj.obj) is None:
                self.logger.error("Error decoding object tombstone %s, invalid type", obj.key)
                return
            obj = obj.obj
            self.logger.debug("Recovered deleted object '%s' from tombstone", obj.metadata.name)
        elif object_metadata(obj) is None:
            self.logger.error("Error decoding object, invalid type %s", type(obj).__name__)
            return

        self.logger.debug("Processing object: %s", obj.metadata.name)
        owner_ref = get_controller_of(obj)
        if owner_ref is None or owner_ref.kind != self.owner_kind.kind:
            return

        namespace = obj.metadata.namespace or ""
        try:
            job = self.inference_jobs_lister.get(namespace, owner_ref.name)
        except NotFoundError:
            self.logger.debug(
                "Ignoring orphaned object '%s/%s' of InferenceJob '%s'",
                namespace,
                obj.metadata.name,
                owner_ref.name,
            )
            return

        self.enqueue_inference_job(job)

    def run(
        self,
        workers: int,
        stop_event: threading.Event,
        cache_sync_timeout: float | None = None,
    ) -> None:
        """Wait for the caches, run *workers* worker threads, and block until stopped.

        Raises :class:`CacheSyncError` when the caches do not sync before
        *stop_event* is set or *cache_sync_timeout* elapses.  On stop the
        queue is shut down and every worker finishes its current item (and
        whatever is still queued) before this returns.
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")

        threads: list[threading.Thread] = []
        self.logger.info("Starting InferenceJob controller")
        try:
            self.logger.info("Waiting for informer caches to sync")
            if not wait_for_cache_sync(
                stop_event,
                self.deployment_informer.has_synced,
                self.inference_job_informer.has_synced,
                timeout=cache_sync_timeout,
            ):
                raise CacheSyncError("failed to wait for caches to sync")

            self.logger.info("Starting %d worker(s)", workers)
            for index in range(workers):
                thread = threading.Thread(
                    target=self.run_worker,
                    name=f"inferencejob-worker-{index}",
                    daemon=True,
                )
                thread.start()
                threads.append(thread)
            self.ready.set()
            self.logger.info("Started workers")

            stop_event.wait()
            self.logger.info("Shutting down workers")
        finally:
            self.ready.clear()
            self.queue.shut_down()
            for thread in threads:
                thread.join()

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        """Process one key from the queue.  Returns False once the queue is shut down."""
        item, shutdown = self.queue.get()
        if shutdown:
            return False

        try:
            if not isinstance(item, str):
                # Retrying cannot fix an item of the wrong type.
                self.queue.forget(item)
                self.logger.error("Expected string in work queue but got %r", item)
                METRICS.dropped_total.labels(reason="invalid_item").inc()
                return True

            started = time.monotonic()
            try:
                outcome = self.sync_handler(item)
            except ResourceExistsError as exc:
                METRICS.sync_total.labels(result="conflict").inc()
                METRICS.conflicts_total.inc()
                self._handle_conflict(item, exc)
            except Exception:
                METRICS.sync_total.labels(result="error").inc()
                self.logger.exception("Error syncing '%s', requeuing", item)
                self.queue.add_rate_limited(item)
            else:
                METRICS.sync_total.labels(result=outcome.value).inc()
                self.queue.forget(item)
                if outcome is SyncOutcome.SYNCED:
                    self.logger.info("Successfully synced '%s'", item)
            finally:
                METRICS.sync_duration_seconds.observe(time.monotonic() - started)
        finally:
            self.queue.done(item)
        return True

    def _handle_conflict(self, key: str, exc: ResourceExistsError) -> None:
        requeues = self.queue.num_requeues(key)
        if self.conflict_retry_limit and requeues >= self.conflict_retry_limit:
            self.queue.forget(key)
            METRICS.dropped_total.labels(reason="conflict").inc()
            self.logger.error(
                "Giving up on '%s' after %d retries: %s", key, requeues, exc
            )
            self.recorder.record(
                exc.inference_job,
                EVENT_TYPE_WARNING,
                ERR_CONFLICT_RETRIES_EXHAUSTED,
                f"{exc}; stopped retrying after {requeues} attempts",
            )
            return

        self.logger.warning("Error syncing '%s': %s, requeuing", key, exc)
        self.queue.add_rate_limited(key)

    def sync_handler(self, key: str) -> SyncOutcome:
        """Converge the Deployment of one InferenceJob and mirror its status.

        Returns :attr:`SyncOutcome.DROPPED` for work that must not be retried
        (bad key, deleted InferenceJob, missing ``deploymentName``); such
        items come back on the next change to the InferenceJob.  Raises on
        failures that should be retried: :class:`ResourceExistsError` for a
        name conflict, ``ApiException`` for failed writes.
        """
        try:
            namespace, name = split_meta_namespace_key(key)
        except InvalidKeyError:
            self.logger.error("Invalid resource key: %s", key)
            METRICS.dropped_total.labels(reason="invalid_key").inc()
            return SyncOutcome.DROPPED

        try:
            job = self.inference_jobs_lister.get(namespace, name)
        except NotFoundError:
            self.logger.info("InferenceJob '%s' in work queue no longer exists", key)
            METRICS.dropped_total.labels(reason="not_found").inc()
            return SyncOutcome.DROPPED

        deployment_name = job.spec.deployment_name
        if not deployment_name:
            self.logger.error("%s: deployment name must be specified", key)
            METRICS.dropped_total.labels(reason="invalid_spec").inc()
            return SyncOutcome.DROPPED

        try:
            deployment = self.deployments_lister.get(namespace, deployment_name)
        except NotFoundError:
            deployment = None

        if deployment is None:
            self.logger.info("Creating Deployment %s/%s for '%s'", namespace, deployment_name, key)
            deployment = create_deployment(self.apps_api, new_deployment(job, self.owner_kind))
            METRICS.deployments_created_total.inc()
        elif not is_controlled_by(deployment, job):
            exc = ResourceExistsError(job, deployment_name)
            self.recorder.record(job, EVENT_TYPE_WARNING, ERR_RESOURCE_EXISTS, str(exc))
            raise exc
        elif job.spec.replicas is not None and job.spec.replicas != _deployment_replicas(deployment):
            self.logger.info(
                "InferenceJob %s replicas: %d, deployment replicas: %s",
                name,
                job.spec.replicas,
                _deployment_replicas(deployment),
            )
            deployment = update_deployment(self.apps_api, new_deployment(job, self.owner_kind))
            METRICS.deployments_updated_total.inc()

        self._update_status(job, deployment)
        self.recorder.record(job, EVENT_TYPE_NORMAL, SUCCESS_SYNCED, MESSAGE_RESOURCE_SYNCED)
        return SyncOutcome.SYNCED

    def _update_status(self, job: InferenceJob, deployment: Any) -> None:
        """Mirror the Deployment's available replicas into the InferenceJob status.

        *job* comes from the informer cache and is shared; the write goes
        through a deep copy.  Nothing is written when the status already
        matches.
        """
        available = _available_replicas(deployment)
        if job.status.available_replicas == available:
            return

        job_copy = job.deep_copy()
        job_copy.status.available_replicas = available
        update_inference_job_status(self.custom_api, job_copy)


def build_controller(
    config: ControllerConfig,
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    custom_api: CustomObjectsApi,
    scheme: Scheme,
) -> InferenceJobController:
    """Wire informers, work queue and event recorder into an :class:`InferenceJobController`."""
    deployment_informer = build_deployment_informer(
        apps_api,
        namespace=config.namespace,
        resync_period_seconds=config.resync_period_seconds,
    )
    inference_job_informer = build_inference_job_informer(
        custom_api,
        namespace=config.namespace,
        resync_period_seconds=config.resync_period_seconds,
    )
    queue = RateLimitingQueue(
        rate_limiter=default_controller_rate_limiter(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        ),
        name="InferenceJobs",
    )
    recorder = EventRecorder(core_api=core_api, scheme=scheme, component=CONTROLLER_AGENT_NAME)
    return InferenceJobController(
        apps_api=apps_api,
        custom_api=custom_api,
        deployment_informer=deployment_informer,
        inference_job_informer=inference_job_informer,
        recorder=recorder,
        scheme=scheme,
        queue=queue,
        conflict_retry_limit=config.conflict_retry_limit,
    )

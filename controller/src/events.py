from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import CoreV1Api, CoreV1Event, V1EventSource, V1ObjectMeta

from controller.src.resources import Scheme

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

LOGGER = logging.getLogger(__name__)


class EventRecorder:
    """Records core/v1 Events against objects for ``kubectl describe`` visibility.

    Recording is fire-and-forget: every event is also written to the log,
    and a failure to create the Event object is logged and dropped so it can
    never fail the sync that emitted it.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        scheme: Scheme,
        component: str,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.core_api = core_api
        self.scheme = scheme
        self.component = component
        self.logger = logger or LOGGER
        self.now_fn = now_fn

    def record(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        try:
            involved = self.scheme.object_reference(obj)
        except LookupError:
            self.logger.exception("Cannot record event %s for unregistered object", reason)
            return

        self.logger.info(
            "Event(%s %s/%s): type=%s reason=%s message=%s",
            involved.kind,
            involved.namespace,
            involved.name,
            event_type,
            reason,
            message,
        )

        now = self.now_fn()
        event = CoreV1Event(
            metadata=V1ObjectMeta(
                generate_name=f"{involved.name}.",
                namespace=involved.namespace,
            ),
            involved_object=involved,
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(
                namespace=involved.namespace or "default",
                body=event,
            )
        except Exception:
            self.logger.warning(
                "Failed to record event %s for %s %s/%s",
                reason,
                involved.kind,
                involved.namespace,
                involved.name,
                exc_info=True,
            )

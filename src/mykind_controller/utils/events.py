"""
Kubernetes event recording for the MyKind controller.

Events are human-readable breadcrumbs attached to a MyKind resource.
Recording is best-effort: a failure is logged and never interrupts a
reconcile pass.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from ..models.mykind import MYKIND_API_VERSION, MYKIND_KIND, EventType, MyKind

COMPONENT_NAME = "mykind-controller"


class EventRecorder:
    """Records ``core/v1`` Events against MyKind resources."""

    def __init__(self,
                 logger: Any = None,
                 api_client: Optional[client.ApiClient] = None,
                 component: str = COMPONENT_NAME) -> None:
        self.logger = (logger or structlog.get_logger()).bind(component="event_recorder")
        self.v1 = client.CoreV1Api(api_client)
        self.source = component

    def build_event(self,
                    obj: MyKind,
                    event_type: EventType,
                    reason: str,
                    message: str) -> client.CoreV1Event:
        now = datetime.now(timezone.utc)
        return client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{obj.metadata.name}.",
                namespace=obj.metadata.namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=MYKIND_API_VERSION,
                kind=MYKIND_KIND,
                name=obj.metadata.name,
                namespace=obj.metadata.namespace,
                uid=obj.metadata.uid,
                resource_version=obj.metadata.resource_version,
            ),
            reason=reason,
            message=message,
            type=EventType(event_type).value,
            source=client.V1EventSource(component=self.source),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )

    async def record(self,
                     obj: MyKind,
                     event_type: EventType,
                     reason: str,
                     message: str) -> None:
        """
        Record an event for ``obj``.

        Args:
            obj: Resource the event is attached to
            event_type: Event severity
            reason: Short CamelCase reason (e.g. ``Created``)
            message: Human-readable description
        """
        event = self.build_event(obj, event_type, reason, message)
        try:
            await asyncio.to_thread(
                self.v1.create_namespaced_event,
                namespace=obj.metadata.namespace,
                body=event,
            )
        except (ApiException, HTTPError, OSError) as e:
            self.logger.warning(
                "Failed to record event",
                mykind=str(obj.key),
                reason=reason,
                error=str(e),
            )
            return

        self.logger.debug("Event recorded", mykind=str(obj.key), reason=reason, message=message)

# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin Notify - Webhook notifications for backup/restore lifecycle events.

Notifications are fire-and-forget: delivery problems are logged and never
propagate into the operation that triggered them.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import httpx
import structlog

logger = structlog.get_logger()

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


class OpType(str, Enum):
    """Kind of operation an event belongs to."""

    BACKUP = "backup"
    RESTORE = "restore"


class EventState(str, Enum):
    """Lifecycle state reported by an event."""

    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class EventInfo:
    """A single lifecycle notification."""

    op_type: OpType
    state: EventState
    name: str
    instance: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    raw_url: str | None = None
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the webhook JSON body, omitting empty fields."""
        body = {
            "opType": self.op_type.value,
            "state": self.state.value,
            "name": self.name,
            "instance": self.instance,
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "failedAt": _isoformat(self.failed_at),
            "rawURL": self.raw_url,
            "error": self.error,
        }
        return {k: v for k, v in body.items() if v is not None}


class Notifier:
    """
    Sends EventInfo payloads to webhook endpoints.

    Args:
        client: Optional preconfigured httpx.AsyncClient (owned by the caller)
        verify: TLS verification for the internally created client; a CA
            bundle path, True for system roots, or False
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        verify: bool | str | Path = True,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=DEFAULT_TIMEOUT,
            verify=str(verify) if isinstance(verify, Path) else verify,
        )

    async def send(self, endpoint: str | None, event: EventInfo) -> bool:
        """
        POST the event as JSON.

        Returns:
            True if the endpoint answered 2xx; False otherwise (already logged)
        """
        if not endpoint:
            return False

        try:
            response = await self._client.post(endpoint, json=event.to_dict())
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(
                "notification_failed",
                endpoint=endpoint,
                op_type=event.op_type.value,
                state=event.state.value,
                error=str(e),
            )
            return False

        if not response.is_success:
            logger.warning(
                "notification_rejected",
                endpoint=endpoint,
                op_type=event.op_type.value,
                state=event.state.value,
                status_code=response.status_code,
            )
            return False

        logger.debug(
            "notification_sent",
            endpoint=endpoint,
            op_type=event.op_type.value,
            state=event.state.value,
        )
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

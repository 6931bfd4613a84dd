"""Status events and approval notifications for external observers."""

from __future__ import annotations

import abc
import logging
from typing import Any, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .config import SafeDeployConfig, load_config
from .contracts import ApprovalRequest, StatusEvent

logger = logging.getLogger(__name__)


class StatusSink(metaclass=abc.ABCMeta):
    """Receiver of structured execution status events."""

    @abc.abstractmethod
    async def emit(self, event: StatusEvent) -> None:
        raise NotImplementedError


class LoggingStatusSink(StatusSink):
    async def emit(self, event: StatusEvent) -> None:
        logger.info(
            f"[{event.execution_id}] {event.stage or '-'}/{event.action or '-'}: "
            f"{event.status}" + (f" ({event.detail})" if event.detail else "")
        )


class InMemoryStatusSink(StatusSink):
    """Collect events in a list for assertions."""

    def __init__(self) -> None:
        self.events: List[StatusEvent] = []

    async def emit(self, event: StatusEvent) -> None:
        self.events.append(event)

    def statuses(self, action: Optional[str] = None) -> List[str]:
        return [e.status for e in self.events if action is None or e.action == action]


class RedisStatusSink(StatusSink):
    """Publish status events as JSON on a Redis channel."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel: str = "safedeploy:status",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisStatusSink")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel = channel
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def emit(self, event: StatusEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(self.channel, event.to_json())


async def emit_status(sink: Optional[StatusSink], event: StatusEvent) -> None:
    """Deliver ``event``; delivery failures never affect the pipeline."""
    if sink is None:
        return
    try:
        await sink.emit(event)
    except Exception as e:
        logger.warning(
            f"Status sink {type(sink).__name__} failed to deliver event for "
            f"execution {event.execution_id}: {e}"
        )


class ApprovalNotifier(metaclass=abc.ABCMeta):
    """Tells reviewers that a decision is needed."""

    @abc.abstractmethod
    async def request_approval(self, request: ApprovalRequest) -> None:
        raise NotImplementedError


class LoggingApprovalNotifier(ApprovalNotifier):
    async def request_approval(self, request: ApprovalRequest) -> None:
        logger.info(
            f"Approval requested for execution {request.execution_id} "
            f"stage {request.stage}: {request.prompt}"
            + (f" Review: {request.review_link}" if request.review_link else "")
        )


class InMemoryApprovalNotifier(ApprovalNotifier):
    def __init__(self) -> None:
        self.requests: List[ApprovalRequest] = []

    async def request_approval(self, request: ApprovalRequest) -> None:
        self.requests.append(request)


def get_status_sink(
    backend: Optional[str] = None, config: Optional[SafeDeployConfig] = None
) -> StatusSink:
    """Factory function to get the configured status sink."""

    config = config or load_config()
    backend = (backend or config.status_sink.backend).lower()

    if backend == "logging":
        return LoggingStatusSink()
    elif backend == "redis":
        redis_conf = config.status_sink.redis
        return RedisStatusSink(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            channel=redis_conf.channel,
        )
    else:
        raise ValueError(f"Unsupported status sink backend: {backend}")

"""Periodic health checks for managed containers."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from apex_engine.core.container_manager import ContainerInfo, ContainerManager

logger = logging.getLogger(__name__)


@dataclass
class ContainerHealthEvent:
    container_id: str
    container_name: str
    status: str  # healthy | unhealthy | starting | stopped
    previous_status: Optional[str]
    consecutive_failures: int
    timestamp: datetime


def _status_of(info: ContainerInfo) -> str:
    # Prefer the engine's own health check when the image defines one
    if info.health:
        return info.health
    return "healthy" if info.status == "running" else "stopped"


class ContainerHealthMonitor:
    """Polls managed containers and emits ``container:health`` on changes.

    A container is reported ``unhealthy`` once its failing streak reaches
    ``max_failures``; until then failures are only counted.
    """

    def __init__(
        self,
        manager: ContainerManager,
        interval: float = 30.0,
        max_failures: int = 3,
    ):
        self.manager = manager
        self.interval = interval
        self.max_failures = max_failures
        self._statuses: dict[str, str] = {}
        self._failures: dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None

    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_active():
            return
        self._task = asyncio.create_task(self._monitor())
        logger.info(f"Container health monitoring started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Container health monitoring stopped")

    def get_status(self, container_id: str) -> Optional[str]:
        return self._statuses.get(container_id)

    async def _monitor(self) -> None:
        while True:
            try:
                await self.check_all()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error checking container health: {e}")
                await asyncio.sleep(self.interval)

    async def check_all(self) -> list[ContainerHealthEvent]:
        """Run one round of checks. Returns the status changes it emitted."""
        changes = []
        containers = await self.manager.list_managed_containers(include_exited=True)
        seen = set()

        for info in containers:
            seen.add(info.id)
            event = await self._check(info)
            if event is not None:
                changes.append(event)

        # Containers that disappeared are no longer tracked
        for container_id in set(self._statuses) - seen:
            self._statuses.pop(container_id, None)
            self._failures.pop(container_id, None)

        return changes

    async def _check(self, info: ContainerInfo) -> Optional[ContainerHealthEvent]:
        observed = _status_of(info)
        previous = self._statuses.get(info.id)

        if observed in ("healthy", "starting"):
            self._failures[info.id] = 0
            status = observed
        else:
            failures = self._failures.get(info.id, 0) + 1
            self._failures[info.id] = failures
            if observed == "stopped":
                status = "stopped"
            elif failures >= self.max_failures:
                status = "unhealthy"
            else:
                # Not enough failures yet to report
                status = previous or "starting"

        if status == previous:
            return None

        self._statuses[info.id] = status
        event = ContainerHealthEvent(
            container_id=info.id,
            container_name=info.name,
            status=status,
            previous_status=previous,
            consecutive_failures=self._failures[info.id],
            timestamp=datetime.now(timezone.utc),
        )
        if status == "unhealthy":
            logger.warning(f"Container {info.name} is unhealthy ({event.consecutive_failures} failed checks)")
        else:
            logger.debug(f"Container {info.name} health: {previous} -> {status}")
        await self.manager.events.emit("container:health", event)
        return event

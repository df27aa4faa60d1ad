"""Container engine event stream: line buffering, parsing and monitoring.

The engine's ``events`` command writes one JSON object per line. Reads arrive
in arbitrary chunks, so a record can be split across two reads; ``LineBuffer``
holds the incomplete tail until the next chunk completes it. Every complete
line is parsed on its own so one bad line never affects the others.

Docker and Podman spell their fields differently; ``normalize_event`` maps
both onto ``ContainerEvent``.
"""

import asyncio
import codecs
import itertools
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from apex_engine.core.errors import EventStreamError

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TYPES: tuple[str, ...] = ("start", "die", "oom", "stop")

# Podman reports past-tense actions for some events
_ACTION_ALIASES = {"died": "die", "started": "start", "stopped": "stop", "removed": "destroy"}


# =============================================================================
# Line buffering
# =============================================================================


class LineBuffer:
    """Splits a chunked byte stream into complete lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._tail = ""

    def push(self, chunk: Union[bytes, str]) -> list[str]:
        """Add a chunk and return the lines it completed."""
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        data = self._tail + text
        *lines, self._tail = data.split("\n")
        return [line.rstrip("\r") for line in lines if line.strip()]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""
        data = self._tail + self._decoder.decode(b"", final=True)
        self._tail = ""
        return [data.rstrip("\r")] if data.strip() else []

    @property
    def pending(self) -> str:
        return self._tail


# =============================================================================
# Parsing
# =============================================================================


@dataclass
class ContainerEvent:
    """Engine-independent container event."""

    action: str
    container_id: str
    container_name: str
    attributes: dict[str, str]
    exit_code: Optional[int]
    timestamp: datetime
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def labels(self) -> dict[str, str]:
        # Both engines flatten container labels into the event attributes
        return self.attributes


def _parse_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_timestamp(raw: dict[str, Any]) -> datetime:
    nanos = raw.get("timeNano")
    if isinstance(nanos, (int, float)) and nanos > 0:
        return datetime.fromtimestamp(nanos / 1_000_000_000, tz=timezone.utc)

    for key in ("time", "Time"):
        value = raw.get(key)
        if isinstance(value, (int, float)) and value > 0:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        if isinstance(value, str) and value:
            text = value.strip().replace("Z", "+00:00")
            # Podman prints nanoseconds; fromisoformat accepts at most six digits
            if "." in text:
                head, _, rest = text.partition(".")
                digits = "".join(itertools.takewhile(str.isdigit, rest))
                zone = rest[len(digits):]
                text = f"{head}.{digits[:6].ljust(6, '0')}{zone}"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                continue
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return datetime.now(timezone.utc)


def normalize_event(raw: dict[str, Any]) -> ContainerEvent:
    """Map a Docker or Podman event record onto ``ContainerEvent``."""
    actor = raw.get("Actor") or {}
    if not isinstance(actor, dict):
        actor = {}
    attributes = actor.get("Attributes") or raw.get("Attributes") or {}
    if not isinstance(attributes, dict):
        attributes = {}
    attributes = {str(k): "" if v is None else str(v) for k, v in attributes.items()}

    action = str(raw.get("Action") or raw.get("status") or raw.get("Status") or "").strip().lower()
    # e.g. "health_status: healthy", "exec_start: sh -c ..."
    action = action.split(":", 1)[0].strip()
    action = _ACTION_ALIASES.get(action, action)

    container_id = str(actor.get("ID") or raw.get("id") or raw.get("ID") or "")
    name = str(attributes.get("name") or raw.get("Name") or raw.get("name") or "").lstrip("/")

    if not action or not (container_id or name):
        raise EventStreamError("Event is missing an action or container reference")

    exit_code = _parse_int(attributes.get("exitCode"))
    if exit_code is None:
        exit_code = _parse_int(raw.get("ContainerExitCode"))

    return ContainerEvent(
        action=action,
        container_id=container_id,
        container_name=name,
        attributes=attributes,
        exit_code=exit_code,
        timestamp=_parse_timestamp(raw),
        raw=raw,
    )


def parse_event_line(line: str) -> Optional[ContainerEvent]:
    """Parse one line of ``events`` output.

    Returns ``None`` for records that are not about containers.

    Raises:
        EventStreamError: The line is not a usable JSON event.
    """
    try:
        raw = json.loads(line)
    except ValueError as e:
        raise EventStreamError(f"Malformed event line: {e}", line=line) from e

    if not isinstance(raw, dict):
        raise EventStreamError("Event line is not a JSON object", line=line)

    event_type = raw.get("Type") or raw.get("type")
    if event_type and str(event_type).lower() != "container":
        return None

    try:
        return normalize_event(raw)
    except EventStreamError as e:
        e.line = line
        raise


# =============================================================================
# Registry
# =============================================================================


class ContainerRegistry:
    """Maps managed container names/ids back to the task that owns them."""

    def __init__(self) -> None:
        self._by_name: dict[str, str] = {}
        self._by_id: dict[str, str] = {}
        self._names: dict[str, str] = {}

    def register(self, name: str, task_id: str, container_id: Optional[str] = None) -> None:
        self._by_name[name] = task_id
        if container_id:
            self._by_id[container_id] = task_id
            self._names[container_id] = name

    def task_id_for(self, name: str = "", container_id: str = "") -> Optional[str]:
        if name and name in self._by_name:
            return self._by_name[name]
        if container_id:
            if container_id in self._by_id:
                return self._by_id[container_id]
            # Events carry the full id; callers may have registered a short one
            for known_id, task_id in self._by_id.items():
                if container_id.startswith(known_id) or known_id.startswith(container_id):
                    return task_id
        return None

    def unregister(self, name: str = "", container_id: str = "") -> None:
        if container_id and not name:
            for known_id in list(self._by_id):
                if container_id.startswith(known_id) or known_id.startswith(container_id):
                    container_id = known_id
                    break
            name = self._names.get(container_id, "")
        self._by_name.pop(name, None)
        self._by_id.pop(container_id, None)
        self._names.pop(container_id, None)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)


# =============================================================================
# Event sources
# =============================================================================


@dataclass
class EventsMonitorOptions:
    """Filters passed to the engine's ``events`` command."""

    event_types: tuple[str, ...] = DEFAULT_EVENT_TYPES
    label_filters: dict[str, str] = field(default_factory=dict)
    name_prefix: Optional[str] = None


def build_events_command(runtime: str, options: EventsMonitorOptions) -> list[str]:
    cmd = [runtime, "events", "--format", "{{json .}}", "--filter", "type=container"]
    for event_type in options.event_types:
        cmd.extend(["--filter", f"event={event_type}"])
    for key, value in options.label_filters.items():
        cmd.extend(["--filter", f"label={key}={value}"])
    if options.name_prefix:
        cmd.extend(["--filter", f"container={options.name_prefix}-*"])
    return cmd


class EventSource(Protocol):
    """A byte stream of engine events."""

    async def start(self) -> None: ...

    async def read(self) -> bytes:
        """Next chunk; ``b""`` once the stream has ended."""
        ...

    async def stop(self) -> None: ...


class SubprocessEventSource:
    """Long-lived ``<engine> events`` subprocess."""

    def __init__(self, cmd: list[str], chunk_size: int = 4096):
        self.cmd = cmd
        self.chunk_size = chunk_size
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._proc = await asyncio.create_subprocess_exec(
            *self.cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def read(self) -> bytes:
        if self._proc is None or self._proc.stdout is None:
            return b""
        return await self._proc.stdout.read(self.chunk_size)

    async def stop(self) -> None:
        proc, self._proc = self._proc, None
        if proc is not None and proc.returncode is None:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None

    async def _drain_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        async for line in proc.stderr:
            text = line.decode(errors="replace").strip()
            if text:
                logger.warning(f"Events stream stderr: {text}")


# =============================================================================
# Monitor
# =============================================================================


EventCallback = Callable[[ContainerEvent], Awaitable[None]]


class ContainerEventsMonitor:
    """Reads an event source, parses each line and hands events to a callback.

    One monitor owns one stream. The source is created through
    ``source_factory`` so tests can feed synthetic chunks.
    """

    def __init__(
        self,
        source_factory: Callable[[list[str]], EventSource] = SubprocessEventSource,
    ):
        self._source_factory = source_factory
        self._source: Optional[EventSource] = None
        self._reader: Optional[asyncio.Task] = None
        self._buffer = LineBuffer()
        self._callback: Optional[EventCallback] = None
        self.command: Optional[list[str]] = None
        self.events_processed = 0
        self.malformed_lines = 0

    def is_active(self) -> bool:
        return self._source is not None

    async def start(
        self,
        runtime: str,
        callback: EventCallback,
        options: Optional[EventsMonitorOptions] = None,
    ) -> None:
        if self.is_active():
            await self.stop()

        self.command = build_events_command(runtime, options or EventsMonitorOptions())
        self._callback = callback
        self._buffer = LineBuffer()

        source = self._source_factory(self.command)
        await source.start()
        self._source = source
        self._reader = asyncio.create_task(self._read_loop(source))
        logger.info(f"Events monitoring started: {' '.join(self.command)}")

    async def stop(self) -> None:
        source, self._source = self._source, None
        reader, self._reader = self._reader, None

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if source is not None:
            await source.stop()
            logger.info("Events monitoring stopped")

    async def feed(self, chunk: Union[bytes, str]) -> None:
        """Process one chunk of raw stream data."""
        for line in self._buffer.push(chunk):
            await self._process_line(line)

    async def _read_loop(self, source: EventSource) -> None:
        try:
            while True:
                chunk = await source.read()
                if not chunk:
                    break
                await self.feed(chunk)
            for line in self._buffer.flush():
                await self._process_line(line)
            logger.warning("Events stream ended")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Events stream reader failed")
        finally:
            if self._source is source:
                self._source = None
                self._reader = None
                await source.stop()

    async def _process_line(self, line: str) -> None:
        try:
            event = parse_event_line(line)
        except EventStreamError as e:
            self.malformed_lines += 1
            logger.warning(f"Skipping malformed container event: {e} ({line[:200]!r})")
            return

        if event is None or self._callback is None:
            return

        self.events_processed += 1
        try:
            await self._callback(event)
        except Exception:
            logger.exception(f"Error handling container {event.action} event")

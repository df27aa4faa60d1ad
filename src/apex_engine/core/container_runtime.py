"""Container engine detection.

Probes the ``docker`` and ``podman`` binaries. A missing or broken engine is
an expected outcome reported through return values, never an exception.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Literal, Optional

from apex_engine.core.process import CommandRunner, run_command

logger = logging.getLogger(__name__)

RuntimeName = Literal["docker", "podman", "none"]

SUPPORTED_RUNTIMES: tuple[str, ...] = ("docker", "podman")

_VERSION_RE = re.compile(r"(\d+\.\d+(?:\.\d+)?)")


@dataclass
class RuntimeInfo:
    """Result of probing one engine binary."""

    name: str
    available: bool
    version: Optional[str] = None
    error: Optional[str] = None


class ContainerRuntime:
    """Detects which container engine is usable on this host."""

    def __init__(
        self,
        command_runner: CommandRunner = run_command,
        probe_timeout: float = 10.0,
    ):
        self._run = command_runner
        self.probe_timeout = probe_timeout
        self._best: Optional[RuntimeName] = None

    async def get_runtime_info(self, name: str) -> RuntimeInfo:
        """Run ``<name> --version`` and ``<name> info``."""
        try:
            version = await self._run([name, "--version"], timeout=self.probe_timeout)
            if not version.ok:
                return RuntimeInfo(name, False, error=version.stderr.strip() or "version check failed")

            # `info` talks to the daemon/service; --version alone succeeds without one
            info = await self._run([name, "info"], timeout=self.probe_timeout)
            if not info.ok:
                return RuntimeInfo(name, False, error=info.stderr.strip() or "engine not responding")
        except FileNotFoundError:
            return RuntimeInfo(name, False, error=f"{name} is not installed")
        except asyncio.TimeoutError:
            return RuntimeInfo(name, False, error=f"{name} probe timed out")
        except OSError as e:
            return RuntimeInfo(name, False, error=str(e))

        match = _VERSION_RE.search(version.stdout)
        return RuntimeInfo(name, True, version=match.group(1) if match else None)

    async def is_runtime_available(self, name: str) -> bool:
        info = await self.get_runtime_info(name)
        if not info.available:
            logger.debug(f"Runtime {name} unavailable: {info.error}")
        return info.available

    async def get_best_runtime(self, refresh: bool = False) -> RuntimeName:
        """Docker first, then podman; ``"none"`` when neither responds."""
        if self._best is not None and not refresh:
            return self._best

        best: RuntimeName = "none"
        for name in SUPPORTED_RUNTIMES:
            if await self.is_runtime_available(name):
                best = name  # type: ignore[assignment]
                break

        if best == "none":
            logger.warning("No container runtime available (tried docker, podman)")
        else:
            logger.info(f"Using container runtime: {best}")

        self._best = best
        return best

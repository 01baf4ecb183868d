"""
External invokers: hand a bear:// URL to the OS and report only whether the
hand-off was attempted. Whether Bear acted on it is learned from the callback.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, runtime_checkable

from bearbridge.core.errors import TransportFailure
from bearbridge.platform import find_open_command

logger = logging.getLogger("BearBridge.Invoker")


@runtime_checkable
class ExternalInvoker(Protocol):
    async def invoke(self, url: str) -> None:
        """Dispatch ``url``. Raise TransportFailure if dispatch could not be attempted."""
        ...


class OpenURLInvoker:
    """Runs the platform's URL opener (``open`` / ``xdg-open``) as an argv list."""

    def __init__(self, open_command: Optional[str] = None, *, launch_timeout: float = 10.0):
        self.open_command = find_open_command(open_command)
        self.launch_timeout = launch_timeout

    async def invoke(self, url: str) -> None:
        if not self.open_command:
            raise TransportFailure("No URL open command available on this platform")

        logger.debug("Dispatching via %s: %s", self.open_command, url)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.open_command,
                url,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransportFailure(f"Failed to launch {self.open_command}: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.launch_timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise TransportFailure(
                f"{self.open_command} did not return within {self.launch_timeout:g}s"
            ) from exc

        if proc.returncode != 0:
            detail = (stderr or b"").decode("utf-8", errors="replace").strip()
            raise TransportFailure(
                f"{self.open_command} refused the URL" + (f": {detail}" if detail else ""),
                returncode=proc.returncode,
            )

"""Discovery file: publishes the running host's RPC port.

The file holds a single decimal port. It is written only after the RPC
listener is bound (via a temp file and an atomic rename, so readers never
see a partial write) and removed when the host shuts down cleanly.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


class DiscoveryFile:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    async def read_port(self) -> int | None:
        """Port recorded in the file, or None if missing or unreadable."""
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                content = (await f.read()).strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Could not read discovery file %s: %s", self.path, e)
            return None

        try:
            port = int(content)
        except ValueError:
            logger.warning("Discovery file %s holds no port: %r", self.path, content[:40])
            return None
        if not 0 < port < 65536:
            logger.warning("Discovery file %s holds an invalid port: %d", self.path, port)
            return None
        return port

    async def write_port(self, port: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(f"{port}\n")
        await aiofiles.os.replace(tmp_path, self.path)
        logger.info("Wrote port %d to discovery file %s", port, self.path)

    def remove(self) -> None:
        try:
            self.path.unlink()
            logger.info("Removed discovery file %s", self.path)
        except FileNotFoundError:
            pass

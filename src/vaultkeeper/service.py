"""
Control of the dependent service stack.

The restore swap must stop the service before Live State is touched. The
stack is a docker compose project; stopping it is ``docker compose down``
and starting it again is ``docker compose up -d``. Waiting for the service
to answer after a start is left to the caller.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from vaultkeeper.errors import RestoreError

logger = logging.getLogger(__name__)

COMPOSE_TIMEOUT_SECONDS = 300


class ComposeService:
    """Stops and starts the compose stack that uses Live State."""

    def __init__(self, compose_file: Path, docker_binary: str = "docker") -> None:
        self.compose_file = Path(compose_file)
        self.docker_binary = docker_binary

    def is_configured(self) -> bool:
        return self.compose_file.is_file()

    def stop(self) -> None:
        """
        Stop the stack.

        A missing compose file means no stack is deployed yet (fresh host),
        which is not an error.

        Raises:
            RestoreError: If the stack exists but does not stop.
        """
        if not self.is_configured():
            logger.warning("No compose file at %s; nothing to stop", self.compose_file)
            return
        logger.info("Stopping service stack")
        self._compose(["down"], action="stop")

    def start(self) -> None:
        """
        Start the stack in the background.

        Raises:
            RestoreError: If the stack is not configured or fails to start.
        """
        if not self.is_configured():
            raise RestoreError(f"Cannot start service: no compose file at {self.compose_file}")
        logger.info("Starting service stack")
        self._compose(["up", "-d"], action="start")

    def _compose(self, args: list[str], action: str) -> None:
        cmd = [self.docker_binary, "compose", "-f", str(self.compose_file), *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.compose_file.parent),
                capture_output=True,
                text=True,
                timeout=COMPOSE_TIMEOUT_SECONDS,
            )
        except (subprocess.SubprocessError, OSError) as e:
            raise RestoreError(f"Could not {action} service: {e}") from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise RestoreError(f"Could not {action} service: {detail or f'exit code {result.returncode}'}")

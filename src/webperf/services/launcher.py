"""Spawning service commands and terminating whole process trees."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from pathlib import Path
from typing import List

import psutil

logger = logging.getLogger(__name__)

IS_WINDOWS = os.name == "nt"
KILL_WAIT_SECONDS = 3.0


class ProcessLauncher:
    """Default launcher: shell commands via ``subprocess``, tree kills via ``psutil``."""

    async def spawn(self, command: str, cwd: Path, detached: bool) -> int:
        """Start ``command`` in ``cwd`` with inherited stdio and return its pid."""
        # Detached children on Windows do not receive tree kills reliably.
        new_session = detached and not IS_WINDOWS
        process = subprocess.Popen(  # noqa: S602 - operator supplied command
            command,
            cwd=str(cwd),
            shell=True,
            start_new_session=new_session,
        )
        return process.pid

    async def kill_tree(self, pid: int) -> None:
        """Forcefully kill ``pid`` and all of its descendants; a missing pid is success."""
        await asyncio.to_thread(_kill_tree_sync, pid)


def _kill_tree_sync(pid: int) -> None:
    try:
        root = psutil.Process(pid)
        victims: List[psutil.Process] = root.children(recursive=True)
    except psutil.NoSuchProcess:
        logger.debug("Process %s already exited", pid)
        return
    victims.append(root)

    for proc in victims:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    _, alive = psutil.wait_procs(victims, timeout=KILL_WAIT_SECONDS)
    for proc in alive:
        logger.warning("Process %s still alive after kill", proc.pid)

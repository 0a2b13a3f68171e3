"""Durable record of spawned service processes shared across tool invocations."""

from __future__ import annotations

import json
import logging
import os
from contextlib import suppress
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackedProcess:
    name: str
    port: int
    pid: int


class ProcessRegistry:
    """Side-file registry of ``{name, port, pid}`` entries.

    Every write rewrites the whole file (read-modify-write, no locking); a single
    operator running one invocation at a time is assumed. Writes go to a sibling
    temp file that replaces the registry only once fully flushed.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> List[TrackedProcess]:
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable process registry %s: %s", self.path, exc)
            return []
        if not isinstance(raw, list):
            logger.warning("Process registry %s is not a JSON array; ignoring", self.path)
            return []

        entries: List[TrackedProcess] = []
        for item in raw:
            try:
                entries.append(TrackedProcess(name=str(item["name"]), port=int(item["port"]), pid=int(item["pid"])))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed registry entry: %r", item)
        return entries

    def save(self, entries: List[TrackedProcess]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(f"{self.path.name}.tmp")
        try:
            with staging.open("w", encoding="utf-8") as handle:
                json.dump([asdict(entry) for entry in entries], handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(staging, self.path)
        except BaseException:
            with suppress(FileNotFoundError):
                staging.unlink()
            raise

    def add(self, entry: TrackedProcess) -> None:
        entries = self.load()
        entries.append(entry)
        self.save(entries)

    def clear(self) -> None:
        with suppress(FileNotFoundError):
            self.path.unlink()

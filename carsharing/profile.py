"""
Car profile publication.

The node periodically adds a JSON profile of the car (static info plus the
live location/speed/lock snapshot) to a content-addressed store and
publishes the resulting hash under the node's name, so renters can look
the car up without talking to it.

The store is a collaborator; only add() and publish() are used here.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from carsharing.actuator import Actuator, snapshot
from carsharing.observability import CarLayer, get_logger

logger = get_logger("profile", CarLayer.PROFILE)


def build_profile(car_info: Dict[str, Any], actuator: Actuator) -> Dict[str, Any]:
    """Profile document: {info, loc, speed, locked}."""
    profile: Dict[str, Any] = {"info": car_info}
    profile.update(snapshot(actuator).to_status())
    return profile


@dataclass(frozen=True)
class StoredObject:
    path: str
    content_hash: str


class ContentStore(Protocol):
    """Content-addressed store collaborator."""

    async def add(self, path: str, content: bytes) -> List[StoredObject]:
        ...

    async def publish(self, content_hash: str) -> None:
        ...


class InMemoryContentStore:
    """Store double; hashes are sha256 of the content."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.published: List[str] = []

    async def add(self, path: str, content: bytes) -> List[StoredObject]:
        content_hash = hashlib.sha256(content).hexdigest()
        self.objects[content_hash] = content
        return [StoredObject(path=path, content_hash=content_hash)]

    async def publish(self, content_hash: str) -> None:
        self.published.append(content_hash)


class ProfilePublisher:
    """Publishes the car profile every interval_seconds until stopped."""

    def __init__(
        self,
        store: ContentStore,
        car_info: Dict[str, Any],
        actuator: Actuator,
        interval_seconds: float = 30.0,
        path: str = "/tmp/profile.txt",
    ):
        self.store = store
        self.car_info = car_info
        self.actuator = actuator
        self.interval_seconds = interval_seconds
        self.path = path
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def publish_once(self) -> Optional[str]:
        """Add and publish the current profile; returns the published hash."""
        content = json.dumps(build_profile(self.car_info, self.actuator)).encode()
        for entry in await self.store.add(self.path, content):
            if entry.path == self.path:
                await self.store.publish(entry.content_hash)
                logger.debug("Profile published", content_hash=entry.content_hash)
                return entry.content_hash
        logger.warning("Content store returned no entry for profile path", path=self.path)
        return None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.publish_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Profile publication failed", error_code="PROFILE_PUBLISH_FAILED", exc_info=True)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

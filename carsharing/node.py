"""
Car Sharing Node Lifecycle

Wires an already-bootstrapped CarContext to its bus subscriptions and the
profile publisher, and tracks the node's lifecycle state. Connecting to the
chain, the broker and the content store happens before the node is built;
failures there are fatal to startup and are not retried here.

Usage:
    ctx = CarContext.from_config(config, account, actuator, authority, channel)
    node = CarSharingNode.from_config(config, ctx, bus, store=store)
    await node.start()
    ...
    await node.shutdown()

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Union

from carsharing.config import CarSharingConfig
from carsharing.ingress import CarContext, IngressAdapter
from carsharing.observability import CarLayer, get_logger
from carsharing.profile import ContentStore, ProfilePublisher

logger = get_logger("node", CarLayer.NODE)

BusHandler = Callable[[str, Union[str, bytes]], Any]
PacketHandler = Callable[[Union[Dict[str, Any], str, bytes]], Any]


class BusClient(Protocol):
    """Legacy pub/sub bus collaborator."""

    def subscribe(self, topic: str, handler: BusHandler) -> None:
        ...

    def unsubscribe(self, topic: str) -> None:
        ...


class ChannelListener(Protocol):
    """Inbound side of the authenticated channel."""

    def listen(self, handler: PacketHandler) -> None:
        ...

    def close(self) -> None:
        ...


class InMemoryBus:
    """Bus double: publish() invokes the subscribed handler synchronously."""

    def __init__(self):
        self.handlers: Dict[str, BusHandler] = {}

    def subscribe(self, topic: str, handler: BusHandler) -> None:
        self.handlers[topic] = handler

    def unsubscribe(self, topic: str) -> None:
        self.handlers.pop(topic, None)

    def publish(self, topic: str, payload: Union[str, bytes]) -> Any:
        handler = self.handlers.get(topic)
        if handler is None:
            return None
        return handler(topic, payload)


class LifecycleState(enum.Enum):
    """Node lifecycle states."""

    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class NodeHealth:
    state: LifecycleState
    healthy: bool
    inflight_messages: int = 0
    profile_publishing: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "healthy": self.healthy,
            "inflight_messages": self.inflight_messages,
            "profile_publishing": self.profile_publishing,
            "details": self.details,
        }


class CarSharingNode:
    """A car's command node: legacy topic, protocol channel, profile timer."""

    def __init__(
        self,
        ctx: CarContext,
        bus: BusClient,
        listener: Optional[ChannelListener] = None,
        store: Optional[ContentStore] = None,
        profile_interval_seconds: float = 30.0,
        profile_path: str = "/tmp/profile.txt",
    ):
        self.ctx = ctx
        self.bus = bus
        self.listener = listener
        self.ingress = IngressAdapter(ctx)
        self.publisher: Optional[ProfilePublisher] = None
        if store is not None:
            self.publisher = ProfilePublisher(
                store,
                ctx.car_info,
                ctx.actuator,
                interval_seconds=profile_interval_seconds,
                path=profile_path,
            )
        self._state = LifecycleState.CREATED
        self._started_at: Optional[float] = None

    @classmethod
    def from_config(
        cls,
        config: CarSharingConfig,
        ctx: CarContext,
        bus: BusClient,
        listener: Optional[ChannelListener] = None,
        store: Optional[ContentStore] = None,
    ) -> "CarSharingNode":
        """Build a node whose profile timer follows the profile section."""
        return cls(
            ctx,
            bus,
            listener=listener,
            store=store,
            profile_interval_seconds=config.profile.publish_interval_seconds.get(),
            profile_path=config.profile.profile_path.get(),
        )

    @property
    def state(self) -> LifecycleState:
        return self._state

    def _set_state(self, state: LifecycleState) -> None:
        old_state = self._state
        self._state = state
        logger.debug(f"Node {old_state.value} -> {state.value}")

    async def start(self) -> None:
        """Subscribe to inbound traffic and start profile publication."""
        if self._state not in (LifecycleState.CREATED, LifecycleState.STOPPED):
            return
        try:
            self.bus.subscribe(self.ctx.command_topic, self.ingress.on_bus_message)
            if self.listener is not None:
                self.listener.listen(self.ingress.on_protocol_message)
            if self.publisher is not None:
                self.publisher.start()
        except Exception as e:
            self._set_state(LifecycleState.FAILED)
            logger.error(f"Node failed to start: {e}", error_code="NODE_START_FAILED")
            raise
        self._started_at = time.time()
        self._set_state(LifecycleState.RUNNING)
        logger.info("Car sharing node booted", account=self.ctx.account, topic=self.ctx.command_topic)

    async def shutdown(self) -> None:
        """Stop accepting traffic, finish in-flight messages, stop the timer."""
        if self._state != LifecycleState.RUNNING:
            return
        self._set_state(LifecycleState.STOPPING)
        self.bus.unsubscribe(self.ctx.command_topic)
        if self.listener is not None:
            self.listener.close()
        if self.publisher is not None:
            await self.publisher.stop()
        await self.ingress.drain()
        self._set_state(LifecycleState.STOPPED)

    def health(self) -> NodeHealth:
        uptime = time.time() - self._started_at if self._started_at else 0.0
        return NodeHealth(
            state=self._state,
            healthy=self._state == LifecycleState.RUNNING,
            inflight_messages=self.ingress.inflight,
            profile_publishing=bool(self.publisher and self.publisher.running),
            details={"uptime_seconds": round(uptime, 3)},
        )

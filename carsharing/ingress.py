"""
Ingress Adapter

Entry point for everything the car receives from the bus:

    legacy topic   -> SignatureVerifier -> ReplayGuard -> PermissionAuthority
                      -> CommandDispatcher
    protocol chan  -> ProtocolRouter

Every inbound message is handled in its own asyncio task. Permission
queries of independent commands therefore overlap and may finish in any
order; within one message the steps run strictly in sequence and stop at
the first failure. Failures are logged and recorded per message and never
escape into the bus client or affect other messages.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set, Union

from carsharing.actuator import Actuator, CommandDispatcher
from carsharing.authority import PermissionAuthority, PermissionPolicy
from carsharing.config import CarSharingConfig
from carsharing.hardening import AuthorityUnavailable, InvariantViolation, MalformedEnvelope
from carsharing.observability import (
    CarLayer,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)
from carsharing.protocol import ProtocolChannel, ProtocolMessage, ProtocolRouter
from carsharing.security import (
    DecisionLog,
    DecisionRecord,
    RejectReason,
    SignatureVerifier,
    VerificationResult,
)

logger = get_logger("ingress", CarLayer.INGRESS)


class TopicKind(Enum):
    """Bus topics the node subscribes to."""
    CAR_COMMANDS = "car_commands"


@dataclass
class CarContext:
    """
    Everything a message handler needs, passed explicitly.

    Replaces process-wide client/account/contract handles so tests can
    swap in doubles for the authority, actuator and channel.
    """
    account: str
    actuator: Actuator
    authority: PermissionAuthority
    channel: ProtocolChannel
    verifier: SignatureVerifier
    policy: PermissionPolicy = field(default_factory=PermissionPolicy)
    car_info: Dict[str, Any] = field(default_factory=dict)
    command_topic: str = "car/commands/carsharing"
    allow_unsigned_tokens: bool = True
    decisions: DecisionLog = field(default_factory=DecisionLog)

    @classmethod
    def from_config(
        cls,
        config: CarSharingConfig,
        account: str,
        actuator: Actuator,
        authority: PermissionAuthority,
        channel: ProtocolChannel,
    ) -> "CarContext":
        command = config.command
        return cls(
            account=account,
            actuator=actuator,
            authority=authority,
            channel=channel,
            verifier=SignatureVerifier(ttl_seconds=command.message_ttl_seconds.get()),
            policy=PermissionPolicy(
                min_level=command.min_permission_level.get(),
                force_error_code_zero=command.force_authority_error_code_zero.get(),
            ),
            car_info=dict(config.asset.info.get()),
            command_topic=command.command_topic.get(),
            allow_unsigned_tokens=command.allow_unsigned_tokens.get(),
        )


class IngressAdapter:
    """Feeds raw bus messages and protocol packets into the pipeline."""

    def __init__(self, ctx: CarContext):
        self.ctx = ctx
        self.dispatcher = CommandDispatcher(ctx.actuator)
        self.router = ProtocolRouter(ctx.channel, ctx.actuator, self.dispatcher, ctx.car_info)
        self._topics: Dict[str, TopicKind] = {ctx.command_topic: TopicKind.CAR_COMMANDS}
        self._inflight: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def on_bus_message(self, topic: str, payload: Union[str, bytes]) -> Optional[asyncio.Task]:
        """Bus client callback; must be called from the event loop thread."""
        kind = self._topics.get(topic)
        if kind is None:
            logger.warning("Unable to process topic", topic=topic)
            return None
        return self._spawn(self.handle_topic(kind, payload))

    def on_protocol_message(self, packet: Union[Dict[str, Any], str, bytes]) -> asyncio.Task:
        """Authenticated channel callback; must be called from the event loop thread."""
        return self._spawn(self.handle_protocol_packet(packet))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guarded(coro))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _guarded(self, coro) -> Any:
        set_correlation_id(generate_correlation_id())
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Message handling failed", error_code="HANDLER_FAILED", exc_info=True)
            return None

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def drain(self) -> None:
        """Wait until every scheduled message has been handled."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def handle_topic(self, kind: TopicKind, payload: Union[str, bytes]) -> Optional[DecisionRecord]:
        if kind is TopicKind.CAR_COMMANDS:
            return await self.process_car_command(payload)
        raise InvariantViolation(f"No handler for topic kind {kind}")

    async def handle_protocol_packet(
        self,
        packet: Union[Dict[str, Any], str, bytes],
    ) -> Optional[ProtocolMessage]:
        try:
            msg = ProtocolMessage.from_dict(packet)
        except MalformedEnvelope as e:
            logger.warning(
                "Dropping malformed protocol message",
                error_code=RejectReason.MALFORMED_ENVELOPE.value,
                detail=str(e),
            )
            return None
        return await self.router.route(msg)

    async def process_car_command(self, payload: Union[str, bytes]) -> DecisionRecord:
        """
        Verify, authorize and dispatch one legacy command envelope.

        Returns the decision recorded for the message.
        """
        text = payload.decode("utf-8", "replace") if isinstance(payload, bytes) else payload
        logger.info("Received new message", operation="receive", payload=text.strip()[:512])

        result = self.ctx.verifier.verify(payload)
        if not result.passed:
            return self._reject(result, result.reason, "Envelope verification failed")

        if result.unsigned:
            if not self.ctx.allow_unsigned_tokens:
                return self._reject(result, RejectReason.UNAUTHORIZED, "Unsigned command tokens are disabled")
            logger.warning(
                "Dispatching UNSIGNED command token without signature or permission check",
                error_code="UNSIGNED_COMMAND",
                cmd=result.cmd.value,
            )
            return self._dispatch(result, unsigned=True)

        logger.info("Checking user permission", operation="check_permission", address=result.address)
        try:
            decision = await self.ctx.authority.check_permission(result.address)
        except AuthorityUnavailable as e:
            logger.error(
                "Permission authority unavailable; command dropped",
                error_code=RejectReason.AUTHORITY_UNAVAILABLE.value,
                address=result.address,
                detail=str(e),
            )
            return self._record(result, RejectReason.AUTHORITY_UNAVAILABLE)

        if not self.ctx.policy.authorizes(decision, result.address):
            return self._reject(
                result,
                RejectReason.UNAUTHORIZED,
                "Permission denied",
                authority_error_code=decision.error_code,
                permission_level=decision.level,
                min_level=self.ctx.policy.min_level,
            )

        logger.info("User permission granted", address=result.address, permission_level=decision.level)
        return self._dispatch(result, permission_level=decision.level)

    def _dispatch(self, result: VerificationResult, **details: Any) -> DecisionRecord:
        outcome = self.dispatcher.execute(result.cmd)
        return self._record(result, outcome.reason, **details)

    def _reject(
        self,
        result: VerificationResult,
        reason: RejectReason,
        message: str,
        **details: Any,
    ) -> DecisionRecord:
        logger.warning(message, error_code=reason.value, address=result.address, **details)
        return self._record(result, reason, **details)

    def _record(self, result: VerificationResult, reason: RejectReason, **details: Any) -> DecisionRecord:
        return self.ctx.decisions.record(get_correlation_id(), reason, result, **details)

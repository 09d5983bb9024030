"""
Authenticated Protocol Channel

Typed request/response/command messages exchanged with renters' apps over
the authenticated channel. The channel itself (signing, broker) is a
collaborator; this module classifies decoded messages and answers them.

    request  / getprofile | getstatus   -> one response to the sender
    command  / lock | unlock            -> dispatch, then one response
    response                            -> terminal, nothing sent
    anything else                       -> logged, dropped

Unsupported request or command data gets no reply at all, which looks the
same as message loss to the sender. Command responses only say the command
was accepted for execution, not that the car actually changed state.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from carsharing.actuator import Actuator, CommandDispatcher, snapshot
from carsharing.envelope import CarCommand
from carsharing.hardening import InvariantViolation, MalformedEnvelope
from carsharing.observability import CarLayer, get_logger
from carsharing.security import RejectReason

logger = get_logger("router", CarLayer.PROTOCOL)


class MessageType(Enum):
    REQUEST = "request"
    RESPONSE = "response"
    COMMAND = "command"


class RequestKind(Enum):
    GET_PROFILE = "getprofile"
    GET_STATUS = "getstatus"


@dataclass(frozen=True)
class ProtocolMessage:
    """
    One message of the authenticated channel.

    type holds the raw string when it is not a known MessageType, so the
    router can log what it dropped.
    """
    type: Union[MessageType, str]
    from_: str
    to: str
    data: str

    @classmethod
    def from_dict(cls, raw: Union[Dict[str, Any], str, bytes]) -> "ProtocolMessage":
        """
        Build a message from a decoded channel packet.

        Raises:
            MalformedEnvelope: packet is not an object with a type and
                string from/data fields
        """
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise MalformedEnvelope(f"Protocol message is not JSON: {e}") from e
        if not isinstance(raw, dict):
            raise MalformedEnvelope("Protocol message must be an object")

        if "type" not in raw:
            raise MalformedEnvelope("Protocol message is missing 'type'")
        for key in ("from", "data"):
            if not isinstance(raw.get(key), str):
                raise MalformedEnvelope(f"Protocol message is missing '{key}'")

        # Unknown types, including non-string ones, are routed as unsupported.
        raw_type = raw["type"]
        if not isinstance(raw_type, str):
            raw_type = str(raw_type)
        try:
            msg_type: Union[MessageType, str] = MessageType(raw_type)
        except ValueError:
            msg_type = raw_type

        return cls(type=msg_type, from_=raw["from"], to=str(raw.get("to", "")), data=raw["data"])

    def to_dict(self) -> Dict[str, Any]:
        msg_type = self.type.value if isinstance(self.type, MessageType) else self.type
        return {"type": msg_type, "from": self.from_, "to": self.to, "data": self.data}


class ProtocolChannel(Protocol):
    """Authenticated channel collaborator."""

    account: str

    async def send(self, to: str, data: str, msg_type: MessageType) -> None:
        """Send data to identity to as a message of msg_type."""
        ...


class InMemoryChannel:
    """Channel double that records outgoing messages and delivers inbound ones."""

    def __init__(self, account: str):
        self.account = account
        self.sent: List[ProtocolMessage] = []
        self._handler: Optional[Callable[[Any], Any]] = None

    async def send(self, to: str, data: str, msg_type: MessageType) -> None:
        self.sent.append(ProtocolMessage(type=msg_type, from_=self.account, to=to, data=data))

    def listen(self, handler: Callable[[Any], Any]) -> None:
        self._handler = handler

    def close(self) -> None:
        self._handler = None

    def deliver(self, packet: Union[Dict[str, Any], str, bytes]) -> Any:
        """Hand an inbound packet to the listener, as the broker client would."""
        if self._handler is None:
            return None
        return self._handler(packet)

    def responses_to(self, identity: str) -> List[ProtocolMessage]:
        return [m for m in self.sent if m.to == identity and m.type == MessageType.RESPONSE]


Handler = Callable[[ProtocolMessage], Awaitable[Optional[ProtocolMessage]]]


class ProtocolRouter:
    """
    Stateless per-message router for the authenticated channel.

    Dispatch tables are keyed by enum members and checked for completeness
    on construction, so adding a MessageType, RequestKind or CarCommand
    without a handler fails loudly instead of falling into a default.
    """

    def __init__(
        self,
        channel: ProtocolChannel,
        actuator: Actuator,
        dispatcher: CommandDispatcher,
        car_info: Dict[str, Any],
    ):
        self.channel = channel
        self.actuator = actuator
        self.dispatcher = dispatcher
        self.car_info = car_info

        self._type_handlers: Dict[MessageType, Handler] = {
            MessageType.REQUEST: self._process_request,
            MessageType.RESPONSE: self._process_response,
            MessageType.COMMAND: self._process_command,
        }
        self._request_handlers: Dict[RequestKind, Callable[[], Dict[str, Any]]] = {
            RequestKind.GET_PROFILE: self._profile_payload,
            RequestKind.GET_STATUS: self._status_payload,
        }
        self._command_results: Dict[CarCommand, str] = {
            CarCommand.LOCK: "locked",
            CarCommand.UNLOCK: "unlocked",
        }
        self._check_exhaustive(self._type_handlers, MessageType)
        self._check_exhaustive(self._request_handlers, RequestKind)
        self._check_exhaustive(self._command_results, CarCommand)

    @staticmethod
    def _check_exhaustive(table: Dict[Any, Any], enum_type: type) -> None:
        missing = set(enum_type) - set(table)
        if missing:
            raise InvariantViolation(
                f"No handler for {enum_type.__name__} members: {sorted(m.value for m in missing)}"
            )

    async def route(self, msg: ProtocolMessage) -> Optional[ProtocolMessage]:
        """Handle one message; returns the response sent, if any."""
        if not isinstance(msg.type, MessageType):
            logger.warning(
                "Unsupported protocol message type",
                error_code=RejectReason.UNSUPPORTED_MESSAGE_TYPE.value,
                type=str(msg.type),
                sender=msg.from_,
            )
            return None
        return await self._type_handlers[msg.type](msg)

    async def _reply(self, msg: ProtocolMessage, payload: Dict[str, Any]) -> ProtocolMessage:
        data = json.dumps(payload)
        await self.channel.send(msg.from_, data, MessageType.RESPONSE)
        return ProtocolMessage(
            type=MessageType.RESPONSE,
            from_=self.channel.account,
            to=msg.from_,
            data=data,
        )

    async def _process_response(self, msg: ProtocolMessage) -> None:
        logger.debug("Response received", sender=msg.from_)
        return None

    async def _process_request(self, msg: ProtocolMessage) -> Optional[ProtocolMessage]:
        logger.info("Processing request", operation="request", data=msg.data, sender=msg.from_)
        try:
            kind = RequestKind(msg.data)
        except ValueError:
            logger.warning(
                "Unsupported request",
                error_code=RejectReason.UNSUPPORTED_REQUEST.value,
                data=msg.data,
                sender=msg.from_,
            )
            return None
        return await self._reply(msg, self._request_handlers[kind]())

    async def _process_command(self, msg: ProtocolMessage) -> Optional[ProtocolMessage]:
        logger.info("Processing command", operation="command", data=msg.data, sender=msg.from_)
        command = CarCommand.parse(msg.data)
        if command is None:
            logger.warning(
                "Unsupported command",
                error_code=RejectReason.UNSUPPORTED_COMMAND.value,
                data=msg.data,
                sender=msg.from_,
            )
            return None
        self.dispatcher.execute(command)
        return await self._reply(msg, {"err": None, "result": self._command_results[command]})

    def _profile_payload(self) -> Dict[str, Any]:
        return {"info": self.car_info}

    def _status_payload(self) -> Dict[str, Any]:
        return snapshot(self.actuator).to_status()

"""
Command envelopes received on the legacy command topic.

Three shapes share the topic:

    lock / unlock                         bare token, unsigned
    {"msg", "sig", "address"?, ...}       ad hoc signed message (MyEtherWallet)
    {"msg", "date", "sig"}                dated signed message (Oaken)

The presence of a "date" key is the only thing that selects the dated
format. Envelopes are immutable once parsed.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from carsharing.hardening import MalformedEnvelope, Validators


class CarCommand(Enum):
    """The finite set of commands the actuator understands."""
    LOCK = "lock"
    UNLOCK = "unlock"

    @classmethod
    def parse(cls, value: Any) -> Optional["CarCommand"]:
        """Return the command for value, or None when it is not supported."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class EnvelopeFormat(Enum):
    BARE = "bare"
    ADHOC = "adhoc"
    DATED = "dated"


@dataclass(frozen=True)
class BareToken:
    """Unsigned lock/unlock token. No signature, no permission check."""
    command: CarCommand

    format = EnvelopeFormat.BARE


@dataclass(frozen=True)
class AdhocEnvelope:
    """Ad hoc signed message: personal_sign over the message text."""
    message: str
    signature: str
    claimed_address: Optional[str] = None

    format = EnvelopeFormat.ADHOC

    def signed_text(self) -> str:
        return self.message


@dataclass(frozen=True)
class DatedEnvelope:
    """Dated signed message: personal_sign over canonical {date, msg} JSON."""
    message: str
    date: Any
    timestamp: float
    signature: str

    format = EnvelopeFormat.DATED

    def signed_text(self) -> str:
        return dated_signed_text(self.message, self.date)


SignedEnvelope = Union[AdhocEnvelope, DatedEnvelope]
CommandEnvelope = Union[BareToken, AdhocEnvelope, DatedEnvelope]


def dated_signed_text(message: str, date: Any) -> str:
    """The exact text a dated envelope's signature covers."""
    return json.dumps({"date": date, "msg": message}, sort_keys=True, separators=(",", ":"))


def _require(result, what: str):
    if not result.is_valid:
        raise MalformedEnvelope(f"Invalid {what}: {result.errors[0].message}")
    return result.sanitized_value


def parse_envelope(raw: Union[str, bytes]) -> CommandEnvelope:
    """
    Parse a raw bus payload into a command envelope.

    Raises:
        MalformedEnvelope: payload is not a bare token and not a JSON
            object carrying the fields of either signed format.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEnvelope("Payload is not valid UTF-8") from e

    text = raw.strip()
    if text in (CarCommand.LOCK.value, CarCommand.UNLOCK.value):
        return BareToken(CarCommand(text))

    try:
        body = json.loads(text)
    except ValueError as e:
        raise MalformedEnvelope(f"Payload is neither a command token nor JSON: {e}") from e
    if not isinstance(body, dict):
        raise MalformedEnvelope("Signed envelope must be a JSON object")

    message = body.get("msg")
    if not isinstance(message, str):
        raise MalformedEnvelope("Signed envelope is missing the 'msg' text")
    signature = body.get("sig")
    if not isinstance(signature, str):
        raise MalformedEnvelope("Signed envelope is missing the 'sig' text")

    if "date" not in body:
        claimed = body.get("address")
        if claimed is not None:
            claimed = _require(Validators.validate_address(claimed), "address")
        return AdhocEnvelope(message=message, signature=signature, claimed_address=claimed)

    timestamp = _require(Validators.validate_timestamp(body["date"]), "date")
    return DatedEnvelope(
        message=message,
        date=body["date"],
        timestamp=timestamp,
        signature=signature,
    )

"""
Car Sharing Security Layer

Signature verification and replay protection for command envelopes:

1. Signer Recovery - Ethereum personal_sign recovery over secp256k1
2. Replay Window - dated envelopes expire after a fixed TTL
3. Signature Verification - one pass/fail result per envelope
4. Decision Audit - hash-chained trail of every dispatch decision

Security Model:
    - Fail-secure: any parsing or recovery error yields a rejected result
    - Ad hoc signed messages carry no timestamp and are NOT replay
      protected; a captured ad hoc envelope stays valid forever. Only the
      dated format goes through ReplayGuard.
    - Bare lock/unlock tokens carry no signature at all; verification
      passes them through flagged as unsigned so the ingress can skip the
      permission check and warn operators.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from coincurve import PrivateKey, PublicKey

from carsharing.envelope import (
    AdhocEnvelope,
    BareToken,
    CarCommand,
    DatedEnvelope,
    EnvelopeFormat,
    SignedEnvelope,
    dated_signed_text,
    parse_envelope,
)
from carsharing.hardening import (
    CryptoUtils,
    MalformedEnvelope,
    SecurityViolation,
    Validators,
)


class RejectReason(Enum):
    """Outcome discriminator carried by every verification and decision."""
    OK = "OK"
    MALFORMED_ENVELOPE = "MALFORMED_ENVELOPE"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    STALE = "STALE"
    AUTHORITY_UNAVAILABLE = "AUTHORITY_UNAVAILABLE"
    UNAUTHORIZED = "UNAUTHORIZED"
    UNSUPPORTED_COMMAND = "UNSUPPORTED_COMMAND"
    UNSUPPORTED_REQUEST = "UNSUPPORTED_REQUEST"
    UNSUPPORTED_MESSAGE_TYPE = "UNSUPPORTED_MESSAGE_TYPE"


# =============================================================================
# ETHEREUM SIGNER RECOVERY
# =============================================================================

PERSONAL_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n"


def personal_message_hash(text: Union[str, bytes]) -> bytes:
    """Keccak-256 of the EIP-191 personal message wrapping of text."""
    if isinstance(text, str):
        text = text.encode("utf-8")
    return CryptoUtils.keccak256(PERSONAL_MESSAGE_PREFIX + str(len(text)).encode() + text)


def address_from_public_key(public_key: PublicKey) -> str:
    """Ethereum address (lowercase 0x hex) of a secp256k1 public key."""
    uncompressed = public_key.format(compressed=False)
    return "0x" + CryptoUtils.keccak256(uncompressed[1:])[-20:].hex()


def recover_address(text: str, signature: bytes) -> str:
    """
    Recover the signer address from a 65-byte r||s||v signature.

    v may be 27/28 (Ethereum convention) or 0/1 (raw recovery id).

    Raises:
        SecurityViolation: signature is malformed or does not recover
    """
    if len(signature) != Validators.SIGNATURE_LENGTH:
        raise SecurityViolation(f"Signature must be {Validators.SIGNATURE_LENGTH} bytes")

    v = signature[64]
    if v >= 27:
        v -= 27
    if v not in (0, 1):
        raise SecurityViolation(f"Unsupported recovery id {signature[64]}")

    recoverable = signature[:64] + bytes([v])
    try:
        public_key = PublicKey.from_signature_and_message(
            recoverable, personal_message_hash(text), hasher=None
        )
    except (ValueError, TypeError) as e:
        raise SecurityViolation(f"Signature recovery failed: {e}") from e

    return address_from_public_key(public_key)


def _private_key(key: Union[str, bytes, PrivateKey]) -> PrivateKey:
    if isinstance(key, PrivateKey):
        return key
    if isinstance(key, str):
        key = bytes.fromhex(key[2:] if key.startswith("0x") else key)
    return PrivateKey(key)


def address_of(key: Union[str, bytes, PrivateKey]) -> str:
    """Ethereum address controlled by a private key."""
    return address_from_public_key(_private_key(key).public_key)


def sign_personal_message(key: Union[str, bytes, PrivateKey], text: str) -> str:
    """personal_sign text, returning 0x-prefixed r||s||v hex with v in {27, 28}."""
    raw = _private_key(key).sign_recoverable(personal_message_hash(text), hasher=None)
    return "0x" + (raw[:64] + bytes([raw[64] + 27])).hex()


def make_adhoc_envelope(
    key: Union[str, bytes, PrivateKey],
    message: str,
    include_address: bool = True,
) -> str:
    """Build an ad hoc (MyEtherWallet style) signed envelope."""
    body: Dict[str, Any] = {"msg": message, "sig": sign_personal_message(key, message)}
    if include_address:
        body["address"] = address_of(key)
        body["version"] = "2"
    return json.dumps(body)


def make_dated_envelope(
    key: Union[str, bytes, PrivateKey],
    message: str,
    date: Any,
) -> str:
    """Build a dated (Oaken style) signed envelope."""
    signature = sign_personal_message(key, dated_signed_text(message, date))
    return json.dumps({"msg": message, "date": date, "sig": signature})


# =============================================================================
# REPLAY GUARD
# =============================================================================

class ReplayGuard:
    """
    Maximum-age check for dated envelopes.

    A timestamp is fresh iff it is not in the future and is at most ttl
    seconds old. There is no nonce memory: a dated envelope can be replayed
    any number of times inside its window.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def is_fresh(timestamp: float, ttl: float, now: float) -> bool:
        """True iff 0 <= now - timestamp <= ttl."""
        if timestamp > now:
            return False
        return now - timestamp <= ttl

    def check(self, timestamp: float, now: Optional[float] = None) -> bool:
        """Freshness against the configured TTL and clock."""
        return self.is_fresh(timestamp, self.ttl_seconds, self._clock() if now is None else now)


# =============================================================================
# SIGNATURE VERIFIER
# =============================================================================

@dataclass(frozen=True)
class VerificationResult:
    """Self-describing outcome of verifying one envelope."""
    passed: bool
    reason: RejectReason
    address: Optional[str] = None
    cmd: Optional[CarCommand] = None
    format: Optional[EnvelopeFormat] = None

    @property
    def unsigned(self) -> bool:
        return self.format == EnvelopeFormat.BARE

    @classmethod
    def ok(
        cls,
        cmd: CarCommand,
        envelope_format: EnvelopeFormat,
        address: Optional[str] = None,
    ) -> "VerificationResult":
        return cls(True, RejectReason.OK, address, cmd, envelope_format)

    @classmethod
    def reject(
        cls,
        reason: RejectReason,
        envelope_format: Optional[EnvelopeFormat] = None,
    ) -> "VerificationResult":
        return cls(False, reason, None, None, envelope_format)


class SignatureVerifier:
    """
    Validates a raw envelope against the two legacy signed formats.

    verify() is a pure function of (envelope, ttl, now): it never touches
    the network, the actuator, or any shared state.
    """

    def __init__(
        self,
        ttl_seconds: float,
        replay_guard: Optional[ReplayGuard] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self.replay_guard = replay_guard or ReplayGuard(ttl_seconds, clock)

    @property
    def ttl_seconds(self) -> float:
        return self.replay_guard.ttl_seconds

    def verify(self, raw: Union[str, bytes], now: Optional[float] = None) -> VerificationResult:
        """Verify a raw payload, returning exactly one result."""
        try:
            envelope = parse_envelope(raw)
        except MalformedEnvelope:
            return VerificationResult.reject(RejectReason.MALFORMED_ENVELOPE)

        if isinstance(envelope, BareToken):
            return VerificationResult.ok(envelope.command, EnvelopeFormat.BARE)

        return self.verify_signed(envelope, self._clock() if now is None else now)

    def verify_signed(self, envelope: SignedEnvelope, now: float) -> VerificationResult:
        fmt = envelope.format
        signature = Validators.validate_signature(envelope.signature)
        if not signature.is_valid:
            return VerificationResult.reject(RejectReason.BAD_SIGNATURE, fmt)

        try:
            address = recover_address(envelope.signed_text(), signature.sanitized_value)
        except SecurityViolation:
            return VerificationResult.reject(RejectReason.BAD_SIGNATURE, fmt)

        if isinstance(envelope, AdhocEnvelope) and envelope.claimed_address is not None:
            if not CryptoUtils.secure_compare_str(envelope.claimed_address, address):
                return VerificationResult.reject(RejectReason.BAD_SIGNATURE, fmt)

        if isinstance(envelope, DatedEnvelope):
            if not self.replay_guard.is_fresh(envelope.timestamp, self.ttl_seconds, now):
                return VerificationResult.reject(RejectReason.STALE, fmt)

        cmd = CarCommand.parse(envelope.message.strip())
        if cmd is None:
            return VerificationResult.reject(RejectReason.UNSUPPORTED_COMMAND, fmt)

        return VerificationResult.ok(cmd, fmt, address)


# =============================================================================
# DECISION AUDIT
# =============================================================================

@dataclass
class DecisionRecord:
    """One dispatch decision of the legacy command pipeline."""
    sequence: int
    timestamp: str
    correlation_id: str
    outcome: str  # dispatched, rejected
    reason: RejectReason
    envelope_format: Optional[str] = None
    address: Optional[str] = None
    cmd: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    previous_digest: Optional[str] = None
    digest: str = ""

    def __post_init__(self):
        if not self.digest:
            self.digest = self._compute_digest()

    def _compute_digest(self) -> str:
        content = {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "correlation_id": self.correlation_id,
            "outcome": self.outcome,
            "reason": self.reason.value,
            "envelope_format": self.envelope_format,
            "address": self.address,
            "cmd": self.cmd,
            "previous_digest": self.previous_digest,
        }
        canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    @property
    def dispatched(self) -> bool:
        return self.outcome == "dispatched"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "correlation_id": self.correlation_id,
            "outcome": self.outcome,
            "reason": self.reason.value,
            "envelope_format": self.envelope_format,
            "address": self.address,
            "cmd": self.cmd,
            "details": self.details,
            "digest": self.digest,
        }


class DecisionLog:
    """
    Tamper-evident in-memory trail of dispatch decisions.

    Each record's digest covers the previous record's digest, so editing
    or dropping an entry breaks verify_chain().
    """

    def __init__(self, max_records: int = 10000):
        self._records: List[DecisionRecord] = []
        self._lock = threading.Lock()
        self._sequence = 0
        self._max_records = max_records

    def record(
        self,
        correlation_id: str,
        reason: RejectReason,
        result: Optional[VerificationResult] = None,
        **details: Any,
    ) -> DecisionRecord:
        with self._lock:
            self._sequence += 1
            previous = self._records[-1].digest if self._records else None
            entry = DecisionRecord(
                sequence=self._sequence,
                timestamp=datetime.now(timezone.utc).isoformat(),
                correlation_id=correlation_id,
                outcome="dispatched" if reason == RejectReason.OK else "rejected",
                reason=reason,
                envelope_format=result.format.value if result and result.format else None,
                address=result.address if result else None,
                cmd=result.cmd.value if result and result.cmd else None,
                details=details,
                previous_digest=previous,
            )
            self._records.append(entry)
            if len(self._records) > self._max_records:
                del self._records[0]
            return entry

    def records(self) -> List[DecisionRecord]:
        with self._lock:
            return list(self._records)

    def verify_chain(self) -> bool:
        """Recompute every digest and check the links between records."""
        with self._lock:
            records = list(self._records)
        for i, entry in enumerate(records):
            if entry.digest != entry._compute_digest():
                return False
            if i > 0 and entry.previous_digest != records[i - 1].digest:
                return False
        return True

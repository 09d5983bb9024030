"""
Car Sharing Validation and Hardening Module

Validation, error types, and cryptographic helpers shared by the command
authorization pipeline:

1. Error hierarchy for envelope, signature and authority failures
2. Input validators with sanitization (addresses, signatures, timestamps)
3. Cryptographic utilities (constant-time comparison, Keccak-256)

Security Model:
    - All inbound envelopes are untrusted until validated
    - Signature material is compared in constant time
    - Errors raised here are absorbed per message by the ingress layer

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hmac
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from Crypto.Hash import keccak


# =============================================================================
# ERROR TYPES
# =============================================================================

class CarSharingError(Exception):
    """Base exception for the car sharing node."""
    pass


class ValidationError(CarSharingError):
    """Base exception for validation failures."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class MalformedEnvelope(CarSharingError):
    """Payload is neither a bare token nor a recognized signed envelope."""
    pass


class SecurityViolation(CarSharingError):
    """Security constraint violated (e.g. signature cannot be recovered)."""
    pass


class InvariantViolation(CarSharingError):
    """Internal invariant violated (e.g. a dispatch table misses a case)."""
    pass


class AuthorityUnavailable(CarSharingError):
    """The permission authority query itself failed."""

    def __init__(self, address: str, cause: Optional[BaseException] = None):
        self.address = address
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Permission authority unavailable for {address}{detail}")


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sanitized_value: Any = None

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# TIMESTAMP UTILITIES
# =============================================================================

def parse_iso_timestamp(timestamp: str) -> datetime:
    """
    Parse an ISO 8601 timestamp.

    Handles "Z" suffixes, explicit offsets and fractional seconds. A
    timestamp without timezone is taken as UTC.

    Raises:
        ValueError: If timestamp cannot be parsed
    """
    if not timestamp:
        raise ValueError("Empty timestamp")

    normalized = timestamp.strip().replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(normalized)
    except ValueError as e:
        raise ValueError(f"Cannot parse timestamp: {timestamp}") from e

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt


def to_unix_seconds(value: Any) -> float:
    """
    Convert an embedded envelope date to Unix seconds.

    Accepts integers/floats (Unix seconds) and ISO 8601 strings. Booleans
    are rejected even though they are ints in Python, and so are values
    that do not fit a finite float (NaN, Infinity, huge integers).
    """
    if isinstance(value, bool):
        raise ValueError("Boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return _finite(value)
    if isinstance(value, str):
        stripped = value.strip()
        if re.fullmatch(r"-?\d+(\.\d+)?", stripped):
            return _finite(stripped)
        return parse_iso_timestamp(stripped).timestamp()
    raise ValueError(f"Unsupported timestamp type {type(value).__name__}")


def _finite(value: Union[int, float, str]) -> float:
    try:
        seconds = float(value)
    except OverflowError as e:
        raise ValueError("Timestamp out of range") from e
    if not math.isfinite(seconds):
        raise ValueError("Timestamp out of range")
    return seconds


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    HEX40_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')
    HEX_PATTERN = re.compile(r'^[a-f0-9]*$')

    MAX_STRING_LENGTH = 4096
    SIGNATURE_LENGTH = 65

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: Optional[int] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        errors = []

        if not isinstance(value, str):
            errors.append(ValidationError(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        sanitized = value.strip().replace('\x00', '')

        if len(sanitized) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} chars)", value))

        if len(sanitized) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} chars)", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_address(cls, value: Any, field_name: str = "address") -> ValidationResult:
        """Validate an Ethereum address, returning it lowercased."""
        result = cls.validate_string(value, field_name, min_length=42, max_length=42)
        if not result.is_valid:
            return result

        lower = result.sanitized_value.lower()
        if not cls.HEX40_PATTERN.match(lower):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be valid Ethereum address (0x + 40 hex)", value)
            ])

        return ValidationResult.success(lower)

    @classmethod
    def validate_signature(cls, value: Any, field_name: str = "sig") -> ValidationResult:
        """Validate a 65-byte recoverable signature given as (0x-prefixed) hex."""
        result = cls.validate_string(value, field_name, min_length=2)
        if not result.is_valid:
            return result

        hex_value = result.sanitized_value.lower()
        if hex_value.startswith("0x"):
            hex_value = hex_value[2:]
        if not cls.HEX_PATTERN.match(hex_value) or len(hex_value) % 2:
            return ValidationResult.failure([
                ValidationError(field_name, "Invalid hex string", value)
            ])

        return cls.validate_bytes(
            bytes.fromhex(hex_value),
            field_name,
            min_length=cls.SIGNATURE_LENGTH,
            max_length=cls.SIGNATURE_LENGTH,
        )

    @classmethod
    def validate_bytes(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: int = 65536,
    ) -> ValidationResult:
        """Validate bytes."""
        errors = []

        if not isinstance(value, bytes):
            errors.append(ValidationError(field_name, f"Expected bytes, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        if len(value) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} bytes)", value))

        if len(value) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} bytes)", value))

        if errors:
            return ValidationResult.failure(errors)

        return ValidationResult.success(value)

    @classmethod
    def validate_timestamp(cls, value: Any, field_name: str = "date") -> ValidationResult:
        """Validate an embedded envelope date, returning Unix seconds."""
        try:
            seconds = to_unix_seconds(value)
        except ValueError as e:
            return ValidationResult.failure([ValidationError(field_name, str(e), value)])
        return ValidationResult.success(seconds)


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Cryptographic utility functions with security hardening."""

    @staticmethod
    def secure_compare_str(a: str, b: str) -> bool:
        """Constant-time string comparison."""
        return hmac.compare_digest(a.encode(), b.encode())

    @staticmethod
    def keccak256(data: Union[str, bytes]) -> bytes:
        """Compute the Ethereum Keccak-256 digest (not NIST SHA3-256)."""
        if isinstance(data, str):
            data = data.encode('utf-8')
        digest = keccak.new(digest_bits=256)
        digest.update(data)
        return digest.digest()

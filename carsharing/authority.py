"""
Permission Authority Client

The on-chain car sharing contract is the system of record for who may
lock or unlock the car. This module wraps the contract query behind an
async interface and turns its raw (error_code, level) answer into an
authorization decision.

Decisions are fetched fresh for every command and never cached; grants can
change between two messages.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set, Tuple

from carsharing.hardening import AuthorityUnavailable
from carsharing.observability import CarLayer, get_logger, timed_operation

logger = get_logger("authority", CarLayer.AUTHORITY)


@dataclass(frozen=True)
class PermissionDecision:
    """
    Raw answer of the permission authority.

    error_code == 0 only means the query succeeded; level carries the grant.
    """
    error_code: int
    level: int


# =============================================================================
# AUTHORITY INTERFACE
# =============================================================================

class PermissionAuthority(Protocol):
    """Asynchronous, read-only permission query against the authority."""

    async def check_permission(self, address: str) -> PermissionDecision:
        """
        Query the permission level of address for this car.

        Raises:
            AuthorityUnavailable: the query itself failed
        """
        ...


ContractCall = Callable[[str, str], Awaitable[Tuple[int, int]]]


class ContractPermissionAuthority:
    """
    Adapter over the car sharing contract's permission call.

    call(address, caller) performs the read-only contract call with caller
    as the from-account and returns (error_code, level). Connecting to the
    chain and binding the contract happen before this object is built.
    """

    def __init__(self, call: ContractCall, account: str):
        self._call = call
        self.account = account

    @timed_operation(logger, "check_permission")
    async def check_permission(self, address: str) -> PermissionDecision:
        try:
            error_code, level = await self._call(address, self.account)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise AuthorityUnavailable(address, e) from e
        return PermissionDecision(error_code=int(error_code), level=int(level))


# =============================================================================
# MOCK AUTHORITY
# =============================================================================

class MockPermissionAuthority:
    """
    Mock permission authority for testing.

    Simulates contract answers without network calls. Per-address latency
    lets tests overlap queries of independent commands.
    """

    def __init__(
        self,
        grants: Optional[Dict[str, int]] = None,
        default_level: int = 0,
    ):
        self._grants: Dict[str, int] = {k.lower(): v for k, v in (grants or {}).items()}
        self._error_codes: Dict[str, int] = {}
        self._latency: Dict[str, float] = {}
        self._unavailable: Set[str] = set()
        self._default_level = default_level
        self.queries: list = []

    def grant(self, address: str, level: int) -> None:
        self._grants[address.lower()] = level

    def revoke(self, address: str) -> None:
        self._grants.pop(address.lower(), None)

    def set_error_code(self, address: str, error_code: int) -> None:
        self._error_codes[address.lower()] = error_code

    def set_latency(self, address: str, seconds: float) -> None:
        self._latency[address.lower()] = seconds

    def make_unavailable(self, address: str) -> None:
        self._unavailable.add(address.lower())

    async def check_permission(self, address: str) -> PermissionDecision:
        key = address.lower()
        self.queries.append(key)
        delay = self._latency.get(key, 0.0)
        if delay:
            await asyncio.sleep(delay)
        if key in self._unavailable:
            raise AuthorityUnavailable(address, ConnectionError("mock authority offline"))
        return PermissionDecision(
            error_code=self._error_codes.get(key, 0),
            level=self._grants.get(key, self._default_level),
        )


# =============================================================================
# AUTHORIZATION POLICY
# =============================================================================

class PermissionPolicy:
    """
    Turns a PermissionDecision into allow/deny.

    Authorized iff error_code == 0 and level >= min_level. The historical
    deployment overwrote error_code with 0 before branching, which made the
    error path unreachable; force_error_code_zero re-enables that override
    and is off unless explicitly configured.
    """

    def __init__(self, min_level: int = 1, force_error_code_zero: bool = False):
        self.min_level = min_level
        self.force_error_code_zero = force_error_code_zero

    def effective_error_code(self, decision: PermissionDecision, address: str = "") -> int:
        if self.force_error_code_zero and decision.error_code != 0:
            logger.warning(
                "Authority error code masked by force_error_code_zero override",
                error_code="AUTHORITY_ERROR_MASKED",
                address=address,
                authority_error_code=decision.error_code,
            )
            return 0
        return decision.error_code

    def authorizes(self, decision: PermissionDecision, address: str = "") -> bool:
        if self.effective_error_code(decision, address) != 0:
            return False
        return decision.level >= self.min_level

"""
Actuator interface and command dispatch.

The actuator (door locks, GPS) is an external collaborator. The core only
calls exec_cmd() and reads the location/speed/locked snapshot. Dispatch is
fire-and-forget: the return value of exec_cmd() is not a physical
confirmation and is never reported as one.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from carsharing.envelope import CarCommand
from carsharing.observability import CarLayer, get_logger
from carsharing.security import RejectReason

logger = get_logger("dispatcher", CarLayer.DISPATCH)


@dataclass(frozen=True)
class ActuatorState:
    """Read-only snapshot of the car state owned by the actuator."""
    location: Any
    speed: float
    locked: bool

    def to_status(self) -> Dict[str, Any]:
        """Shape used by the getstatus response and the published profile."""
        return {"loc": self.location, "speed": self.speed, "locked": self.locked}


class Actuator(Protocol):
    """Car device collaborator."""

    location: Any
    speed: float
    locked: bool

    def exec_cmd(self, cmd: str) -> Any:
        """Execute 'lock' or 'unlock' on the car."""
        ...


def snapshot(actuator: Actuator) -> ActuatorState:
    return ActuatorState(location=actuator.location, speed=actuator.speed, locked=actuator.locked)


class SimulatedActuator:
    """
    In-memory car for tests and demos.

    Records every executed command. fail_commands makes exec_cmd report
    failure without changing state, which the protocol layer must not
    surface to the requester.
    """

    def __init__(
        self,
        location: Optional[Tuple[float, float]] = None,
        speed: float = 0.0,
        locked: bool = True,
    ):
        self.location = location if location is not None else (0.0, 0.0)
        self.speed = speed
        self.locked = locked
        self.executed: List[str] = []
        self.fail_commands = False

    def exec_cmd(self, cmd: str) -> bool:
        self.executed.append(cmd)
        if self.fail_commands:
            return False
        self.locked = cmd == CarCommand.LOCK.value
        return True


@dataclass
class DispatchResult:
    """Outcome of handing a command to the actuator."""
    accepted: bool
    reason: RejectReason
    cmd: Optional[CarCommand] = None
    details: Dict[str, Any] = field(default_factory=dict)


class CommandDispatcher:
    """Executes lock/unlock against the actuator; rejects everything else."""

    def __init__(self, actuator: Actuator):
        self.actuator = actuator

    def execute(self, cmd: Any) -> DispatchResult:
        command = cmd if isinstance(cmd, CarCommand) else CarCommand.parse(cmd)
        if command is None:
            logger.warning(
                "Unsupported command rejected",
                error_code=RejectReason.UNSUPPORTED_COMMAND.value,
                cmd=str(cmd),
            )
            return DispatchResult(False, RejectReason.UNSUPPORTED_COMMAND)

        self.actuator.exec_cmd(command.value)
        logger.info("Command dispatched to actuator", operation="execute", cmd=command.value)
        return DispatchResult(True, RejectReason.OK, command)

"""
Car Sharing Node — Command Authorization & Dispatch

The software that runs on a shared car. Renters send lock/unlock commands
over a pub/sub bus; the node verifies who signed them, asks the on-chain
car sharing contract whether that signer may operate the car, and only
then drives the actuator.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                           CAR SHARING NODE                               │
    │                                                                          │
    │  INGRESS                                                                 │
    │    ingress.py     One asyncio task per inbound bus or protocol message  │
    │    node.py        Subscriptions, lifecycle, profile timer               │
    │                                                                          │
    │  AUTHORIZATION                                                           │
    │    envelope.py    Bare token, ad hoc and dated envelope parsing         │
    │    security.py    Signer recovery, ReplayGuard, decision audit          │
    │    authority.py   Permission queries against the contract              │
    │                                                                          │
    │  EXECUTION                                                               │
    │    actuator.py    CommandDispatcher over the car actuator               │
    │    protocol.py    request / response / command routing                  │
    │    profile.py     Periodic profile publication                          │
    │                                                                          │
    │  AMBIENT                                                                 │
    │    config.py  observability.py  hardening.py  cli.py                    │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Fail Closed: a message that cannot be parsed, verified or authorized is
    dropped and logged. Nothing reaches the actuator on an error path.

    Per-Message Isolation: each inbound message runs in its own task with
    its own correlation ID. One failure never affects another message.

    Explicit Context: the account, authority, actuator and channel are
    passed in a CarContext rather than held in module globals.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.3.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import car sharing modules on first access."""

    # Envelope exports
    if name in ("CarCommand", "EnvelopeFormat", "BareToken", "AdhocEnvelope",
                "DatedEnvelope", "parse_envelope"):
        from carsharing import envelope
        return getattr(envelope, name)

    # Security exports
    if name in ("RejectReason", "ReplayGuard", "SignatureVerifier",
                "VerificationResult", "DecisionLog", "DecisionRecord",
                "recover_address", "make_adhoc_envelope", "make_dated_envelope"):
        from carsharing import security
        return getattr(security, name)

    # Authority exports
    if name in ("PermissionDecision", "PermissionAuthority", "PermissionPolicy",
                "ContractPermissionAuthority", "MockPermissionAuthority"):
        from carsharing import authority
        return getattr(authority, name)

    # Actuator exports
    if name in ("ActuatorState", "SimulatedActuator", "CommandDispatcher", "DispatchResult"):
        from carsharing import actuator
        return getattr(actuator, name)

    # Protocol exports
    if name in ("MessageType", "RequestKind", "ProtocolMessage", "ProtocolRouter",
                "InMemoryChannel"):
        from carsharing import protocol
        return getattr(protocol, name)

    # Ingress and node exports
    if name in ("CarContext", "IngressAdapter"):
        from carsharing import ingress
        return getattr(ingress, name)
    if name in ("CarSharingNode", "LifecycleState", "InMemoryBus"):
        from carsharing import node
        return getattr(node, name)
    if name in ("ProfilePublisher", "InMemoryContentStore"):
        from carsharing import profile
        return getattr(profile, name)

    raise AttributeError(f"module 'carsharing' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Envelope
    "CarCommand",
    "EnvelopeFormat",
    "BareToken",
    "AdhocEnvelope",
    "DatedEnvelope",
    "parse_envelope",
    # Security
    "RejectReason",
    "ReplayGuard",
    "SignatureVerifier",
    "VerificationResult",
    "DecisionLog",
    "DecisionRecord",
    "recover_address",
    "make_adhoc_envelope",
    "make_dated_envelope",
    # Authority
    "PermissionDecision",
    "PermissionAuthority",
    "PermissionPolicy",
    "ContractPermissionAuthority",
    "MockPermissionAuthority",
    # Actuator
    "ActuatorState",
    "SimulatedActuator",
    "CommandDispatcher",
    "DispatchResult",
    # Protocol
    "MessageType",
    "RequestKind",
    "ProtocolMessage",
    "ProtocolRouter",
    "InMemoryChannel",
    # Ingress / node
    "CarContext",
    "IngressAdapter",
    "CarSharingNode",
    "LifecycleState",
    "InMemoryBus",
    "ProfilePublisher",
    "InMemoryContentStore",
]

"""
Ingress Adapter Tests

End-to-end behaviour of the legacy command pipeline and the per-message
task scheduling:

- Signed commands reach the actuator only after verification and a
  positive permission decision
- Rejected messages never reach the authority or the actuator when an
  earlier step already failed
- Independent messages overlap; a slow permission query does not hold
  up a fast one

Copyright (c) 2026 Momentum. All rights reserved.
"""

import asyncio
import json
import logging

from carsharing.authority import MockPermissionAuthority, PermissionPolicy
from carsharing.config import get_config, get_config_manager
from carsharing.ingress import CarContext, IngressAdapter, TopicKind
from carsharing.actuator import SimulatedActuator
from carsharing.protocol import InMemoryChannel
from carsharing.security import RejectReason, make_adhoc_envelope, make_dated_envelope

from conftest import CAR_ACCOUNT, NOW, OWNER_KEY, RENTER_KEY, STRANGER_KEY

TOPIC = "car/commands/carsharing"


def _process(ctx, payload):
    return asyncio.run(IngressAdapter(ctx).process_car_command(payload))


def _codes(caplog):
    return [getattr(r, "error_code", "") for r in caplog.records]


class TestUnsignedTokens:

    def test_bare_token_dispatches_without_permission_query(self, make_ctx, caplog):
        authority = MockPermissionAuthority()
        ctx = make_ctx(authority=authority)
        record = _process(ctx, "unlock")

        assert record.dispatched
        assert record.reason is RejectReason.OK
        assert record.details == {"unsigned": True}
        assert record.envelope_format == "bare"
        assert authority.queries == []
        assert ctx.actuator.executed == ["unlock"]
        assert "UNSIGNED_COMMAND" in _codes(caplog)

    def test_bare_tokens_can_be_disabled(self, make_ctx):
        ctx = make_ctx(allow_unsigned_tokens=False)
        record = _process(ctx, "unlock")

        assert record.reason is RejectReason.UNAUTHORIZED
        assert ctx.actuator.executed == []


class TestSignedCommands:

    def test_adhoc_authorized(self, make_ctx, renter_address):
        authority = MockPermissionAuthority(grants={renter_address: 1})
        ctx = make_ctx(authority=authority)
        record = _process(ctx, make_adhoc_envelope(RENTER_KEY, "unlock"))

        assert record.dispatched
        assert record.address == renter_address
        assert record.cmd == "unlock"
        assert record.details == {"permission_level": 1}
        assert authority.queries == [renter_address]
        assert ctx.actuator.executed == ["unlock"]

    def test_dated_authorized(self, make_ctx, owner_address):
        ctx = make_ctx(authority=MockPermissionAuthority(grants={owner_address: 2}))
        record = _process(ctx, make_dated_envelope(OWNER_KEY, "lock", NOW - 30))

        assert record.dispatched
        assert record.envelope_format == "dated"
        assert ctx.actuator.executed == ["lock"]

    def test_stale_dated_never_reaches_authority_or_actuator(self, make_ctx, renter_address):
        authority = MockPermissionAuthority(grants={renter_address: 3})
        ctx = make_ctx(authority=authority)
        record = _process(ctx, make_dated_envelope(RENTER_KEY, "unlock", NOW - 3601))

        assert record.reason is RejectReason.STALE
        assert authority.queries == []
        assert ctx.actuator.executed == []

    def test_malformed_payload(self, make_ctx):
        authority = MockPermissionAuthority(default_level=9)
        ctx = make_ctx(authority=authority)
        record = _process(ctx, b'{"msg": "unlock"')

        assert record.reason is RejectReason.MALFORMED_ENVELOPE
        assert authority.queries == []
        assert ctx.actuator.executed == []

    def test_bad_signature(self, make_ctx, stranger_address):
        authority = MockPermissionAuthority(default_level=9)
        ctx = make_ctx(authority=authority)
        body = json.loads(make_adhoc_envelope(OWNER_KEY, "unlock"))
        body["address"] = stranger_address
        record = _process(ctx, json.dumps(body))

        assert record.reason is RejectReason.BAD_SIGNATURE
        assert authority.queries == []
        assert ctx.actuator.executed == []

    def test_unsupported_signed_command(self, make_ctx):
        authority = MockPermissionAuthority(default_level=9)
        ctx = make_ctx(authority=authority)
        record = _process(ctx, make_adhoc_envelope(OWNER_KEY, "honk"))

        assert record.reason is RejectReason.UNSUPPORTED_COMMAND
        assert authority.queries == []
        assert ctx.actuator.executed == []

    def test_insufficient_level(self, make_ctx, caplog):
        ctx = make_ctx(authority=MockPermissionAuthority(default_level=0))
        record = _process(ctx, make_adhoc_envelope(STRANGER_KEY, "unlock"))

        assert record.reason is RejectReason.UNAUTHORIZED
        assert record.details == {"authority_error_code": 0, "permission_level": 0, "min_level": 1}
        assert ctx.actuator.executed == []
        assert "UNAUTHORIZED" in _codes(caplog)

    def test_min_level_from_policy(self, make_ctx, renter_address):
        ctx = make_ctx(
            authority=MockPermissionAuthority(grants={renter_address: 1}),
            policy=PermissionPolicy(min_level=2),
        )
        assert _process(ctx, make_adhoc_envelope(RENTER_KEY, "unlock")).reason is RejectReason.UNAUTHORIZED

    def test_authority_error_code_denies(self, make_ctx, renter_address):
        authority = MockPermissionAuthority(grants={renter_address: 5})
        authority.set_error_code(renter_address, 2)
        ctx = make_ctx(authority=authority)

        record = _process(ctx, make_adhoc_envelope(RENTER_KEY, "unlock"))
        assert record.reason is RejectReason.UNAUTHORIZED
        assert record.details["authority_error_code"] == 2
        assert ctx.actuator.executed == []

    def test_forced_error_code_override(self, make_ctx, renter_address, caplog):
        authority = MockPermissionAuthority(grants={renter_address: 5})
        authority.set_error_code(renter_address, 2)
        ctx = make_ctx(authority=authority, policy=PermissionPolicy(force_error_code_zero=True))

        record = _process(ctx, make_adhoc_envelope(RENTER_KEY, "unlock"))
        assert record.dispatched
        assert "AUTHORITY_ERROR_MASKED" in _codes(caplog)

    def test_authority_unavailable(self, make_ctx, renter_address, caplog):
        authority = MockPermissionAuthority(grants={renter_address: 5})
        authority.make_unavailable(renter_address)
        ctx = make_ctx(authority=authority)

        record = _process(ctx, make_adhoc_envelope(RENTER_KEY, "unlock"))
        assert record.reason is RejectReason.AUTHORITY_UNAVAILABLE
        assert not record.dispatched
        assert ctx.actuator.executed == []
        assert "AUTHORITY_UNAVAILABLE" in _codes(caplog)

    def test_every_message_is_recorded(self, make_ctx, renter_address):
        ctx = make_ctx(authority=MockPermissionAuthority(grants={renter_address: 1}))
        adapter = IngressAdapter(ctx)

        async def scenario():
            await adapter.process_car_command("lock")
            await adapter.process_car_command("garbage")
            await adapter.process_car_command(make_adhoc_envelope(RENTER_KEY, "unlock"))

        asyncio.run(scenario())
        records = ctx.decisions.records()
        assert [r.reason for r in records] == [
            RejectReason.OK,
            RejectReason.MALFORMED_ENVELOPE,
            RejectReason.OK,
        ]
        assert ctx.decisions.verify_chain()


class TestScheduling:

    def test_slow_query_does_not_block_fast_one(self, make_ctx, renter_address, owner_address):
        authority = MockPermissionAuthority(grants={renter_address: 1, owner_address: 1})
        authority.set_latency(owner_address, 0.05)
        ctx = make_ctx(authority=authority)
        adapter = IngressAdapter(ctx)

        async def scenario():
            slow = adapter.on_bus_message(TOPIC, make_adhoc_envelope(OWNER_KEY, "lock"))
            fast = adapter.on_bus_message(TOPIC, make_adhoc_envelope(RENTER_KEY, "unlock"))
            assert adapter.inflight == 2
            await adapter.drain()
            return slow.result(), fast.result()

        slow_record, fast_record = asyncio.run(scenario())

        assert ctx.actuator.executed == ["unlock", "lock"]
        assert slow_record.dispatched and fast_record.dispatched
        assert fast_record.sequence < slow_record.sequence
        assert slow_record.correlation_id != fast_record.correlation_id
        assert adapter.inflight == 0

    def test_signed_commands_through_bus_callback(self, make_ctx, renter_address, caplog):
        caplog.set_level(logging.INFO, logger="carsharing")
        ctx = make_ctx(authority=MockPermissionAuthority(grants={renter_address: 2}))
        adapter = IngressAdapter(ctx)

        async def scenario():
            granted = adapter.on_bus_message(TOPIC, make_dated_envelope(RENTER_KEY, "unlock", NOW - 5))
            denied = adapter.on_bus_message(TOPIC, make_adhoc_envelope(STRANGER_KEY, "lock"))
            await adapter.drain()
            return granted.result(), denied.result()

        granted, denied = asyncio.run(scenario())

        assert "HANDLER_FAILED" not in _codes(caplog)
        assert granted.dispatched
        assert granted.details == {"permission_level": 2}
        assert denied.reason is RejectReason.UNAUTHORIZED
        assert ctx.actuator.executed == ["unlock"]
        assert len(ctx.decisions.records()) == 2
        logged = [r for r in caplog.records if r.getMessage() == "User permission granted"]
        assert logged[0].context["permission_level"] == 2

    def test_unknown_topic(self, make_ctx, caplog):
        ctx = make_ctx()
        adapter = IngressAdapter(ctx)

        async def scenario():
            return adapter.on_bus_message("car/commands/other", "unlock")

        assert asyncio.run(scenario()) is None
        assert ctx.actuator.executed == []
        assert any(r.getMessage() == "Unable to process topic" for r in caplog.records)

    def test_handler_failure_is_contained(self, make_ctx, renter_address, caplog):
        class BrokenAuthority:
            async def check_permission(self, address):
                raise RuntimeError("contract ABI mismatch")

        ctx = make_ctx(authority=BrokenAuthority())
        adapter = IngressAdapter(ctx)

        async def scenario():
            broken = adapter.on_bus_message(TOPIC, make_adhoc_envelope(RENTER_KEY, "unlock"))
            bare = adapter.on_bus_message(TOPIC, "lock")
            await adapter.drain()
            return broken.result(), bare.result()

        broken_result, bare_result = asyncio.run(scenario())

        assert broken_result is None
        assert bare_result.dispatched
        assert ctx.actuator.executed == ["lock"]
        assert "HANDLER_FAILED" in _codes(caplog)

    def test_protocol_packets(self, make_ctx):
        ctx = make_ctx()
        adapter = IngressAdapter(ctx)
        renter = "0x" + "77" * 20

        async def scenario():
            adapter.on_protocol_message({"type": "request", "from": renter, "data": "getstatus"})
            adapter.on_protocol_message({"type": "command", "from": renter, "data": "unlock"})
            await adapter.drain()

        asyncio.run(scenario())
        responses = [json.loads(m.data) for m in ctx.channel.responses_to(renter)]
        assert {"err": None, "result": "unlocked"} in responses
        assert len(responses) == 2
        assert ctx.actuator.executed == ["unlock"]

    def test_malformed_protocol_packet(self, make_ctx, caplog):
        ctx = make_ctx()
        adapter = IngressAdapter(ctx)
        assert asyncio.run(adapter.handle_protocol_packet("{{")) is None
        assert ctx.channel.sent == []
        assert "MALFORMED_ENVELOPE" in _codes(caplog)

    def test_numeric_protocol_type_is_unsupported(self, make_ctx, caplog):
        ctx = make_ctx()
        adapter = IngressAdapter(ctx)
        packet = json.dumps({"type": 1, "from": "0x" + "77" * 20, "data": "unlock"})
        assert asyncio.run(adapter.handle_protocol_packet(packet)) is None
        assert ctx.channel.sent == []
        assert ctx.actuator.executed == []
        assert "UNSUPPORTED_MESSAGE_TYPE" in _codes(caplog)
        assert "MALFORMED_ENVELOPE" not in _codes(caplog)

    def test_topic_kinds(self, make_ctx):
        adapter = IngressAdapter(make_ctx())
        record = asyncio.run(adapter.handle_topic(TopicKind.CAR_COMMANDS, "lock"))
        assert record.dispatched


class TestCarContext:

    def test_from_config(self):
        manager = get_config_manager()
        manager.set("command.min_permission_level", 2)
        manager.set("command.message_ttl_seconds", 600)
        manager.set("command.allow_unsigned_tokens", False)

        ctx = CarContext.from_config(
            get_config(),
            CAR_ACCOUNT,
            SimulatedActuator(),
            MockPermissionAuthority(),
            InMemoryChannel(CAR_ACCOUNT),
        )

        assert ctx.policy.min_level == 2
        assert ctx.policy.force_error_code_zero is False
        assert ctx.verifier.ttl_seconds == 600
        assert ctx.allow_unsigned_tokens is False
        assert ctx.command_topic == TOPIC
        assert ctx.car_info == {"name": "OakenTestCar"}

    def test_from_config_env_override(self, monkeypatch):
        monkeypatch.setenv("CARSHARING_FORCE_AUTHORITY_OK", "true")
        monkeypatch.setenv("CARSHARING_COMMAND_TOPIC", "fleet/7/commands")

        ctx = CarContext.from_config(
            get_config(),
            CAR_ACCOUNT,
            SimulatedActuator(),
            MockPermissionAuthority(),
            InMemoryChannel(CAR_ACCOUNT),
        )

        assert ctx.policy.force_error_code_zero is True
        assert ctx.command_topic == "fleet/7/commands"

    def test_default_topic(self, make_ctx):
        assert make_ctx().command_topic == TOPIC

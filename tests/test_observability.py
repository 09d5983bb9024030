"""
Structured logging tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import asyncio
import io
import json
import logging

import pytest

from carsharing.config import get_config, get_config_manager
from carsharing.observability import (
    CarLayer,
    LogEvent,
    configure_from_config,
    configure_logging,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    timed_operation,
)


@pytest.fixture
def package_logger():
    root = logging.getLogger("carsharing")
    saved = (list(root.handlers), root.level, root.propagate)
    yield root
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    root.propagate = saved[2]


class TestCorrelationIds:

    def test_format(self):
        cid = generate_correlation_id()
        assert cid.startswith("msg-")
        assert len(cid) == 16
        assert cid != generate_correlation_id()

    def test_tasks_keep_their_own_id(self):
        async def handler(cid):
            set_correlation_id(cid)
            await asyncio.sleep(0)
            return get_correlation_id()

        async def scenario():
            return await asyncio.gather(handler("msg-a"), handler("msg-b"))

        assert asyncio.run(scenario()) == ["msg-a", "msg-b"]


class TestHandlers:

    def test_json_output(self, package_logger):
        stream = io.StringIO()
        configure_logging("info", "json", stream)
        logger = get_logger("verifier", CarLayer.VERIFIER)

        async def emit():
            set_correlation_id("msg-000000000001")
            logger.warning("Stale command", error_code="STALE", cmd="lock")

        asyncio.run(emit())
        event = json.loads(stream.getvalue().strip())

        assert event["level"] == "warning"
        assert event["logger"] == "carsharing.verifier.verifier"
        assert event["layer"] == "verifier"
        assert event["error_code"] == "STALE"
        assert event["correlation_id"] == "msg-000000000001"
        assert event["context"] == {"cmd": "lock"}

    def test_level_filter(self, package_logger):
        stream = io.StringIO()
        configure_logging("warning", "json", stream)
        get_logger("router", CarLayer.PROTOCOL).info("ignored")
        assert stream.getvalue() == ""

    def test_text_output(self, package_logger):
        stream = io.StringIO()
        configure_logging("debug", "text", stream)
        get_logger("ingress", CarLayer.INGRESS).error("Handler crashed", error_code="HANDLER_FAILED", topic="t")
        line = stream.getvalue()
        assert "ERROR carsharing.ingress.ingress" in line
        assert "error_code=HANDLER_FAILED" in line
        assert "topic=t" in line

    def test_configure_replaces_handler(self, package_logger):
        configure_logging("info", "json", io.StringIO())
        configure_logging("info", "text", io.StringIO())
        ours = [h for h in package_logger.handlers if type(h).__name__ in ("StructuredHandler", "TextHandler")]
        assert len(ours) == 1

    def test_configure_from_config(self, package_logger):
        get_config_manager().set("observability.log_format", "text")
        get_config_manager().set("observability.log_level", "error")
        stream = io.StringIO()
        configure_from_config(get_config(), stream=stream)

        logger = get_logger("node", CarLayer.NODE)
        logger.warning("filtered")
        logger.error("Node failed to start", error_code="NODE_START_FAILED")
        assert stream.getvalue().count("\n") == 1
        assert "ERROR carsharing.node.node" in stream.getvalue()

    def test_level_override(self, package_logger):
        stream = io.StringIO()
        configure_from_config(get_config(), level="debug", stream=stream)
        get_logger("node", CarLayer.NODE).debug("Node created -> running")
        assert json.loads(stream.getvalue())["level"] == "debug"

    def test_log_event_drops_empty_fields(self):
        event = LogEvent(timestamp="t", level="info", logger="l", message="m")
        assert event.to_dict() == {"timestamp": "t", "level": "info", "logger": "l", "message": "m"}


class TestTimedOperation:

    def test_failure_is_logged_and_reraised(self, caplog):
        logger = get_logger("authority", CarLayer.AUTHORITY)

        @timed_operation(logger, "check_permission")
        async def query():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            asyncio.run(query())

        failed = [r for r in caplog.records if r.getMessage() == "Operation check_permission failed"]
        assert len(failed) == 1
        assert failed[0].levelno == logging.WARNING
        assert query.__name__ == "query"

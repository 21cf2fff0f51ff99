import json
import logging

import pytest

from rfmap.logging_config import bind_request, configure_logging, get_logger, resolve_level


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    bind_request(None)


def _records(capsys):
    return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]


def test_records_carry_component_service_and_request_context(capsys, restore_root):
    configure_logging("debug")
    bind_request("req-42", path="/signals")
    get_logger("spatial").debug("query_rejected", kind="radius")

    records = _records(capsys)
    assert records[0]["message"] == "logging_configured"
    event = records[-1]
    assert event["message"] == "query_rejected"
    assert event["logger"] == "rfmap.spatial"
    assert event["service"] == "rfmap"
    assert event["level"] == "debug"
    assert event["request_id"] == "req-42"
    assert event["path"] == "/signals"
    assert event["kind"] == "radius"


def test_level_comes_from_env(monkeypatch, capsys, restore_root):
    monkeypatch.setenv("LOG_LEVEL", "warning")

    assert configure_logging() == logging.WARNING
    get_logger("db").info("store_opened")
    get_logger("db").warning("store_slow")

    assert [record["message"] for record in _records(capsys)] == ["store_slow"]
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_new_request_drops_previous_context(capsys, restore_root):
    configure_logging("info")
    bind_request("first")
    bind_request("second")
    get_logger("http").info("http_request")

    assert _records(capsys)[-1]["request_id"] == "second"


def test_unknown_level_is_rejected():
    assert resolve_level(logging.ERROR) == logging.ERROR
    assert resolve_level(" Info ") == logging.INFO
    with pytest.raises(ValueError):
        resolve_level("chatty")

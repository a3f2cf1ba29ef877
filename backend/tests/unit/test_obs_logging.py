import json
import logging

import pytest

from cargolink.obs import logging as obs_logging


def _record(msg: str = "chat.send.failed", level: int = logging.WARNING, **extra) -> logging.LogRecord:
    record = logging.LogRecord("cargolink.test", level, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_bound_context_appears_in_output_and_resets():
    formatter = obs_logging.JSONLogFormatter()
    tokens = obs_logging.bind_context(request_id="req-1", conversation_id="c1", user_id=None)
    try:
        entry = json.loads(formatter.format(_record()))
        assert entry["request_id"] == "req-1"
        assert entry["conversation_id"] == "c1"
        assert "user_id" not in entry
        assert obs_logging.current_request_id() == "req-1"
    finally:
        obs_logging.reset_context(tokens)
    assert obs_logging.current_request_id() is None
    assert "conversation_id" not in json.loads(formatter.format(_record()))


def test_unknown_context_field_rejected():
    with pytest.raises(KeyError):
        obs_logging.bind_context(listing_id="l1")


def test_message_bodies_are_redacted_and_long_values_clipped():
    entry = json.loads(
        obs_logging.JSONLogFormatter().format(
            _record(body="hello there", client_msg_id="x" * 400, peers=list(range(20)))
        )
    )
    assert entry["body"] == "[redacted]"
    assert len(entry["client_msg_id"]) == 257
    assert entry["peers"][-1] == "…"
    assert len(entry["peers"]) == 11


def test_nested_mappings_are_scrubbed_by_key():
    scrubbed = obs_logging.scrub("meta", {"authorization": "Bearer abc", "seq": 3})
    assert scrubbed == {"authorization": "[redacted]", "seq": 3}


def test_info_sampling_keeps_warnings():
    dropping = obs_logging.InfoSamplingFilter(rate=0.0)
    assert dropping.filter(_record(level=logging.WARNING)) is True
    assert dropping.filter(_record(level=logging.INFO)) is False
    assert obs_logging.InfoSamplingFilter(rate=1.0).filter(_record(level=logging.INFO)) is True

from types import SimpleNamespace

import pytest

from gemini_keys import ApiKeyPool
from gemini_split import (
    OracleResponseError,
    detect_split_with_gemini,
    is_rate_limit_error,
    parse_split_response,
)

FAKE_JPEG = b"\xff\xd8\xff\xe0 not really a jpeg"


def fake_client(reply=None, error=None):
    calls = []

    def generate_content(**kwargs):
        calls.append(kwargs)
        if error is not None:
            raise error
        return SimpleNamespace(text=reply)

    return SimpleNamespace(models=SimpleNamespace(generate_content=generate_content)), calls


# ---------------------------------------------------------------------------
# parse_split_response
# ---------------------------------------------------------------------------

def test_parses_fenced_json():
    text = '```json\n{"isTwoPageSpread": true, "splitPosition": 507, "confidence": "high", "reasoning": "gutter"}\n```'

    assert parse_split_response(text) == {
        "is_two_page_spread": True,
        "split_position": 507,
        "confidence": "high",
        "reasoning": "gutter",
    }


def test_parses_json_surrounded_by_prose():
    text = 'Looking at the {scan}: {"isTwoPageSpread": false, "splitPosition": 500, "confidence": "LOW"} hope this helps'
    result = parse_split_response(text)

    assert result["is_two_page_spread"] is False
    assert result["confidence"] == "low"
    assert result["reasoning"] == ""


def test_position_is_rounded_and_clamped():
    assert parse_split_response('{"splitPosition": 499.6}')["split_position"] == 500
    assert parse_split_response('{"splitPosition": 502.5}')["split_position"] == 503
    assert parse_split_response('{"splitPosition": 496.5}')["split_position"] == 497
    assert parse_split_response('{"splitPosition": 1400}')["split_position"] == 1000
    assert parse_split_response('{"splitPosition": -3}')["split_position"] == 0
    assert parse_split_response('{"splitPosition": "612"}')["split_position"] == 612


def test_defaults_for_missing_fields():
    result = parse_split_response('{"splitPosition": 480, "confidence": "certain"}')

    assert result["is_two_page_spread"] is True
    assert result["confidence"] == "medium"


@pytest.mark.parametrize(
    "text",
    [
        "",
        None,
        "I cannot tell where the gutter is.",
        '{"isTwoPageSpread": true, "splitPosition": ',
        '{"isTwoPageSpread": true}',
        '{"splitPosition": "middle"}',
        '{"splitPosition": NaN}',
    ],
)
def test_malformed_replies_raise(text):
    with pytest.raises(OracleResponseError):
        parse_split_response(text)


def test_rate_limit_detection():
    assert is_rate_limit_error(Exception("429 RESOURCE_EXHAUSTED"))
    assert is_rate_limit_error(Exception("Rate limit exceeded"))
    err = Exception("quota")
    err.code = 429
    assert is_rate_limit_error(err)
    assert not is_rate_limit_error(Exception("500 internal error"))


# ---------------------------------------------------------------------------
# detect_split_with_gemini
# ---------------------------------------------------------------------------

def test_detect_split_sends_image_and_prompt():
    client, calls = fake_client('{"isTwoPageSpread": true, "splitPosition": 515, "confidence": "medium"}')

    result = detect_split_with_gemini(FAKE_JPEG, client=client, model="test-model")

    assert result["split_position"] == 515
    assert len(calls) == 1
    assert calls[0]["model"] == "test-model"
    assert len(calls[0]["contents"]) == 2


def test_detect_split_reads_image_from_path(tmp_path):
    path = tmp_path / "0001.jpg"
    path.write_bytes(FAKE_JPEG)
    client, calls = fake_client('{"splitPosition": 500, "isTwoPageSpread": false}')

    result = detect_split_with_gemini(path, client=client)

    assert result["is_two_page_spread"] is False
    assert len(calls) == 1


def test_malformed_reply_propagates():
    client, _ = fake_client("no idea")
    with pytest.raises(OracleResponseError):
        detect_split_with_gemini(FAKE_JPEG, client=client)


def test_rate_limit_is_reported_to_pool_and_reraised():
    pool = ApiKeyPool(["key-a", "key-b"], clock=lambda: 100.0)
    client, _ = fake_client(error=RuntimeError("429 Too Many Requests"))

    with pytest.raises(RuntimeError, match="429"):
        detect_split_with_gemini(FAKE_JPEG, client=client, key_pool=pool, api_key="key-a")

    assert pool.stats() == {"total_keys": 2, "in_cooldown": 1}


def test_other_errors_are_not_reported():
    pool = ApiKeyPool(["key-a", "key-b"], clock=lambda: 100.0)
    client, _ = fake_client(error=RuntimeError("503 unavailable"))

    with pytest.raises(RuntimeError):
        detect_split_with_gemini(FAKE_JPEG, client=client, key_pool=pool, api_key="key-a")

    assert pool.stats()["in_cooldown"] == 0

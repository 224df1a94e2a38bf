import pytest

from heic_relay.config import RelaySettings
from heic_relay.logger import format_bytes
from heic_relay.relay.errors import EngineFailure, error_message
from heic_relay.relay.models import (
    ConversionRequest,
    ConversionResult,
    converted_name,
    from_data_uri,
    placeholder_text,
    request_key,
    result_key,
    to_data_uri,
)


@pytest.mark.parametrize(
    "error,expected",
    [
        ("decode error", "decode error"),
        (EngineFailure("engine exploded"), "engine exploded"),
        (TimeoutError(), "TimeoutError"),
        ({"message": "from message"}, "from message"),
        ({"error": {"message": "nested"}}, "nested"),
        ({"error": "flat"}, "flat"),
        ({"code": 7}, '{"code": 7}'),
        (None, "Unknown error"),
        ([1, 2], "[1, 2]"),
    ],
)
def test_error_message_normalises_shapes(error, expected):
    assert error_message(error) == expected


def test_keys_and_placeholder():
    assert request_key("1700000000000") == "request_1700000000000"
    assert result_key("1700000000000") == "result_1700000000000"
    assert placeholder_text("IMG_1.heic") == "![Converting IMG_1.heic...]()\n"


@pytest.mark.parametrize(
    "name,expected",
    [("photo.heic", "photo.jpg"), ("PHOTO.HEIC", "PHOTO.jpg"), ("a.heic.png", "a.heic.png"), ("noext", "noext")],
)
def test_converted_name_only_rewrites_trailing_extension(name, expected):
    assert converted_name(name) == expected


def test_data_uri_decoding():
    uri = to_data_uri(b"\x00\x01binary", "image/heic")

    assert uri.startswith("data:image/heic;base64,")
    assert from_data_uri(uri) == ("image/heic", b"\x00\x01binary")
    assert from_data_uri("data:text/plain,hi%20there") == ("text/plain", b"hi there")
    assert from_data_uri("data:image/heic;base64,") == ("image/heic", b"")


@pytest.mark.parametrize("bad", ["", "not a uri", "data:image/heic;base64,@@@"])
def test_malformed_data_uri_raises(bad):
    with pytest.raises(ValueError):
        from_data_uri(bad)


def test_request_record_shape():
    req = ConversionRequest("5", "data:image/heic;base64,AA==", "a.heic")

    assert req.to_record() == {"data": "data:image/heic;base64,AA==", "fileName": "a.heic"}
    assert ConversionRequest.from_record("5", req.to_record()) == req
    with pytest.raises(ValueError):
        ConversionRequest.from_record("5", {"fileName": "a.heic"})


def test_result_records():
    assert ConversionResult.failed("5", "boom").to_record() == {"success": False, "error": "boom"}
    ok = ConversionResult.from_record("5", {"success": True, "data": "data:image/jpeg;base64,AA==", "fileName": "a.jpg"})
    assert ok.success and ok.file_name == "a.jpg"

    legacy_failure = ConversionResult.from_record("5", {"error": "old failure"})
    assert not legacy_failure.success
    assert legacy_failure.error == "old failure"


def test_deadlines_scale_with_payload():
    settings = RelaySettings()

    assert settings.item_deadline(1024) == 60.0
    assert settings.item_deadline(11 * 1024 * 1024) == 90.0
    assert settings.engine_deadline(1024) == 30.0
    assert settings.engine_deadline(11 * 1024 * 1024) == 60.0


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("HEIC_RELAY_PAGE_TIMEOUT", "5")
    monkeypatch.setenv("HEIC_RELAY_CELL_RECYCLE_AFTER", "3")

    settings = RelaySettings.from_env()

    assert settings.page_timeout == 5.0
    assert settings.cell_recycle_after == 3
    assert settings.dispatcher_poll_interval == 0.3


@pytest.mark.parametrize(
    "size,expected",
    [(0, "0 B"), (512, "512 B"), (2048, "2.0 KB"), (2 * 1024 * 1024, "2.00 MB")],
)
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected


def _raised(error: BaseException, cause: BaseException | None) -> BaseException:
    try:
        raise error from cause
    except BaseException as e:
        return e


def test_error_message_falls_back_to_cause():
    assert error_message(_raised(EngineFailure(), ValueError("decode error"))) == "decode error"
    assert error_message(_raised(EngineFailure("cell died"), ValueError("decode error"))) == "cell died"


def test_error_message_falls_back_to_context():
    try:
        try:
            raise OSError("disk full")
        except OSError:
            raise EngineFailure()
    except EngineFailure as e:
        assert error_message(e) == "disk full"


def test_error_message_without_cause_uses_type_name():
    assert error_message(_raised(EngineFailure(), None)) == "EngineFailure"

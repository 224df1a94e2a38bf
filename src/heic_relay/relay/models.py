import base64
import re
from dataclasses import dataclass

REQUEST_PREFIX = "request_"
RESULT_PREFIX = "result_"
LEGACY_PREFIX = "convert_"
SWEPT_PREFIXES = (REQUEST_PREFIX, RESULT_PREFIX, LEGACY_PREFIX)

RELAY_TARGET = "relay_host"

OUTPUT_MIME = "image/jpeg"
SOURCE_MIME = "image/heic"


class Action:
    CONVERT = "CONVERT"
    CONVERT_HEIC = "CONVERT_HEIC"
    CONVERT_RESULT = "CONVERT_RESULT"
    READY = "READY"
    LOG = "LOG"


def request_key(request_id: str) -> str:
    return f"{REQUEST_PREFIX}{request_id}"


def result_key(request_id: str) -> str:
    return f"{RESULT_PREFIX}{request_id}"


def placeholder_text(file_name: str) -> str:
    return f"![Converting {file_name}...]()\n"


def converted_name(file_name: str) -> str:
    return re.sub(r"\.heic$", ".jpg", file_name, flags=re.IGNORECASE)


def to_data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


_DATA_URI = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(;[^;,]*)*),(?P<payload>.*)$", re.DOTALL)


def from_data_uri(uri: str) -> tuple[str, bytes]:
    """Split a data URI into (mime type, decoded bytes)."""
    m = _DATA_URI.match(uri or "")
    if not m:
        raise ValueError("malformed data URI")
    mime = m.group("mime") or "application/octet-stream"
    payload = m.group("payload")
    if ";base64" in m.group("params"):
        try:
            return mime, base64.b64decode(payload, validate=True)
        except ValueError as e:
            raise ValueError(f"invalid base64 payload: {e}") from e
    from urllib.parse import unquote_to_bytes
    return mime, unquote_to_bytes(payload)


@dataclass(frozen=True)
class ConversionRequest:
    request_id: str
    data: str
    file_name: str

    def to_record(self) -> dict[str, object]:
        return {"data": self.data, "fileName": self.file_name}

    @classmethod
    def from_record(cls, request_id: str, record: object) -> "ConversionRequest":
        if not isinstance(record, dict) or not isinstance(record.get("data"), str):
            raise ValueError(f"malformed request record for {request_id}")
        return cls(request_id, record["data"], str(record.get("fileName") or "unknown"))


@dataclass(frozen=True)
class ConversionResult:
    request_id: str
    success: bool
    data: str | None = None
    file_name: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, request_id: str, data: str, file_name: str) -> "ConversionResult":
        return cls(request_id, True, data=data, file_name=file_name)

    @classmethod
    def failed(cls, request_id: str, error: str) -> "ConversionResult":
        return cls(request_id, False, error=error)

    def to_record(self) -> dict[str, object]:
        if self.success:
            return {"success": True, "data": self.data, "fileName": self.file_name}
        return {"success": False, "error": self.error}

    @classmethod
    def from_record(cls, request_id: str, record: object) -> "ConversionResult":
        if not isinstance(record, dict):
            raise ValueError(f"malformed result record for {request_id}")
        success = record.get("success")
        if success is None:
            # Older failure records carry only an error
            success = bool(record.get("data")) and not record.get("error")
        if success:
            return cls.ok(request_id, str(record.get("data") or ""), str(record.get("fileName") or ""))
        return cls.failed(request_id, str(record.get("error") or "Conversion failed"))

import json


class RelayError(Exception):
    """Base class for failures that end a conversion request."""


class RecordNotFound(RelayError):
    """An expected record is missing (lost write or race)."""


class ConversionTimeout(RelayError):
    """No terminal response arrived within a hop's deadline."""


class EngineFailure(RelayError):
    """The conversion engine raised or produced malformed output."""


class ContextInvalidated(RelayError):
    """The coordinating runtime was torn down while a request was in flight."""


class StorageUnavailable(RelayError):
    """The record store's owning runtime context is gone."""


class StorageQuotaExceeded(RelayError):
    """A write would push the signal tier past its byte quota."""


class RelayHostExists(RelayError):
    """A relay host was created while another one is alive."""


def error_message(error: object) -> str:
    """Normalise anything raised or replied as an error into a plain string.

    Strings pass through, exceptions contribute their message (or their
    cause's when empty), mappings are unwrapped through ``message`` then a
    nested ``error`` entry, anything else is JSON encoded.
    """
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        if str(error):
            return str(error)
        cause = error.__cause__ or error.__context__
        return error_message(cause) if cause is not None else type(error).__name__
    if isinstance(error, dict):
        if error.get("message"):
            return str(error["message"])
        if error.get("error"):
            return error_message(error["error"])
        return json.dumps(error, default=str)
    if error is None:
        return "Unknown error"
    return json.dumps(error, default=str)

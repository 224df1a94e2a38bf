"""
Domain layer for the HEIC conversion relay.
Provides the record store tiers, the relay contexts (page agent, dispatcher,
relay host, converter cell) and a service wiring them together, so
front-ends (HTTP or others) can use the same core logic.
"""

from .context import ContextType, RuntimeContext
from .errors import (
    ContextInvalidated,
    ConversionTimeout,
    EngineFailure,
    RecordNotFound,
    RelayError,
    StorageUnavailable,
)
from .interfaces import ConversionEngine, Notifier, RecordStore
from .models import ConversionRequest, ConversionResult
from .page_agent import PageAgent, PageEvent, TextBuffer, TransferItem
from .runtime import ExtensionRuntime
from .service import PasteOutcome, RelayService

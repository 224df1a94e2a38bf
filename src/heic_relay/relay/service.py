import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from heic_relay.config import RelaySettings
from heic_relay.logger import get_logger

from .adapters import CollectingNotifier, JsonFileStore, SqliteRecordStore
from .context import RuntimeContext
from .interfaces import EngineFactory
from .page_agent import PageAgent, PageEvent, RequestIdSource, TransferItem
from .runtime import ExtensionRuntime

_logger = get_logger("service")


@dataclass
class PasteOutcome:
    handled: bool
    converted: list[TransferItem] = field(default_factory=list)
    dispatched: list[PageEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class RelayService:
    """Composition root for one relay deployment.

    This service is framework-agnostic. It builds both record store tiers
    under `data_dir`, the runtime hosting dispatcher and relay host, and
    page agents on demand, so front-ends (HTTP or others) share one pipeline.
    """

    def __init__(self, data_dir: str | Path, engine_factory: EngineFactory, settings: RelaySettings | None = None) -> None:
        self.settings = settings or RelaySettings.from_env()
        self.context = RuntimeContext()
        base = Path(data_dir).resolve()
        self.signal = JsonFileStore(base / "signal", self.context, quota_bytes=self.settings.signal_quota_bytes)
        self.bulk = SqliteRecordStore(
            base / "bulk.sqlite3", self.context, busy_timeout_ms=self.settings.sqlite_busy_timeout_ms
        )
        self.runtime = ExtensionRuntime(self.signal, self.bulk, engine_factory, self.settings, self.context)
        self.ids = RequestIdSource()
        # The stale-record sweep assumes one active request, so events go through one at a time
        self._events = asyncio.Lock()

    async def start(self) -> None:
        # Records never outlive a session
        await self.signal.clear()
        await self.bulk.clear()
        _logger.info("relay service started")

    async def stop(self) -> None:
        await self.runtime.shutdown()
        _logger.info("relay service stopped")

    def page_agent(self, notifier: CollectingNotifier, dispatched: list[PageEvent]) -> PageAgent:
        return PageAgent.attach(self.runtime, notifier=notifier, dispatch=dispatched.append, ids=self.ids)

    async def handle_event(self, event: PageEvent) -> PasteOutcome:
        """Run one paste/drop through a fresh page agent and collect what the page would see."""
        notifier = CollectingNotifier()
        dispatched: list[PageEvent] = []
        agent = self.page_agent(notifier, dispatched)
        async with self._events:
            converted = await agent.handle_event(event)
        return PasteOutcome(
            handled=event.default_prevented,
            converted=converted,
            dispatched=dispatched,
            errors=list(notifier.messages),
        )

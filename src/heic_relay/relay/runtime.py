import asyncio
from typing import Any

from heic_relay.config import RelaySettings
from heic_relay.logger import get_logger

from .context import ContextType, RuntimeContext
from .dispatcher import Dispatcher
from .errors import ContextInvalidated, RelayHostExists
from .interfaces import EngineFactory, RecordStore
from .relay_host import RelayHost

_logger = get_logger("runtime")


class ExtensionRuntime:
    """Host platform for the relay contexts.

    Owns the one-way message bus, the directory of live contexts and the
    lifecycles the platform controls: the dispatcher is started on demand
    when a message arrives and may be terminated at any moment; the relay
    host exists only once created and lives until closed.
    """

    def __init__(
        self,
        signal: RecordStore,
        bulk: RecordStore,
        engine_factory: EngineFactory,
        settings: RelaySettings,
        context: RuntimeContext | None = None,
    ) -> None:
        self.signal = signal
        self.bulk = bulk
        self.settings = settings
        self.context = context or RuntimeContext()
        self._engine_factory = engine_factory
        self._dispatcher: Dispatcher | None = None
        self._relay_host: RelayHost | None = None
        self.dispatcher_starts = 0
        self._dispatcher_terminated = False
        self._restart_handle: asyncio.TimerHandle | None = None

    @property
    def dispatcher(self) -> Dispatcher | None:
        return self._dispatcher

    @property
    def relay_host(self) -> RelayHost | None:
        return self._relay_host

    def send_message(self, message: dict[str, Any], *, sender: ContextType) -> None:
        """Post a message to every other context; delivery is not acknowledged."""
        if not self.context.valid:
            raise ContextInvalidated("Extension context invalidated")
        asyncio.get_running_loop().call_soon(self._deliver, dict(message), sender)

    def _deliver(self, message: dict[str, Any], sender: ContextType) -> None:
        if not self.context.valid:
            _logger.debug("dropping %s message, runtime invalidated", message.get("action"))
            return
        if sender is not ContextType.DISPATCHER:
            self.wake_dispatcher().on_message(message)
        if self._relay_host is not None and sender is not ContextType.RELAY_HOST:
            self._relay_host.on_message(message)

    def wake_dispatcher(self) -> Dispatcher:
        if self._dispatcher is None:
            self.dispatcher_starts += 1
            _logger.info("starting dispatcher (#%d)", self.dispatcher_starts)
            self._dispatcher = Dispatcher(self, self.signal, self.bulk, self.settings)
            if self._dispatcher_terminated:
                self._dispatcher_terminated = False
                self._dispatcher.resume_pending()
        return self._dispatcher

    async def terminate_dispatcher(self, *, restart: bool = True) -> None:
        """Kill the dispatcher mid-flight, as the platform does when it idles.

        With `restart` the platform brings a fresh dispatcher back after
        `dispatcher_restart_delay`, which resumes whatever was left unresolved.
        """
        dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None:
            _logger.info("terminating dispatcher with %d active request(s)", dispatcher.active)
            self._dispatcher_terminated = True
            await dispatcher.terminate()
        if restart and self._dispatcher_terminated and self._restart_handle is None:
            self._restart_handle = asyncio.get_running_loop().call_later(
                self.settings.dispatcher_restart_delay, self._restart_dispatcher
            )

    def _restart_dispatcher(self) -> None:
        self._restart_handle = None
        if not self.context.valid or self._dispatcher is not None:
            return
        self.wake_dispatcher()

    async def get_contexts(self, kind: ContextType) -> list[object]:
        await asyncio.sleep(0)
        if kind is ContextType.RELAY_HOST and self._relay_host is not None:
            return [self._relay_host]
        if kind is ContextType.DISPATCHER and self._dispatcher is not None:
            return [self._dispatcher]
        return []

    async def create_relay_host(self) -> RelayHost:
        await asyncio.sleep(0)
        if self._relay_host is not None:
            raise RelayHostExists("Only a single relay host may be created")
        self._relay_host = RelayHost(self.bulk, self._engine_factory, self.settings)
        return self._relay_host

    async def close_relay_host(self) -> None:
        host, self._relay_host = self._relay_host, None
        if host is not None:
            await host.close()

    async def shutdown(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None
        await self.terminate_dispatcher(restart=False)
        self._dispatcher_terminated = False
        await self.close_relay_host()

    async def invalidate(self) -> None:
        """Tear the runtime down under any page agents still polling it."""
        self.context.invalidate()
        await self.shutdown()

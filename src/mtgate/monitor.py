"""Connection lifecycle for one account: idle -> connecting -> running -> stopping -> idle."""

from __future__ import annotations

import enum
import math

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream

from .accounts import normalize_account_id, resolve_account, resolve_session_path
from .client import ClientFactory, UserClient, build_client
from .config import ConfigError, MissingSessionError
from .handler import TelegramUserMessageHandler
from .logging import get_logger
from .registry import ClientRegistry
from .runtime import HostRuntime
from .send import MISSING_CREDENTIALS, MISSING_SESSION
from .types import InboundMessage

logger = get_logger(__name__)

_DESTROYED_MARKERS = (
    "destroyed",
    "cannot send requests while disconnected",
    "client has been disconnected",
)


class MonitorState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    STOPPING = "stopping"


def is_client_destroyed_error(exc: BaseException) -> bool:
    """True for the errors a client raises once it has been torn down."""
    text = str(exc).lower()
    return any(marker in text for marker in _DESTROYED_MARKERS)


class TelegramUserMonitor:
    def __init__(
        self,
        *,
        runtime: HostRuntime,
        account_id: str | None = None,
        registry: ClientRegistry[UserClient] | None = None,
        client_factory: ClientFactory = build_client,
    ) -> None:
        self._runtime = runtime
        self._account_id = normalize_account_id(account_id)
        self._registry: ClientRegistry[UserClient] = registry or ClientRegistry()
        self._client_factory = client_factory
        self._client: UserClient | None = None
        self._stop_requested = False
        self.state = MonitorState.IDLE

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def stopping(self) -> bool:
        return self._stop_requested

    async def stop(self) -> None:
        """Tear down the connection. Safe to call any number of times."""
        self._stop_requested = True
        client = self._client
        if client is None:
            return
        self._client = None
        if self.state is not MonitorState.IDLE:
            self.state = MonitorState.STOPPING
        self._registry.unregister(self._account_id, client)
        try:
            await client.disconnect()
        except Exception as exc:
            logger.debug(
                "telegram_user.monitor.disconnect_failed",
                account_id=self._account_id,
                error=str(exc),
            )

    def _is_clean_stop(self, exc: Exception) -> bool:
        if self._stop_requested:
            return True
        # someone else tore down our client: replaced or removed from the registry
        if self._registry.get(self._account_id) is self._client:
            return False
        return is_client_destroyed_error(exc)

    async def _stop_when(self, cancel: anyio.Event) -> None:
        await cancel.wait()
        logger.info("telegram_user.monitor.abort", account_id=self._account_id)
        await self.stop()

    async def _pump(
        self,
        receive: MemoryObjectReceiveStream[InboundMessage],
        handler: TelegramUserMessageHandler,
    ) -> None:
        async with anyio.create_task_group() as handlers:
            async for msg in receive:
                handlers.start_soon(handler, msg)

    async def _serve(self, client: UserClient, config: dict, account) -> None:
        await client.connect()
        if self._stop_requested:
            return
        if not await client.is_authorized():
            raise MissingSessionError(MISSING_SESSION)
        try:
            me = await client.get_me()
        except Exception as exc:
            logger.warning(
                "telegram_user.monitor.get_me_failed",
                account_id=self._account_id,
                error=str(exc),
            )
            me = None
        if self._stop_requested:
            return
        handler = TelegramUserMessageHandler(
            client=client,
            runtime=self._runtime,
            config=config,
            account=account,
            self_id=me.id if me is not None else None,
        )
        send, receive = anyio.create_memory_object_stream[InboundMessage](
            max_buffer_size=math.inf
        )

        async def enqueue(msg: InboundMessage) -> None:
            send.send_nowait(msg)

        client.on_message(enqueue)
        self.state = MonitorState.RUNNING
        logger.info(
            "telegram_user.monitor.running",
            account_id=self._account_id,
            self_id=me.id if me is not None else None,
        )
        run_error: Exception | None = None
        with send, receive:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._pump, receive, handler)
                # caught here so it is not wrapped in an ExceptionGroup
                try:
                    await client.run_until_disconnected()
                except Exception as exc:
                    run_error = exc
                tg.cancel_scope.cancel()
        if run_error is not None:
            raise run_error
        if not self._stop_requested:
            logger.warning(
                "telegram_user.monitor.disconnected", account_id=self._account_id
            )

    async def run(self, *, cancel: anyio.Event | None = None) -> None:
        if self.state is not MonitorState.IDLE:
            raise RuntimeError(f"monitor for {self._account_id!r} is already running")
        config = self._runtime.load_config()
        account = resolve_account(config, self._account_id)
        if not account.enabled:
            logger.info("telegram_user.monitor.disabled", account_id=self._account_id)
            return
        credentials = account.credentials
        if not credentials.api_id or not credentials.api_hash:
            raise ConfigError(MISSING_CREDENTIALS)
        session_path = resolve_session_path(
            account.account_id, self._runtime.resolved_state_dir()
        )
        if not session_path.is_file():
            raise MissingSessionError(MISSING_SESSION)

        self._stop_requested = False
        self.state = MonitorState.CONNECTING
        client = self._client_factory(
            credentials.api_id, credentials.api_hash, session_path
        )
        self._client = client
        replaced = self._registry.register(self._account_id, client)
        if replaced is not None:
            logger.info(
                "telegram_user.monitor.replaced_client", account_id=self._account_id
            )

        error: Exception | None = None
        try:
            async with anyio.create_task_group() as tg:
                if cancel is not None:
                    tg.start_soon(self._stop_when, cancel)
                try:
                    await self._serve(client, config, account)
                except Exception as exc:
                    if self._is_clean_stop(exc):
                        logger.info(
                            "telegram_user.monitor.stopped_during_error",
                            account_id=self._account_id,
                            error=str(exc),
                        )
                    else:
                        error = exc
                tg.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                await self.stop()
            self.state = MonitorState.IDLE
        if error is not None:
            logger.error(
                "telegram_user.monitor.failed",
                account_id=self._account_id,
                error=str(error),
                error_type=error.__class__.__name__,
            )
            raise error
        logger.info("telegram_user.monitor.stopped", account_id=self._account_id)

"""Language client facade: the single entry point for the host."""

import asyncio
import functools
import logging
from typing import Any, Dict, Optional

from vlsclient.config import ClientConfiguration
from vlsclient.errors import LanguageClientError, SessionClosed
from vlsclient.host import DocumentModel, SettingsStore, WatcherFactory
from vlsclient.process import ProcessSupervisor
from vlsclient.session import Handler, ProtocolSession, SessionState
from vlsclient.sync import DocumentSyncBridge


class LanguageClient:
    """Owns one session with the language server at a time.

    ``start()`` builds a fresh supervisor, session and sync bridge;
    ``stop()`` tears all of them down. After a stop, or after the server
    crashed, ``start()`` may be called again.
    """

    def __init__(
        self,
        configuration: ClientConfiguration,
        documents: Optional[DocumentModel] = None,
        watcher_factory: Optional[WatcherFactory] = None,
        settings: Optional[SettingsStore] = None,
    ):
        """Initialize the client.

        Args:
            configuration: Client configuration.
            documents: Editor document model to synchronize.
            watcher_factory: Creates the filesystem watcher for the file glob.
            settings: Editor settings store.
        """
        self.configuration = configuration
        self.documents = documents
        self.watcher_factory = watcher_factory
        self.settings = settings
        self.logger = logging.getLogger("vlsclient.client")

        self.supervisor: Optional[ProcessSupervisor] = None
        self.session: Optional[ProtocolSession] = None
        self.bridge: Optional[DocumentSyncBridge] = None
        self._handlers: Dict[str, Handler] = {}
        self._request_handlers: Dict[str, Handler] = {}
        self._stop_task: Optional[asyncio.Future] = None
        self._terminate_task: Optional[asyncio.Future] = None

    @property
    def name(self) -> str:
        return self.configuration.name

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session else SessionState.UNSTARTED

    @property
    def server_capabilities(self) -> Dict[str, Any]:
        return self.session.server_capabilities if self.session else {}

    def is_running(self) -> bool:
        """Check if the client has a session that is not closed.

        Returns:
            True if a session is initializing, ready or shutting down.
        """
        return self.session is not None and self.session.state not in (SessionState.UNSTARTED, SessionState.CLOSED)

    async def start(self) -> "LanguageClient":
        """Start the server and synchronize the editor state with it.

        Returns:
            The client itself, to be handed to the host's disposal mechanism.

        Raises:
            LanguageClientError: If the client is already running, or the
                server cannot be spawned or initialized. Nothing is left
                running when this is raised.
        """
        if self.is_running():
            raise LanguageClientError(f"{self.name} is already running")

        await self._release_previous()

        self._stop_task = None
        self.supervisor = ProcessSupervisor()
        self.session = ProtocolSession(self.supervisor, self.configuration, self.settings)
        for method, handler in self._handlers.items():
            self.session.on_notification(method, handler)
        for method, handler in self._request_handlers.items():
            self.session.on_request(method, handler)
        self.bridge = DocumentSyncBridge(
            self.session,
            self.configuration,
            documents=self.documents,
            watcher_factory=self.watcher_factory,
            settings=self.settings,
        )
        self.session.on_close(functools.partial(self._on_session_closed, self.session, self.supervisor))
        self.bridge.subscribe()

        self.logger.info(f"Starting {self.name}")
        try:
            await self.session.start()
        except BaseException as e:
            if not isinstance(e, asyncio.CancelledError):
                self.logger.error(f"Failed to start {self.name}: {e}")
            await self._teardown()
            raise

        self.logger.info(f"{self.name} is ready")
        return self

    async def stop(self) -> None:
        """Shut the server down and dispose every subscription.

        Idempotent: concurrent and repeated calls share one teardown.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._stop())
        await asyncio.shield(self._stop_task)

    async def dispose(self) -> None:
        """Alias of :meth:`stop` for host disposal lists."""
        await self.stop()

    async def request(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """Send a request through the current session.

        Raises:
            SessionClosed: If the client is not running.
        """
        if self.session is None:
            raise SessionClosed(f"{self.name} is not running")
        return await self.session.request(method, params, timeout)

    def notify(self, method: str, params: Any = None) -> None:
        if self.session is None:
            raise SessionClosed(f"{self.name} is not running")
        self.session.notify(method, params)

    def on_notification(self, method: str, handler: Handler) -> None:
        """Register a notification handler for this and every later session."""
        self._handlers[method] = handler
        if self.session is not None:
            self.session.on_notification(method, handler)

    def on_request(self, method: str, handler: Handler) -> None:
        """Register a server request handler for this and every later session."""
        self._request_handlers[method] = handler
        if self.session is not None:
            self.session.on_request(method, handler)

    async def _stop(self) -> None:
        if self.session is None:
            return
        self.logger.info(f"Stopping {self.name}")
        await self.session.stop()
        await self._teardown()
        self.logger.info(f"{self.name} stopped")

    async def _teardown(self) -> None:
        """Release subscriptions and make sure no server process survives."""
        if self.bridge is not None:
            self.bridge.dispose()
        if self.session is not None:
            if self.session.state is not SessionState.CLOSED:
                await self.session.stop()
            if self.session.handle is not None:
                await self.supervisor.terminate(self.session.handle, self.configuration.terminate_grace_period)

    async def _release_previous(self) -> None:
        """Wait until the server of an earlier session has exited."""
        if self.session is None or self.session.handle is None:
            return
        await self.supervisor.terminate(self.session.handle, self.configuration.terminate_grace_period)

    def _on_session_closed(
        self, session: ProtocolSession, supervisor: ProcessSupervisor, reason: SessionClosed
    ) -> None:
        # Crashes leave nothing to synchronize with
        if self.bridge is not None and session is self.session:
            self.bridge.dispose()

        # Requested stops terminate the process in _teardown
        if self._stop_task is None and session.handle is not None and session.handle.alive:
            self.logger.info(f"Terminating {self.name} after the session closed: {reason}")
            self._terminate_task = asyncio.ensure_future(
                supervisor.terminate(session.handle, self.configuration.terminate_grace_period)
            )

"""Protocol session: request correlation, capability negotiation and dispatch."""

import asyncio
import enum
import inspect
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeAlias

from vlsclient import __version__, methods
from vlsclient.codec import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    Message,
    Notification,
    Request,
    RequestId,
    Response,
    decode_stream,
    encode,
)
from vlsclient.config import ClientConfiguration, selector_to_wire
from vlsclient.errors import (
    FramingError,
    InitializeError,
    LanguageClientError,
    ResponseError,
    SessionClosed,
    ShutdownTimeout,
    SpawnError,
)
from vlsclient.host import SettingsStore
from vlsclient.process import ProcessHandle, ProcessSupervisor
from vlsclient.utils.workspace import path_to_uri

Handler: TypeAlias = Callable[[Any], Any]
Outbound: TypeAlias = Tuple[Message, bytes]

# window/logMessage and window/showMessage severities
LOG_LEVELS = {
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
}


class SessionState(enum.Enum):
    UNSTARTED = "unstarted"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


def client_capabilities() -> Dict[str, Any]:
    """Capabilities announced in the initialize request."""
    return {
        "workspace": {
            "configuration": True,
            "workspaceFolders": True,
            "didChangeConfiguration": {"dynamicRegistration": False},
            "didChangeWatchedFiles": {"dynamicRegistration": False},
        },
        "textDocument": {
            "synchronization": {
                "dynamicRegistration": False,
                "didSave": True,
                "willSave": False,
                "willSaveWaitUntil": False,
            },
            "publishDiagnostics": {"relatedInformation": True},
        },
        "window": {"workDoneProgress": True},
    }


class ProtocolSession:
    """One client/server pairing, from spawning the server to its exit.

    All state changes happen on the event loop that called :meth:`start`.
    A session runs once: after it reaches ``CLOSED`` a new session has to be
    created to talk to a server again.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        configuration: ClientConfiguration,
        settings: Optional[SettingsStore] = None,
    ):
        """Initialize the session.

        Args:
            supervisor: Supervisor used to spawn the server.
            configuration: Client configuration.
            settings: Settings store answering ``workspace/configuration``.
        """
        self.supervisor = supervisor
        self.configuration = configuration
        self.settings = settings
        self.logger = logging.getLogger("vlsclient.session")
        self.server_logger = logging.getLogger("vlsclient.server")

        self.state = SessionState.UNSTARTED
        self.handle: Optional[ProcessHandle] = None
        self.server_capabilities: Dict[str, Any] = {}
        self.server_info: Dict[str, Any] = {}
        self.close_reason: Optional[SessionClosed] = None

        # Request correlation
        self._next_request_id = 1
        self._pending: Dict[RequestId, asyncio.Future] = {}
        self._deferred: List[Outbound] = []
        self._outbound: asyncio.Queue = asyncio.Queue()

        self._notification_handlers: Dict[str, Handler] = {}
        self._request_handlers: Dict[str, Handler] = {}
        self._dispatchers = {
            Request: self._on_request,
            Response: self._on_response,
            Notification: self._on_notification,
        }
        self._ready_listeners: List[Callable[[], None]] = []
        self._close_listeners: List[Callable[[SessionClosed], None]] = []

        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = asyncio.Event()

        supervisor.on_liveness_lost(self._on_liveness_lost)
        self._register_builtin_handlers()

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    async def wait_closed(self) -> None:
        """Wait until the session reaches CLOSED."""
        await self._closed.wait()

    def on_notification(self, method: str, handler: Handler) -> None:
        """Register the handler for a server notification.

        Args:
            method: Notification method name.
            handler: Called with the notification params; may be a coroutine
                function. Replaces any previous handler for the method.
        """
        self._notification_handlers[method] = handler

    def on_request(self, method: str, handler: Handler) -> None:
        """Register the handler for a server-initiated request.

        Args:
            method: Request method name.
            handler: Called with the request params; its return value (awaited
                if needed) is sent back as the result.
        """
        self._request_handlers[method] = handler

    def on_ready(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` on the INITIALIZING to READY transition."""
        self._ready_listeners.append(listener)

    def on_close(self, listener: Callable[[SessionClosed], None]) -> None:
        """Call ``listener`` with the reason once the session is CLOSED."""
        self._close_listeners.append(listener)

    async def start(self) -> Dict[str, Any]:
        """Spawn the server and run the initialize handshake.

        Returns:
            The capabilities the server announced.

        Raises:
            SpawnError: If the server executable cannot be started.
            InitializeError: If the server rejects or never answers initialize.
            SessionClosed: If the server dies or sends garbage during the handshake.
        """
        if self.state is not SessionState.UNSTARTED:
            raise LanguageClientError("A session can only be started once; create a new session to restart")

        self._set_state(SessionState.INITIALIZING)
        options = self.configuration.server
        try:
            self.handle = await self.supervisor.spawn(
                options.command,
                options.args,
                cwd=options.cwd or self.configuration.workspace_root,
                env=options.env or None,
            )
        except SpawnError as e:
            self._close(SessionClosed(str(e)), report=False)
            raise

        self._reader_task = self._spawn_task(self._read_loop(), "vls-reader")
        self._writer_task = self._spawn_task(self._write_loop(), "vls-writer")

        _, future = self._send_request(methods.INITIALIZE, self._initialize_params(), deferrable=False)
        try:
            result = await asyncio.wait_for(future, self.configuration.initialize_timeout)
        except ResponseError as e:
            self._close(SessionClosed(f"Initialize failed: {e}"), report=False)
            raise InitializeError(f"{self.configuration.name} rejected initialize: {e}") from e
        except asyncio.TimeoutError as e:
            self._close(SessionClosed("Initialize timed out"), report=False)
            raise InitializeError(
                f"{self.configuration.name} did not answer initialize within "
                f"{self.configuration.initialize_timeout}s"
            ) from e
        except asyncio.CancelledError:
            self._close(SessionClosed("Start was cancelled"), report=False)
            raise

        result = result or {}
        if "capabilities" not in result:
            self.logger.warning(f"{self.configuration.name} did not announce any capabilities")
        self.server_capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo") or {}
        self.logger.info(
            f"Initialized {self.server_info.get('name', self.configuration.name)} "
            f"{self.server_info.get('version', '')}".rstrip()
        )

        self._write(Notification(methods.INITIALIZED, {}))
        section = self.configuration.configuration_section
        if section:
            self._write(Notification(
                methods.WORKSPACE_DID_CHANGE_CONFIGURATION,
                {"settings": {section: self._settings_value(section)}},
            ))
        self._set_state(SessionState.READY)

        for listener in list(self._ready_listeners):
            try:
                listener()
            except Exception:
                self.logger.exception("Ready listener failed")

        deferred, self._deferred = self._deferred, []
        for item in deferred:
            self._outbound.put_nowait(item)

        return self.server_capabilities

    async def request(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """Send a request and wait for its result.

        Requests made while the session is INITIALIZING are held back and sent
        once the handshake completes. Cancelling the caller (or hitting the timeout)
        forgets the request; a late response is then discarded.

        Args:
            method: Request method name.
            params: Request params.
            timeout: Seconds to wait for the response, None to wait forever.

        Returns:
            The ``result`` member of the response.

        Raises:
            ResponseError: If the server answers with an error.
            SessionClosed: If the session is not started, is shutting down, or
                closes before the response arrives.
            asyncio.TimeoutError: If the timeout expires.
        """
        if self.state in (SessionState.UNSTARTED, SessionState.SHUTTING_DOWN, SessionState.CLOSED):
            raise SessionClosed(f"Cannot send {method}: session is {self.state.value}")

        request_id, future = self._send_request(method, params)
        try:
            return await asyncio.wait_for(future, timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            self._abandon(request_id)
            raise

    def notify(self, method: str, params: Any = None) -> None:
        """Send a notification without waiting for anything.

        Args:
            method: Notification method name.
            params: Notification params.

        Raises:
            SessionClosed: If the session is not started, is shutting down or
                is closed.
        """
        if self.state in (SessionState.UNSTARTED, SessionState.SHUTTING_DOWN, SessionState.CLOSED):
            raise SessionClosed(f"Cannot send {method}: session is {self.state.value}")

        message = Notification(method, params)
        if self.state is SessionState.READY:
            self._write(message)
        else:
            self._deferred.append((message, encode(message)))

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Run the shutdown/exit handshake and close the session.

        A server that does not answer ``shutdown`` in time is logged as a
        :class:`ShutdownTimeout` and closed anyway. Safe to call repeatedly.

        Args:
            timeout: Seconds to wait for the shutdown response, defaults to
                the configured shutdown timeout.
        """
        if self.state is SessionState.CLOSED:
            return
        if self.state is SessionState.SHUTTING_DOWN:
            await self.wait_closed()
            return
        if self.state is not SessionState.READY:
            self._close(SessionClosed("Session stopped before it was ready"), report=False)
            return

        timeout = self.configuration.shutdown_timeout if timeout is None else timeout
        self._set_state(SessionState.SHUTTING_DOWN)

        request_id, future = self._send_request(methods.SHUTDOWN, None, deferrable=False)
        try:
            await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self._pending.pop(request_id, None)
            error = ShutdownTimeout(f"{self.configuration.name} did not answer shutdown within {timeout}s")
            self.logger.warning(f"{error}; proceeding with exit")
        except ResponseError as e:
            self.logger.warning(f"Shutdown request failed: {e}")
        except SessionClosed:
            return

        if self.state is SessionState.SHUTTING_DOWN:
            self._write(Notification(methods.EXIT))
            try:
                await asyncio.wait_for(self._outbound.join(), timeout)
            except asyncio.TimeoutError:
                self.logger.warning("Timed out flushing the exit notification")

        self._close(SessionClosed("Session shut down"), report=False)

    def _send_request(self, method: str, params: Any, deferrable: bool = True) -> Tuple[RequestId, asyncio.Future]:
        """Register a pending entry and queue the request."""
        request_id = self._next_request_id
        message = Request(request_id, method, params)
        data = encode(message)
        self._next_request_id += 1

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        if deferrable and self.state is not SessionState.READY:
            self.logger.debug(f"Deferring {method} until the session is ready")
            self._deferred.append((message, data))
        else:
            self._outbound.put_nowait((message, data))
        return request_id, future

    def _abandon(self, request_id: RequestId) -> None:
        """Forget a request whose caller stopped waiting."""
        if self._pending.pop(request_id, None) is None:
            return

        for item in self._deferred:
            message = item[0]
            if isinstance(message, Request) and message.id == request_id:
                self._deferred.remove(item)
                return

        if self.state is SessionState.READY:
            self._write(Notification(methods.CANCEL_REQUEST, {"id": request_id}))

    def _write(self, message: Message) -> None:
        self._outbound.put_nowait((message, encode(message)))

    async def _write_loop(self) -> None:
        """Write queued frames one at a time, in submission order."""
        stdin = self.handle.stdin
        while True:
            message, data = await self._outbound.get()
            try:
                self.logger.debug(f"Sending LSP message: {message}")
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                self._close(SessionClosed(f"Lost connection to the language server: {e}"),
                            report=self.state is SessionState.READY)
                return
            finally:
                self._outbound.task_done()

    async def _read_loop(self) -> None:
        """Decode server output and dispatch each message by kind."""
        try:
            async for message in decode_stream(self.handle.stdout, self.configuration.max_content_length):
                self.logger.debug(f"Received LSP message: {message}")
                await self._dispatchers[type(message)](message)
        except FramingError as e:
            self._close(SessionClosed(f"Malformed message from the language server: {e}"),
                        report=self.state is SessionState.READY)
            return

        if self.state is SessionState.CLOSED:
            return

        # Let the process monitor close with the exit code first
        try:
            await asyncio.wait_for(self.handle.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            pass
        self._close(SessionClosed("Language server closed its output stream"),
                    report=self.state is SessionState.READY)

    async def _on_response(self, response: Response) -> None:
        future = self._pending.pop(response.id, None)
        if future is None:
            self.logger.debug(f"Ignoring response for unknown request id {response.id!r}")
            return
        if future.done():
            return

        if response.error is not None:
            error = response.error
            future.set_exception(ResponseError(
                error.get("code", INTERNAL_ERROR),
                error.get("message", ""),
                error.get("data"),
            ))
        else:
            future.set_result(response.result)

    async def _on_notification(self, notification: Notification) -> None:
        handler = self._notification_handlers.get(notification.method)
        if handler is None:
            if not notification.method.startswith("$/"):
                self.logger.debug(f"No handler for notification {notification.method}")
            return

        try:
            result = handler(notification.params)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.exception(f"Handler for {notification.method} failed")

    async def _on_request(self, request: Request) -> None:
        # Answered in its own task so a slow handler does not stall the reader
        self._spawn_task(self._answer(request), f"vls-answer-{request.id}")

    async def _answer(self, request: Request) -> None:
        handler = self._request_handlers.get(request.method)
        if handler is None:
            response = Response(request.id, error={
                "code": METHOD_NOT_FOUND,
                "message": f"Unhandled method {request.method}",
            })
        else:
            try:
                result = handler(request.params)
                if inspect.isawaitable(result):
                    result = await result
                response = Response(request.id, result=result)
            except Exception as e:
                self.logger.exception(f"Handler for {request.method} failed")
                response = Response(request.id, error={"code": INTERNAL_ERROR, "message": str(e)})

        if self.state is SessionState.CLOSED:
            return
        try:
            self._write(response)
        except FramingError as e:
            self._write(Response(request.id, error={"code": INTERNAL_ERROR, "message": str(e)}))

    def _on_liveness_lost(self, handle: ProcessHandle, returncode: Optional[int]) -> None:
        if handle is not self.handle:
            return
        report = self.state is SessionState.READY
        self._close(SessionClosed(f"Language server exited unexpectedly with code {returncode}"), report=report)

    def _close(self, reason: SessionClosed, report: bool = True) -> None:
        """Move to CLOSED and fail every caller still waiting.

        Args:
            reason: Why the session closed; each pending caller receives a
                SessionClosed carrying this message.
            report: Log the reason as an error. Used for failures the user
                did not ask for, so each one is reported exactly once.
        """
        if self.state is SessionState.CLOSED:
            return

        self._set_state(SessionState.CLOSED)
        self.close_reason = reason
        if report:
            self.logger.error(f"{self.configuration.name}: {reason}")

        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(SessionClosed(str(reason)))
        self._deferred.clear()
        while not self._outbound.empty():
            self._outbound.get_nowait()
            self._outbound.task_done()

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

        self._closed.set()
        for listener in list(self._close_listeners):
            try:
                listener(reason)
            except Exception:
                self.logger.exception("Close listener failed")

    def _spawn_task(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _set_state(self, state: SessionState) -> None:
        self.logger.debug(f"Session state {self.state.value} -> {state.value}")
        self.state = state

    def _initialize_params(self) -> Dict[str, Any]:
        root = self.configuration.workspace_root
        capabilities = client_capabilities()
        capabilities["experimental"] = {
            "documentSelector": selector_to_wire(self.configuration.document_selector),
            "configurationSection": self.configuration.configuration_section,
        }
        return {
            "processId": os.getpid(),
            "clientInfo": {"name": "vlsclient", "version": __version__},
            "rootPath": root,
            "rootUri": path_to_uri(root) if root else None,
            "workspaceFolders": [{"uri": path_to_uri(root), "name": os.path.basename(root)}] if root else None,
            "capabilities": capabilities,
            "initializationOptions": self.configuration.initialization_options,
            "trace": self.configuration.trace,
        }

    def _settings_value(self, section: Optional[str]) -> Any:
        if self.settings is None:
            return None
        return self.settings.get(section or "")

    def _register_builtin_handlers(self) -> None:
        self.on_notification(methods.WINDOW_LOG_MESSAGE, self._log_message)
        self.on_notification(methods.WINDOW_SHOW_MESSAGE, self._log_message)
        self.on_request(methods.WORKSPACE_CONFIGURATION, self._configuration)
        self.on_request(methods.CLIENT_REGISTER_CAPABILITY, lambda params: None)
        self.on_request(methods.CLIENT_UNREGISTER_CAPABILITY, lambda params: None)
        self.on_request(methods.WINDOW_WORK_DONE_PROGRESS_CREATE, lambda params: None)

    def _log_message(self, params: Optional[Dict[str, Any]]) -> None:
        params = params or {}
        level = LOG_LEVELS.get(params.get("type", 4), logging.INFO)
        self.server_logger.log(level, f"{self.configuration.name}: {params.get('message', '')}")

    def _configuration(self, params: Optional[Dict[str, Any]]) -> List[Any]:
        items = (params or {}).get("items", [])
        return [self._settings_value(item.get("section")) for item in items]

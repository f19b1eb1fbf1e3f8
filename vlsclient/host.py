"""Editor host interfaces and in-process implementations.

The client never talks to an editor directly. It consumes three event sources
(open documents, a filesystem watcher, a settings store) through the
protocols below. The concrete classes in this module implement them in
process; they back the command-line interface and the test suite, and are a
reference for embedding hosts.
"""

import asyncio
import enum
import inspect
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Protocol, TypeAlias, TypeVar

from vlsclient.utils.workspace import Workspace, path_to_uri

Disposer: TypeAlias = Callable[[], None]
T = TypeVar("T")


class DocumentEventKind(enum.Enum):
    OPENED = "opened"
    CHANGED = "changed"
    SAVED = "saved"
    CLOSED = "closed"


class FileChangeKind(enum.IntEnum):
    """File event kinds, numbered like LSP FileChangeType."""

    CREATED = 1
    CHANGED = 2
    DELETED = 3


@dataclass
class TextDocument:
    uri: str
    language_id: str
    version: int
    text: str


@dataclass
class DocumentEvent:
    """An editor document event.

    ``changes`` optionally carries incremental edits as LSP
    ``TextDocumentContentChangeEvent`` objects; ``document`` always holds the
    full text after the event.
    """

    kind: DocumentEventKind
    document: TextDocument
    changes: Optional[List[Dict[str, Any]]] = None


@dataclass
class FileEvent:
    uri: str
    kind: FileChangeKind


class DocumentModel(Protocol):
    def documents(self) -> List[TextDocument]:
        ...

    def on_event(self, callback: Callable[[DocumentEvent], None]) -> Disposer:
        ...


class FileSystemWatcher(Protocol):
    glob_pattern: str

    def on_event(self, callback: Callable[[FileEvent], None]) -> Disposer:
        ...

    def dispose(self) -> None:
        ...


class SettingsStore(Protocol):
    def get(self, section: str) -> Any:
        ...

    def on_change(self, callback: Callable[[str], None]) -> Disposer:
        ...


WatcherFactory: TypeAlias = Callable[[str], FileSystemWatcher]


class Listeners(Generic[T]):
    """Callback registry returning a disposer per registration."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger("vlsclient.host")
        self._callbacks: List[Callable[[T], None]] = []

    def add(self, callback: Callable[[T], None]) -> Disposer:
        self._callbacks.append(callback)

        def dispose() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return dispose

    def fire(self, event: T) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                self.logger.exception(f"{self.name} listener failed")

    def __len__(self) -> int:
        return len(self._callbacks)


class InMemoryDocuments:
    """A document model holding open documents in memory."""

    def __init__(self):
        self._documents: Dict[str, TextDocument] = {}
        self._listeners: Listeners[DocumentEvent] = Listeners("document")

    def documents(self) -> List[TextDocument]:
        return list(self._documents.values())

    def get(self, uri: str) -> Optional[TextDocument]:
        return self._documents.get(uri)

    def on_event(self, callback: Callable[[DocumentEvent], None]) -> Disposer:
        return self._listeners.add(callback)

    def open(self, uri: str, language_id: str, text: str) -> TextDocument:
        """Open a document, or return it unchanged if it is already open.

        Args:
            uri: Document URI.
            language_id: Language of the document.
            text: Initial content.

        Returns:
            The open document.
        """
        if uri in self._documents:
            return self._documents[uri]
        document = TextDocument(uri=uri, language_id=language_id, version=1, text=text)
        self._documents[uri] = document
        self._listeners.fire(DocumentEvent(DocumentEventKind.OPENED, document))
        return document

    def open_file(self, path: str, language_id: str) -> TextDocument:
        """Open a document from disk."""
        with open(path, encoding="utf-8") as f:
            text = f.read()
        return self.open(path_to_uri(path), language_id, text)

    def change(self, uri: str, text: str, changes: Optional[List[Dict[str, Any]]] = None) -> TextDocument:
        """Replace the content of an open document.

        Args:
            uri: Document URI.
            text: Full content after the change.
            changes: Incremental edits producing ``text``, if known.

        Returns:
            The updated document.
        """
        document = self._require(uri)
        document.version += 1
        document.text = text
        self._listeners.fire(DocumentEvent(DocumentEventKind.CHANGED, document, changes))
        return document

    def save(self, uri: str) -> None:
        self._listeners.fire(DocumentEvent(DocumentEventKind.SAVED, self._require(uri)))

    def close(self, uri: str) -> None:
        document = self._documents.pop(uri, None)
        if document is not None:
            self._listeners.fire(DocumentEvent(DocumentEventKind.CLOSED, document))

    def _require(self, uri: str) -> TextDocument:
        document = self._documents.get(uri)
        if document is None:
            raise KeyError(f"Document is not open: {uri}")
        return document


class Settings:
    """A settings store over a nested dictionary.

    Sections are addressed with dotted names: ``get("volt.trace")`` reads
    ``{"volt": {"trace": ...}}``.
    """

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = dict(values or {})
        self._listeners: Listeners[str] = Listeners("settings")

    def get(self, section: str) -> Any:
        if not section:
            return self._values
        node: Any = self._values
        for key in section.split("."):
            if not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        return node

    def update(self, section: str, value: Any) -> None:
        """Replace a top-level section and notify listeners."""
        self._values[section] = value
        self._listeners.fire(section)

    def on_change(self, callback: Callable[[str], None]) -> Disposer:
        return self._listeners.add(callback)


class PollingFileSystemWatcher:
    """Reports created, changed and deleted workspace files matching a glob.

    Polls file modification times instead of relying on native watchers, so
    it behaves the same on every platform.
    """

    def __init__(self, workspace: Workspace, glob_pattern: str, poll_interval: float = 1.0):
        """Initialize the watcher.

        Args:
            workspace: Workspace to scan.
            glob_pattern: Workspace glob selecting files to watch.
            poll_interval: Seconds between scans.
        """
        self.workspace = workspace
        self.glob_pattern = glob_pattern
        self.poll_interval = max(0.1, poll_interval)
        self.logger = logging.getLogger("vlsclient.host.watcher")
        self._listeners: Listeners[FileEvent] = Listeners("file")
        self._snapshot: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None

    def on_event(self, callback: Callable[[FileEvent], None]) -> Disposer:
        return self._listeners.add(callback)

    def start(self) -> "PollingFileSystemWatcher":
        """Take the initial snapshot and start polling."""
        if self._task is None:
            self._snapshot = self._scan()
            self._task = asyncio.create_task(self._poll_loop(), name="vls-file-watcher")
        return self

    def dispose(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def poll(self) -> List[FileEvent]:
        """Compare the workspace against the last snapshot and fire events."""
        current = self._scan()
        events = []
        for path, mtime in current.items():
            if path not in self._snapshot:
                events.append(FileEvent(path_to_uri(path), FileChangeKind.CREATED))
            elif self._snapshot[path] != mtime:
                events.append(FileEvent(path_to_uri(path), FileChangeKind.CHANGED))
        for path in self._snapshot:
            if path not in current:
                events.append(FileEvent(path_to_uri(path), FileChangeKind.DELETED))

        self._snapshot = current
        for event in events:
            self._listeners.fire(event)
        return events

    def _scan(self) -> Dict[str, int]:
        snapshot = {}
        for path in self.workspace.find_files(self.glob_pattern):
            try:
                snapshot[path] = os.stat(path).st_mtime_ns
            except FileNotFoundError:
                continue
        return snapshot

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                self.poll()
            except OSError as e:
                self.logger.warning(f"File watcher scan failed: {e}")


@dataclass
class ExtensionContext:
    """What the host hands to :func:`vlsclient.extension.activate`.

    ``subscriptions`` collects disposables; the host disposes them once, in
    reverse order, when the extension is deactivated.
    """

    extension_path: str
    workspace_root: Optional[str] = None
    settings: Settings = field(default_factory=Settings)
    documents: InMemoryDocuments = field(default_factory=InMemoryDocuments)
    watcher_factory: Optional[WatcherFactory] = None
    subscriptions: List[Any] = field(default_factory=list)

    def as_absolute_path(self, relative_path: str) -> str:
        return os.path.join(os.path.abspath(self.extension_path), relative_path)

    async def dispose_subscriptions(self) -> None:
        while self.subscriptions:
            subscription = self.subscriptions.pop()
            result = subscription.dispose()
            if inspect.isawaitable(result):
                await result

"""Translation of editor events into LSP synchronization notifications."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from vlsclient import methods
from vlsclient.config import ClientConfiguration, DocumentSelector, selector_matches
from vlsclient.host import (
    DocumentEvent,
    DocumentEventKind,
    DocumentModel,
    Disposer,
    FileEvent,
    FileSystemWatcher,
    SettingsStore,
    TextDocument,
    WatcherFactory,
)
from vlsclient.session import ProtocolSession
from vlsclient.utils.workspace import Workspace, match_glob, uri_to_path


@dataclass
class Subscription:
    """A live registration with one editor event source."""

    selector: Optional[DocumentSelector]
    glob: Optional[str]
    callback: Callable[[Any], None]
    disposer: Disposer
    watcher: Optional[FileSystemWatcher] = None

    def dispose(self) -> None:
        self.disposer()
        if self.watcher is not None:
            self.watcher.dispose()


@dataclass
class SyncOptions:
    """Document synchronization the server asked for."""

    open_close: bool = False
    change: int = methods.SYNC_NONE
    save: bool = False
    save_include_text: bool = False

    @classmethod
    def from_capabilities(cls, capabilities: Dict[str, Any]) -> "SyncOptions":
        sync = capabilities.get("textDocumentSync")
        if sync is None:
            return cls()
        if isinstance(sync, int):
            return cls(open_close=sync != methods.SYNC_NONE, change=sync, save=sync != methods.SYNC_NONE)

        save = sync.get("save", False)
        return cls(
            open_close=bool(sync.get("openClose", False)),
            change=sync.get("change", methods.SYNC_NONE) or methods.SYNC_NONE,
            save=bool(save),
            save_include_text=isinstance(save, dict) and bool(save.get("includeText", False)),
        )


class DocumentSyncBridge:
    """Keeps the server's view of documents, files and settings current.

    Events are dropped while the session is not READY. When it becomes READY
    every open document matching the selector is announced with a full-text
    ``didOpen``, so nothing opened earlier is lost.
    """

    def __init__(
        self,
        session: ProtocolSession,
        configuration: ClientConfiguration,
        documents: Optional[DocumentModel] = None,
        watcher_factory: Optional[WatcherFactory] = None,
        settings: Optional[SettingsStore] = None,
    ):
        """Initialize the bridge.

        Args:
            session: Session receiving the notifications.
            configuration: Supplies the document selector, file glob and
                settings section.
            documents: Editor document model.
            watcher_factory: Creates a filesystem watcher for a glob.
            settings: Editor settings store.
        """
        self.session = session
        self.configuration = configuration
        self.documents = documents
        self.watcher_factory = watcher_factory
        self.settings = settings
        self.logger = logging.getLogger("vlsclient.sync")
        self.workspace = Workspace(configuration.workspace_root) if configuration.workspace_root else None

        self.subscriptions: List[Subscription] = []
        self.sync_options = SyncOptions()
        # uri -> version last announced to the server
        self._synced: Dict[str, int] = {}

        session.on_ready(self.synchronize)

    def subscribe(self) -> None:
        """Register with every configured event source."""
        if self.subscriptions:
            return

        if self.documents is not None:
            self.subscriptions.append(Subscription(
                selector=self.configuration.document_selector,
                glob=None,
                callback=self.handle_document_event,
                disposer=self.documents.on_event(self.handle_document_event),
            ))

        glob = self.configuration.file_events
        if glob and self.watcher_factory is not None:
            watcher = self.watcher_factory(glob)
            self.subscriptions.append(Subscription(
                selector=None,
                glob=glob,
                callback=self.handle_file_event,
                disposer=watcher.on_event(self.handle_file_event),
                watcher=watcher,
            ))

        if self.settings is not None and self.configuration.configuration_section:
            self.subscriptions.append(Subscription(
                selector=None,
                glob=None,
                callback=self.handle_settings_change,
                disposer=self.settings.on_change(self.handle_settings_change),
            ))

        self.logger.debug(f"Subscribed to {len(self.subscriptions)} event sources")

    def dispose(self) -> None:
        """Dispose every subscription. Safe to call more than once."""
        subscriptions, self.subscriptions = self.subscriptions, []
        for subscription in subscriptions:
            subscription.dispose()
        self._synced.clear()

    def synchronize(self) -> None:
        """Announce every open matching document with its full text."""
        self.sync_options = SyncOptions.from_capabilities(self.session.server_capabilities)
        if not self.sync_options.open_close and self.configuration.document_selector:
            self.logger.warning(
                f"{self.configuration.name} does not synchronize open documents; "
                f"document events will not be forwarded"
            )

        if self.documents is None or not self.sync_options.open_close:
            return
        for document in self.documents.documents():
            if self._selected(document):
                self._did_open(document)

    def handle_document_event(self, event: DocumentEvent) -> None:
        """Forward one editor document event, if the session is READY."""
        document = event.document
        if not self._selected(document):
            return
        if not self.session.is_ready:
            self.logger.debug(f"Dropping {event.kind.value} event for {document.uri}: session not ready")
            return
        if not self.sync_options.open_close:
            return

        if event.kind is DocumentEventKind.OPENED:
            if document.uri in self._synced:
                self._did_change(document, None)
            else:
                self._did_open(document)
        elif event.kind is DocumentEventKind.CHANGED:
            if document.uri in self._synced:
                self._did_change(document, event.changes)
            else:
                self._did_open(document)
        elif event.kind is DocumentEventKind.SAVED:
            if document.uri in self._synced and self.sync_options.save:
                params: Dict[str, Any] = {"textDocument": {"uri": document.uri}}
                if self.sync_options.save_include_text:
                    params["text"] = document.text
                self.session.notify(methods.TEXT_DOCUMENT_DID_SAVE, params)
        elif event.kind is DocumentEventKind.CLOSED:
            if self._synced.pop(document.uri, None) is not None:
                self.session.notify(methods.TEXT_DOCUMENT_DID_CLOSE, {"textDocument": {"uri": document.uri}})

    def handle_file_event(self, event: FileEvent) -> None:
        """Forward a filesystem event matching the watched glob."""
        glob = self.configuration.file_events
        if not glob or not self._glob_matches(glob, event.uri):
            return
        if not self.session.is_ready:
            self.logger.debug(f"Dropping file event for {event.uri}: session not ready")
            return

        self.session.notify(methods.WORKSPACE_DID_CHANGE_WATCHED_FILES, {
            "changes": [{"uri": event.uri, "type": int(event.kind)}],
        })

    def handle_settings_change(self, section: str) -> None:
        """Forward a change of the configured settings section."""
        configured = self.configuration.configuration_section
        if not configured or configured.split(".")[0] != section.split(".")[0]:
            return
        if not self.session.is_ready:
            return

        self.session.notify(methods.WORKSPACE_DID_CHANGE_CONFIGURATION, {
            "settings": {configured: self.settings.get(configured)},
        })

    def _selected(self, document: TextDocument) -> bool:
        return selector_matches(self.configuration.document_selector, document.uri, document.language_id)

    def _glob_matches(self, glob: str, uri: str) -> bool:
        if self.workspace is not None:
            return self.workspace.matches(glob, uri)
        return match_glob(glob, uri_to_path(uri).lstrip("/"))

    def _did_open(self, document: TextDocument) -> None:
        self._synced[document.uri] = document.version
        self.session.notify(methods.TEXT_DOCUMENT_DID_OPEN, {
            "textDocument": {
                "uri": document.uri,
                "languageId": document.language_id,
                "version": document.version,
                "text": document.text,
            },
        })

    def _did_change(self, document: TextDocument, changes: Optional[List[Dict[str, Any]]]) -> None:
        kind = self.sync_options.change
        if kind == methods.SYNC_NONE:
            return
        if kind == methods.SYNC_INCREMENTAL and changes:
            content_changes = changes
        else:
            content_changes = [{"text": document.text}]

        self._synced[document.uri] = document.version
        self.session.notify(methods.TEXT_DOCUMENT_DID_CHANGE, {
            "textDocument": {"uri": document.uri, "version": document.version},
            "contentChanges": content_changes,
        })

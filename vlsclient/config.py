"""Configuration models for the Volt Language Client."""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from vlsclient.codec import DEFAULT_MAX_CONTENT_LENGTH
from vlsclient.process import resolve_executable
from vlsclient.utils.workspace import match_glob, uri_scheme, uri_to_path

logger = logging.getLogger("vlsclient.config")

SERVER_NAME = "vls"
CONFIGURATION_SECTION = "volt"
LANGUAGE_ID = "volt"
FILE_EVENTS_GLOB = "**/*.volt"


class ServerOptions(BaseModel):
    """How to launch the language server process."""

    command: str
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)


class DocumentFilter(BaseModel):
    """Selects documents by language id, URI scheme and path pattern.

    Every field that is set must match; a filter with no field set matches
    nothing.
    """

    language: Optional[str] = None
    scheme: Optional[str] = None
    pattern: Optional[str] = None

    def matches(self, uri: str, language_id: str) -> bool:
        if self.language is None and self.scheme is None and self.pattern is None:
            return False
        if self.language is not None and self.language != language_id:
            return False
        if self.scheme is not None and self.scheme != uri_scheme(uri):
            return False
        if self.pattern is not None:
            path = uri_to_path(uri).replace(os.sep, "/")
            if not match_glob(self.pattern, path) and not match_glob(self.pattern, os.path.basename(path)):
                return False
        return True


DocumentSelector = List[Union[str, DocumentFilter]]


def selector_matches(selector: DocumentSelector, uri: str, language_id: str) -> bool:
    """Check a document against a selector.

    Args:
        selector: Language ids and filters; any entry may match.
        uri: Document URI.
        language_id: Document language id.

    Returns:
        True if any entry of the selector matches the document.
    """
    for entry in selector:
        if isinstance(entry, str):
            if entry == language_id:
                return True
        elif entry.matches(uri, language_id):
            return True
    return False


def selector_to_wire(selector: DocumentSelector) -> List[Dict[str, Any]]:
    """Serialize a selector as a list of LSP document filters."""
    return [
        {"language": entry} if isinstance(entry, str) else entry.model_dump(exclude_none=True)
        for entry in selector
    ]


class ClientConfiguration(BaseModel):
    """Everything the client needs to launch and synchronize a server."""

    name: str = "Volt Language Server"
    server: ServerOptions
    workspace_root: Optional[str] = None
    document_selector: DocumentSelector = Field(default_factory=lambda: [LANGUAGE_ID])
    configuration_section: Optional[str] = CONFIGURATION_SECTION
    file_events: Optional[str] = FILE_EVENTS_GLOB
    initialization_options: Dict[str, Any] = Field(default_factory=dict)
    trace: str = "off"
    initialize_timeout: Optional[float] = None
    shutdown_timeout: float = 5.0
    terminate_grace_period: float = 2.0
    max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH

    @field_validator("workspace_root")
    @classmethod
    def _absolute_root(cls, value: Optional[str]) -> Optional[str]:
        return os.path.abspath(value) if value else value

    @field_validator("trace")
    @classmethod
    def _check_trace(cls, value: str) -> str:
        if value not in ("off", "messages", "verbose"):
            raise ValueError(f"trace must be one of off, messages, verbose; got {value!r}")
        return value

    @model_validator(mode="after")
    def _warn_on_empty_selector(self) -> "ClientConfiguration":
        if not self.document_selector:
            logger.warning(f"{self.name}: document selector is empty, no documents will be synchronized")
        elif all(isinstance(entry, DocumentFilter) and entry.language is None and entry.scheme is None
                 and entry.pattern is None for entry in self.document_selector):
            logger.warning(f"{self.name}: document selector matches no document kinds")
        return self

    @classmethod
    def for_extension(
        cls,
        extension_path: str,
        workspace_root: Optional[str] = None,
        settings: Optional[Mapping[str, Any]] = None,
        **overrides: Any,
    ) -> "ClientConfiguration":
        """Build the configuration the Volt extension starts its client with.

        The server binary ships next to the extension as ``vls`` (``vls.exe``
        on Windows) and takes no arguments.

        Args:
            extension_path: Installation directory of the extension.
            workspace_root: Root folder of the open workspace.
            settings: Contents of the ``volt`` settings section; an optional
                ``initializationOptions`` entry is forwarded to the server.
            **overrides: Any other ClientConfiguration field.

        Returns:
            The validated configuration.
        """
        settings = settings or {}
        values: Dict[str, Any] = {
            "server": ServerOptions(command=resolve_executable(extension_path, SERVER_NAME)),
            "workspace_root": workspace_root,
            "initialization_options": dict(settings.get("initializationOptions", {})),
        }
        if "trace" in settings:
            values["trace"] = settings["trace"]
        values.update(overrides)
        return cls(**values)

"""Volt Language Client.

Launches the Volt language server, keeps a JSON-RPC session with it over stdio
and synchronizes editor documents, file events and settings for the lifetime
of the host process.
"""

__version__ = "0.1.0"

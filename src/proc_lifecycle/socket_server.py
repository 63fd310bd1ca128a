# src/proc_lifecycle/socket_server.py
"""Unix socket server for the daemon's control channel.

Protocol: newline-delimited JSON. Each request line gets exactly one
response line. Requests carry a "type" field; responses carry "ok" and
either result fields or an "error" message.
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

log = structlog.get_logger()

RequestHandler = Callable[[dict[str, Any]], dict[str, Any]]

# Longest accepted request line
MAX_REQUEST_BYTES = 64 * 1024


def error_response(message: str) -> dict[str, Any]:
    return {"ok": False, "error": message}


class SocketServer:
    """Unix domain socket server dispatching requests to a handler.

    The handler runs synchronously on the event loop, so it never
    interleaves with a tick.
    """

    def __init__(self, socket_path: Path, handler: RequestHandler) -> None:
        self.socket_path = socket_path
        self.handler = handler
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        """Start the socket server."""
        # Remove stale socket file
        if self.socket_path.exists():
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
            limit=MAX_REQUEST_BYTES,
        )

        # Owner and group only: requests can launch programs and change priorities
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IWGRP)
        log.info("socket_server_started", path=str(self.socket_path))

    async def stop(self) -> None:
        """Stop the socket server and remove the socket file."""
        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("socket_server_stopped")

    def dispatch(self, line: bytes) -> dict[str, Any]:
        """Decode one request line and run the handler on it."""
        try:
            msg = json.loads(line.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return error_response(f"Invalid JSON: {e}")
        if not isinstance(msg, dict) or "type" not in msg:
            return error_response("Request must be an object with a 'type' field")

        try:
            return self.handler(msg)
        except Exception as e:
            log.exception("socket_request_failed", type=msg.get("type"), error=str(e))
            return error_response(f"Internal error: {e}")

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve requests from one client until it disconnects."""
        self._clients.add(writer)
        log.debug("socket_client_connected", count=len(self._clients))

        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Line exceeded MAX_REQUEST_BYTES
                    response = error_response("Request too large")
                    writer.write(json.dumps(response).encode() + b"\n")
                    await writer.drain()
                    break
                if not line:
                    break
                if not line.strip():
                    continue

                response = self.dispatch(line)
                writer.write(json.dumps(response).encode() + b"\n")
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            log.debug("socket_client_disconnected", count=len(self._clients))

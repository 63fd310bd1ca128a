# src/proc_lifecycle/socket_client.py

"""Unix socket client for sending control requests to the daemon."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any


class SocketClient:
    """Unix domain socket client for the daemon's control channel.

    Simple and stateless: connects or throws.
    """

    def __init__(self, socket_path: Path):
        self.socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def connect(self) -> None:
        """Connect to the daemon socket.

        Raises:
            FileNotFoundError: If socket doesn't exist (daemon not running)
        """
        if not self.socket_path.exists():
            raise FileNotFoundError(f"Socket not found: {self.socket_path}")

        self._reader, self._writer = await asyncio.open_unix_connection(str(self.socket_path))

    async def disconnect(self) -> None:
        """Disconnect from the daemon socket."""
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
            self._reader = None

    async def read_message(self, timeout: float = 5.0) -> dict[str, Any]:
        """Read next message from socket with timeout.

        Raises:
            ConnectionError: If connection is lost
            TimeoutError: If no data received within timeout
            json.JSONDecodeError: If message is invalid JSON
        """
        if not self._reader:
            raise ConnectionError("Not connected")

        line = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
        if not line:
            raise ConnectionError("Connection closed by server")

        return json.loads(line.decode())

    async def send_message(self, msg: dict[str, Any]) -> None:
        """Send a JSON message with a newline delimiter.

        Raises:
            ConnectionError: If not connected or write fails
        """
        if not self._writer or self._writer.is_closing():
            raise ConnectionError("Not connected")

        try:
            data = json.dumps(msg).encode() + b"\n"
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise ConnectionError(f"Send failed: {e}") from e

    async def request(self, msg: dict[str, Any], timeout: float = 5.0) -> dict[str, Any]:
        """Send one request and wait for its response."""
        await self.send_message(msg)
        return await self.read_message(timeout=timeout)


async def send_request(
    socket_path: Path, msg: dict[str, Any], timeout: float = 5.0
) -> dict[str, Any]:
    """Connect, send one request, return the response and disconnect."""
    client = SocketClient(socket_path)
    await client.connect()
    try:
        return await client.request(msg, timeout=timeout)
    finally:
        await client.disconnect()

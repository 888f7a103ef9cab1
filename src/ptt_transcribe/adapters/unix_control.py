import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Callable
from pathlib import Path

from ptt_transcribe.domain.errors import ProtocolParseError
from ptt_transcribe.ports.control import CONTROL_ACTIONS, ControlCommand

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/ptt-transcribe.sock"
READ_TIMEOUT_S = 5.0


def parse_request(raw: bytes) -> ControlCommand:
    try:
        request = json.loads(raw.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolParseError(f"invalid control request: {exc}") from exc
    if not isinstance(request, dict):
        raise ProtocolParseError("control request must be a JSON object")

    action = request.get("action")
    if action not in CONTROL_ACTIONS:
        raise ProtocolParseError(f"unknown action: {action!r}")
    return ControlCommand(action=action)


def encode_line(message: dict) -> bytes:
    return (json.dumps(message) + "\n").encode()


class UnixSocketControlServer:
    """Accepts one newline-terminated JSON request per connection.

    Valid commands are queued for ``commands()``. The reply is sent after a
    short settle delay so that it carries the coordinator state the command
    produced.
    """

    def __init__(
        self,
        socket_path: str = DEFAULT_SOCKET_PATH,
        status_provider: Callable[[], dict] | None = None,
        settle_seconds: float = 0.1,
    ) -> None:
        self._path = Path(socket_path)
        self._status_provider = status_provider
        self._settle_seconds = settle_seconds
        self._server: asyncio.Server | None = None
        self._pending: asyncio.Queue[ControlCommand] = asyncio.Queue()

    @property
    def socket_path(self) -> str:
        return str(self._path)

    async def start(self) -> None:
        self._path.unlink(missing_ok=True)
        self._server = await asyncio.start_unix_server(self._serve, path=str(self._path))
        os.chmod(self._path, 0o600)
        logger.info("Control socket listening at %s", self._path)

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
            await server.wait_closed()
        self._path.unlink(missing_ok=True)

    async def commands(self) -> AsyncIterator[ControlCommand]:
        while True:
            yield await self._pending.get()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT_S)
            if not raw.strip():
                return
            try:
                command = parse_request(raw)
            except ProtocolParseError as exc:
                logger.warning("Rejected control request: %s", exc)
                reply = {"status": "error", "error": str(exc)}
            else:
                logger.debug("Control command: %s", command.action)
                self._pending.put_nowait(command)
                reply = await self._reply_for(command)
            writer.write(encode_line(reply))
            await writer.drain()
        except asyncio.TimeoutError:
            logger.warning("Control client sent nothing within %.0fs", READ_TIMEOUT_S)
        except (ConnectionError, OSError) as exc:
            logger.warning("Control client connection failed: %s", exc)
        finally:
            writer.close()
            await writer.wait_closed()

    async def _reply_for(self, command: ControlCommand) -> dict:
        if command.action != "status":
            await asyncio.sleep(self._settle_seconds)
        reply = {"status": "ok", "action": command.action}
        if self._status_provider is not None:
            reply["state"] = self._status_provider()
        return reply


class UnixSocketControlClient:
    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH, timeout: float = 10.0) -> None:
        self._socket_path = socket_path
        self._timeout = timeout

    async def send_command(self, action: str) -> dict:
        reader, writer = await asyncio.open_unix_connection(self._socket_path)
        try:
            writer.write(encode_line({"action": action}))
            await writer.drain()
            line = await asyncio.wait_for(reader.readline(), timeout=self._timeout)
        finally:
            writer.close()
            await writer.wait_closed()

        if not line:
            raise ConnectionError("control socket closed without a reply")
        return json.loads(line.decode())

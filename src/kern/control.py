"""Unix-socket control surface for a running kern daemon.

Requests and responses are single JSON lines::

    {"command": "switch_profile", "name": "gaming"}
    {"ok": true, "result": "gaming"}
"""

import json
import logging
import os
import socket
import socketserver
import threading
from pathlib import Path
from typing import Any

from kern.errors import ControlError, KernError
from kern.service import WatchdogService

logger = logging.getLogger(__name__)

MAX_REQUEST_BYTES = 64 * 1024


def dispatch(service: WatchdogService, request: dict[str, Any]) -> Any:
    """
    Execute one control request against the service.

    Raises:
        ControlError: For unknown commands or malformed arguments.
        KernError: Whatever the service raises, e.g. ProfileNotFound.
    """
    command = request.get("command")
    if command == "status":
        return service.get_status()
    if command == "current_profile":
        return service.get_current_profile()
    if command == "list_profiles":
        return service.list_profiles()
    if command == "switch_profile":
        name = request.get("name")
        if not isinstance(name, str):
            raise ControlError("switch_profile requires a 'name' string")
        return service.switch_profile(name).name
    if command == "recent_kills":
        limit = request.get("limit", 10)
        if not isinstance(limit, int):
            raise ControlError("recent_kills 'limit' must be an integer")
        return service.get_recent_kills(limit)
    raise ControlError(f"Unknown command: {command!r}")


class _RequestHandler(socketserver.StreamRequestHandler):
    server: "ControlServer"

    def handle(self) -> None:
        for raw in self.rfile:
            if not raw.strip():
                continue
            response = self._respond(raw)
            self.wfile.write((json.dumps(response) + "\n").encode())
            self.wfile.flush()

    def _respond(self, raw: bytes) -> dict[str, Any]:
        if len(raw) > MAX_REQUEST_BYTES:
            return {"ok": False, "error": "Request too large"}
        try:
            request = json.loads(raw)
            if not isinstance(request, dict):
                raise ControlError("Request must be a JSON object")
            return {"ok": True, "result": dispatch(self.server.service, request)}
        except json.JSONDecodeError as e:
            return {"ok": False, "error": f"Invalid JSON: {e}"}
        except KernError as e:
            return {"ok": False, "error": str(e)}
        except Exception as e:
            logger.exception("Control request failed")
            return {"ok": False, "error": f"Internal error: {e}"}


class ControlServer(socketserver.ThreadingUnixStreamServer):
    """Threaded Unix-socket server; one thread per client connection."""

    daemon_threads = True

    def __init__(self, path: Path, service: WatchdogService) -> None:
        self.path = path
        self.service = service
        self._thread: threading.Thread | None = None
        if path.exists():
            # Stale socket from a previous run
            path.unlink()
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(str(path), _RequestHandler)
        os.chmod(path, 0o600)

    def start(self) -> None:
        """Serve requests in a background daemon thread."""
        self._thread = threading.Thread(
            target=self.serve_forever,
            daemon=True,
            name="ControlServer",
        )
        self._thread.start()
        logger.info("Control socket listening on %s", self.path)

    def stop(self) -> None:
        """Stop serving and remove the socket file."""
        if self._thread is not None:
            self.shutdown()
            self._thread.join(timeout=5.0)
            self._thread = None
        self.server_close()
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def send_command(path: Path, command: str, timeout: float = 10.0, **args: Any) -> Any:
    """
    Send one request to a running daemon and return its result.

    Raises:
        ControlError: If the daemon is unreachable or reports an error.
    """
    request = json.dumps({"command": command, **args}) + "\n"
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect(str(path))
            sock.sendall(request.encode())
            data = b""
            while not data.endswith(b"\n"):
                chunk = sock.recv(4096)
                if not chunk:
                    break
                data += chunk
    except (OSError, socket.timeout) as e:
        raise ControlError(f"Cannot reach kern daemon at {path}: {e}") from e

    try:
        response = json.loads(data)
    except json.JSONDecodeError as e:
        raise ControlError(f"Malformed response from daemon: {e}") from e
    if not response.get("ok"):
        raise ControlError(response.get("error") or "Unknown error")
    return response.get("result")

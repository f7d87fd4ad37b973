"""
replbridge.editor - JSON-RPC 2.0 notification channel to the editor

The editor talks to the bridge over stdio using JSON-RPC 2.0 notifications
with HTTP-style framing:
    Content-Length: <length>\r\n
    \r\n
    <JSON body>

Inbound (editor -> bridge):
    eval        {file, line, column, code, ns?}
    interrupt   {}
    stop        {}      (EOF on stdin counts as stop)

Outbound (bridge -> editor):
    ready       {protocol, host, port, session}
    failed      {reason, error}
    exited      {}
    evaluated   {id, value?, error?}
    unsupported {command, protocol}

Nothing is ever answered; results reach the user through the output log.
"""

import json
import logging
import sys
import threading
from enum import IntEnum
from typing import Any, Callable, Optional

from replbridge.dispatcher import Command, Notifier

logger = logging.getLogger(__name__)

COMMANDS = ("eval", "interrupt", "stop")

# =============================================================================
# JSON-RPC Error Codes
# =============================================================================


class ErrorCode(IntEnum):
    """JSON-RPC error codes."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class JsonRpcError(Exception):
    """Exception representing a JSON-RPC error."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


# =============================================================================
# Transport
# =============================================================================


class ProtocolReader:
    """Reads Content-Length framed JSON messages from an input stream."""

    def __init__(self, input_stream=None):
        """
        Initialize the reader.

        Args:
            input_stream: The input stream to read from (default: sys.stdin.buffer)
        """
        self.input = input_stream or sys.stdin.buffer

    def read_message(self) -> Optional[dict[str, Any]]:
        """
        Read and parse a single message.

        Returns:
            The parsed JSON message, or None if EOF.

        Raises:
            JsonRpcError: If the message is malformed or the stream fails.
        """
        try:
            content_length = self._read_headers()
            if content_length is None:
                return None

            body = self.input.read(content_length)
            if len(body) < content_length:
                return None
        except OSError as e:
            raise JsonRpcError(ErrorCode.INTERNAL_ERROR, f"Error reading message: {e}")

        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise JsonRpcError(ErrorCode.PARSE_ERROR, f"Invalid JSON: {e}")

    def _read_headers(self) -> Optional[int]:
        """
        Read headers and return the Content-Length.

        Returns:
            The content length, or None if EOF.
        """
        content_length = None

        while True:
            line = self.input.readline()
            if not line:
                return None

            line = line.decode("ascii", errors="replace").strip()
            if not line:
                # Empty line marks end of headers
                break

            if line.lower().startswith("content-length:"):
                try:
                    content_length = int(line.split(":", 1)[1].strip())
                except ValueError:
                    raise JsonRpcError(
                        ErrorCode.PARSE_ERROR,
                        f"Invalid Content-Length: {line}",
                    )

        if content_length is None:
            raise JsonRpcError(ErrorCode.PARSE_ERROR, "Missing Content-Length header")
        return content_length


class ProtocolWriter:
    """Writes Content-Length framed JSON messages to an output stream."""

    def __init__(self, output_stream=None):
        self.output = output_stream or sys.stdout.buffer
        self._lock = threading.Lock()

    def write_message(self, message: dict[str, Any]) -> None:
        body = json.dumps(message, ensure_ascii=False).encode("utf-8")
        header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")

        with self._lock:
            self.output.write(header)
            self.output.write(body)
            self.output.flush()


# =============================================================================
# Commands
# =============================================================================


def _optional(params: dict[str, Any], name: str, kind: type) -> Any:
    value = params.get(name)
    if value is None:
        return None
    # bool is an int subclass but never a valid line or column
    if not isinstance(value, kind) or isinstance(value, bool):
        raise JsonRpcError(
            ErrorCode.INVALID_PARAMS,
            f"{name} must be a {kind.__name__}, got {type(value).__name__}",
        )
    return value


def parse_command(message: Any) -> Command:
    """
    Convert an inbound notification into a dispatcher Command.

    Raises:
        JsonRpcError: If the message is not a known, well-formed notification.
    """
    if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
        raise JsonRpcError(ErrorCode.INVALID_REQUEST, "Not a JSON-RPC 2.0 message")

    method = message.get("method")
    if not isinstance(method, str):
        raise JsonRpcError(ErrorCode.INVALID_REQUEST, "Missing method field")
    if method not in COMMANDS:
        raise JsonRpcError(ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

    params = message.get("params") or {}
    if not isinstance(params, dict):
        raise JsonRpcError(ErrorCode.INVALID_PARAMS, "params must be an object")

    if method != "eval":
        return Command(method)

    code = _optional(params, "code", str)
    if code is None:
        raise JsonRpcError(ErrorCode.INVALID_PARAMS, "eval requires code")
    return Command(
        "eval",
        {
            "code": code,
            "file": _optional(params, "file", str),
            "line": _optional(params, "line", int) or 0,
            "column": _optional(params, "column", int) or 0,
            "ns": _optional(params, "ns", str),
        },
    )


# =============================================================================
# Channel
# =============================================================================


class EditorChannel(Notifier):
    """Notifier writing to the editor, plus the inbound command pump."""

    def __init__(
        self,
        reader: Optional[ProtocolReader] = None,
        writer: Optional[ProtocolWriter] = None,
    ):
        self.reader = reader or ProtocolReader()
        self.writer = writer or ProtocolWriter()
        self._thread: Optional[threading.Thread] = None

    def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        try:
            self.writer.write_message(message)
        except (OSError, ValueError) as e:
            # ValueError: write to a closed stream
            logger.warning("Could not send %s to the editor: %s", method, e)

    def ready(self, params: dict[str, Any]) -> None:
        self.notify("ready", params)

    def failed(self, params: dict[str, Any]) -> None:
        self.notify("failed", params)

    def exited(self, params: dict[str, Any]) -> None:
        self.notify("exited", params)

    def evaluated(self, params: dict[str, Any]) -> None:
        self.notify("evaluated", params)

    def unsupported(self, params: dict[str, Any]) -> None:
        self.notify("unsupported", params)

    def pump(self, submit: Callable[[Command], None]) -> None:
        """
        Read editor messages and submit them as commands until EOF.

        Malformed or unknown messages are logged and skipped. EOF, or a
        failing input stream, submits a final stop.
        """
        while True:
            try:
                message = self.reader.read_message()
            except JsonRpcError as e:
                if e.code == ErrorCode.INTERNAL_ERROR:
                    logger.error("Editor input failed: %s", e.message)
                    break
                logger.warning("Ignoring editor message: %s", e.message)
                continue
            if message is None:
                logger.info("Editor closed its input")
                break

            try:
                command = parse_command(message)
            except JsonRpcError as e:
                logger.warning("Ignoring editor message: %s", e.message)
                continue
            logger.debug("Editor command: %s", command.kind)
            submit(command)

        submit(Command("stop"))

    def start_pump(self, submit: Callable[[Command], None]) -> threading.Thread:
        """Run pump() on a daemon thread."""
        self._thread = threading.Thread(
            target=self.pump, args=(submit,), name="replbridge-editor", daemon=True
        )
        self._thread.start()
        return self._thread

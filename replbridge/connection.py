"""
replbridge.connection - Socket ownership, handshakes and protocol selection

One live connection per bridge process. Both variants expose the same
capability interface:
    send(request)   write one encoded request in full
    poll()          block for the next batch of decoded fragments
    close()         shut the socket down (idempotent)

Protocol selection (connect()):
    nrepl   clone handshake, the returned session is attached to every request
    prepl   no handshake, ready as soon as the socket connects
    auto    try the nREPL handshake within the probe timeout; if the server
            does not answer like nREPL, reconnect on a fresh socket as prepl
"""

import itertools
import logging
import socket
import time
from typing import Callable, Optional

from replbridge.codec import NreplCodec, PreplCodec
from replbridge.config import DEFAULT_INIT_CODE, DEFAULT_PROBE_TIMEOUT
from replbridge.errors import ConnectionClosed, HandshakeFailed, MalformedMessage
from replbridge.messages import (
    FragmentKind,
    ProtocolKind,
    Request,
    RequestKind,
    ResponseFragment,
    closed_fragment,
)

logger = logging.getLogger(__name__)

RECV_SIZE = 4096


class ReplConnection:
    """Shared interface and socket handling for both protocol variants."""

    kind: ProtocolKind
    supports_interrupt = False

    def __init__(self, sock: socket.socket, host: str, port: int, codec):
        self.sock = sock
        self.host = host
        self.port = port
        self.codec = codec
        self.session: Optional[str] = None
        self.closed = False
        self._backlog: list[ResponseFragment] = []
        # decoded during the handshake but not yet examined
        self._unread: list[ResponseFragment] = []
        self._ids = itertools.count(1)
        self._handshake_ids: set[str] = set()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.host}:{self.port} session={self.session}>"

    def new_request(self, kind: RequestKind, **fields) -> Request:
        """Create a request with an id unique for this connection's lifetime."""
        return Request(id=str(next(self._ids)), kind=kind, **fields)

    # =========================================================================
    # Handshake
    # =========================================================================

    def handshake(self, timeout: float, init_code: str = "") -> None:
        """Bring the connection to a usable state; raises HandshakeFailed."""
        if init_code:
            self._run_init(init_code, time.monotonic() + timeout)
        self._backlog.extend(f for f in self._unread if not self._is_handshake(f))
        self._unread.clear()
        self.sock.settimeout(None)

    def _run_init(self, code: str, deadline: float) -> None:
        request = self._send_handshake(RequestKind.EVAL, code=code)
        self._await(
            lambda f: f.kind is FragmentKind.DONE and self._answers(f, request),
            deadline,
            "the init form reply",
        )
        logger.debug("Init form evaluated: %s", code)

    def _answers(self, fragment: ResponseFragment, request: Request) -> bool:
        return True

    def _is_handshake(self, fragment: ResponseFragment) -> bool:
        return True

    def _send_handshake(self, kind: RequestKind, **fields) -> Request:
        request = self.new_request(kind, **fields)
        self._handshake_ids.add(request.id)
        try:
            self.send(request)
        except ConnectionClosed as e:
            raise HandshakeFailed(f"Handshake write failed: {e.reason}")
        return request

    def _await(
        self,
        matches: Callable[[ResponseFragment], bool],
        deadline: float,
        what: str,
    ) -> ResponseFragment:
        """
        Read until a fragment satisfying `matches` arrives or the deadline passes.

        Fragments that do not belong to the handshake are kept for poll().
        """
        pending = self._unread
        while True:
            while pending:
                fragment = pending.pop(0)
                if matches(fragment):
                    return fragment
                if not self._is_handshake(fragment):
                    self._backlog.append(fragment)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HandshakeFailed(f"Timed out waiting for {what}")
            self.sock.settimeout(remaining)
            try:
                data = self.sock.recv(RECV_SIZE)
            except socket.timeout:
                raise HandshakeFailed(f"Timed out waiting for {what}")
            except OSError as e:
                raise HandshakeFailed(f"Socket error while waiting for {what}: {e}")
            if not data:
                raise HandshakeFailed(f"Connection closed while waiting for {what}")
            try:
                pending.extend(self.codec.decode(data))
            except MalformedMessage as e:
                raise HandshakeFailed(f"Unexpected reply while waiting for {what}: {e.reason}")

    # =========================================================================
    # Steady state
    # =========================================================================

    def send(self, request: Request) -> bool:
        """
        Encode and write a request.

        Returns:
            False if the request has no encoding for this protocol, else True.

        Raises:
            ConnectionClosed: If the socket fails or reports closed mid-write.
        """
        data = self.codec.encode(request, self.session)
        if not data:
            logger.debug("%s request has no %s encoding", request.kind.value, self.kind.value)
            return False
        logger.debug("-> %r", data)
        self._write_all(data)
        return True

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            try:
                sent = self.sock.send(view)
            except OSError as e:
                raise ConnectionClosed(f"Write failed: {e}")
            if sent == 0:
                raise ConnectionClosed("Socket closed during write")
            view = view[sent:]

    def poll(self) -> list[ResponseFragment]:
        """
        Block until at least one fragment is decoded.

        EOF, socket errors and undecodable bytes end the stream with a single
        synthetic `closed` fragment.
        """
        if self._backlog:
            fragments, self._backlog = self._backlog, []
            return fragments

        while True:
            try:
                data = self.sock.recv(RECV_SIZE)
            except OSError as e:
                return [closed_fragment(f"Socket error: {e}")]
            if not data:
                return [closed_fragment("Connection closed by server")]
            try:
                fragments = self.codec.decode(data)
            except MalformedMessage as e:
                logger.error("Malformed %s message: %s", self.kind.value, e.reason)
                return [closed_fragment(f"Malformed message: {e.reason}")]
            if fragments:
                return fragments

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # already disconnected by the peer
            logger.debug("Socket shutdown: %s", e)
        self.sock.close()


class NreplConnection(ReplConnection):
    """nREPL connection; every request after the handshake carries the session."""

    kind = ProtocolKind.NREPL
    supports_interrupt = True

    def __init__(self, sock: socket.socket, host: str, port: int):
        super().__init__(sock, host, port, NreplCodec())

    def handshake(self, timeout: float, init_code: str = "") -> None:
        clone = self._send_handshake(RequestKind.CLONE)
        reply = self._await(
            lambda f: f.kind is FragmentKind.SESSION and f.request_id == clone.id,
            time.monotonic() + timeout,
            "a new nREPL session",
        )
        if not reply.payload:
            raise HandshakeFailed("nREPL clone returned an empty session id")
        self.session = reply.payload
        logger.info("nREPL session %s", self.session)
        super().handshake(timeout, init_code)

    def _answers(self, fragment: ResponseFragment, request: Request) -> bool:
        return fragment.request_id == request.id

    def _is_handshake(self, fragment: ResponseFragment) -> bool:
        return fragment.request_id in self._handshake_ids


class PreplConnection(ReplConnection):
    """prepl connection; no sessions and no interrupt."""

    kind = ProtocolKind.PREPL

    def __init__(self, sock: socket.socket, host: str, port: int):
        super().__init__(sock, host, port, PreplCodec())


VARIANTS = {
    "nrepl": NreplConnection,
    "prepl": PreplConnection,
}


def open_socket(host: str, port: int, timeout: float) -> socket.socket:
    """Connect a TCP socket; any connect error is a HandshakeFailed."""
    try:
        return socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        raise HandshakeFailed(f"Could not connect to {host}:{port}: {e}")


def connect(
    host: str,
    port: int,
    protocol: str = "auto",
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    init_code: str = DEFAULT_INIT_CODE,
) -> ReplConnection:
    """
    Connect and handshake, selecting the protocol variant.

    Args:
        host: REPL server host
        port: REPL server port
        protocol: "nrepl", "prepl", or "auto" to probe nREPL then fall back to prepl
        timeout: Bound on each handshake step, in seconds
        init_code: Form evaluated once after the handshake (empty to skip)

    Raises:
        HandshakeFailed: If the server is unreachable or no variant handshakes.
    """
    if protocol == "auto":
        candidates = [NreplConnection, PreplConnection]
    elif protocol in VARIANTS:
        candidates = [VARIANTS[protocol]]
    else:
        raise ValueError(f"Unknown protocol: {protocol}")

    for attempt, variant in enumerate(candidates, 1):
        # connect errors propagate, only handshake failures fall through
        sock = open_socket(host, port, timeout)
        connection = variant(sock, host, port)
        try:
            connection.handshake(timeout, init_code)
        except HandshakeFailed as e:
            connection.close()
            logger.info(
                "%s handshake with %s:%d failed: %s",
                variant.kind.value,
                host,
                port,
                e.reason,
            )
            if attempt == len(candidates):
                raise
            continue
        logger.info("Connected to %s:%d using %s", host, port, variant.kind.value)
        return connection

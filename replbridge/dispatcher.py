"""
replbridge.dispatcher - Bridge state machine and event loop

    DISCONNECTED -> CONNECTING -> READY -> STOPPING -> STOPPED
                        |           |
                        +-> FAILED <+

The dispatcher thread owns the connection, the correlator and the output
sink. Two producers feed its event queue:
- the reader thread, blocked in Connection.poll(), puts fragment batches
- the editor channel puts commands (eval, interrupt, stop)

so the loop sees one merged stream in which each source keeps its order.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from replbridge.config import BridgeConfig
from replbridge.connection import ReplConnection, connect
from replbridge.correlator import Correlator, PendingEval
from replbridge.errors import ConnectionClosed, HandshakeFailed, OrphanFragment
from replbridge.messages import (
    FragmentKind,
    Request,
    RequestKind,
    ResponseFragment,
    closed_fragment,
)
from replbridge.sink import OutputSink

logger = logging.getLogger(__name__)

READER_JOIN_TIMEOUT = 1.0


class State(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class Command:
    """An editor command: eval, interrupt or stop."""

    kind: str
    params: dict[str, Any] = field(default_factory=dict)


class Notifier:
    """Receives lifecycle notifications. The base class ignores them."""

    def ready(self, params: dict[str, Any]) -> None:
        pass

    def failed(self, params: dict[str, Any]) -> None:
        pass

    def exited(self, params: dict[str, Any]) -> None:
        pass

    def evaluated(self, params: dict[str, Any]) -> None:
        pass

    def unsupported(self, params: dict[str, Any]) -> None:
        pass


class Dispatcher:
    """
    Drives one bridge session from connect to exit.

    Args:
        config: Where to connect and how
        sink: Output sink for eval blocks
        notifier: Receives ready/failed/exited/evaluated/unsupported
        connector: Callable with connect()'s signature (replaced in tests)
    """

    def __init__(
        self,
        config: BridgeConfig,
        sink: OutputSink,
        notifier: Optional[Notifier] = None,
        connector: Callable[..., ReplConnection] = connect,
    ):
        self.config = config
        self.sink = sink
        self.notifier = notifier or Notifier()
        self.connector = connector
        self.state = State.DISCONNECTED
        self.connection: Optional[ReplConnection] = None
        self.correlator: Optional[Correlator] = None
        self.events: "queue.Queue[tuple[str, Any]]" = queue.Queue()
        self._reader: Optional[threading.Thread] = None

    def submit(self, command: Command) -> None:
        """Queue an editor command. Safe to call from any thread."""
        self.events.put(("command", command))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> bool:
        """Connect and handshake. Returns True once READY."""
        if self.state is not State.DISCONNECTED:
            raise RuntimeError(f"Cannot start from state {self.state.value}")

        self.state = State.CONNECTING
        config = self.config
        logger.info("Connecting to %s:%d (%s)", config.host, config.port, config.protocol)
        try:
            connection = self.connector(
                config.host,
                config.port,
                protocol=config.protocol,
                timeout=config.probe_timeout,
                init_code=config.init_code,
            )
        except HandshakeFailed as e:
            logger.error("Connection failed: %s", e.reason)
            self.state = State.FAILED
            self.notifier.failed(e.to_params())
            return False

        self.connection = connection
        self.correlator = Correlator(connection.kind, connection.session)
        self.sink.open()
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(connection,),
            name="replbridge-reader",
            daemon=True,
        )
        self._reader.start()
        self.state = State.READY
        self.notifier.ready(
            {
                "protocol": connection.kind.value,
                "host": connection.host,
                "port": connection.port,
                "session": connection.session,
            }
        )
        return True

    def _read_loop(self, connection: ReplConnection) -> None:
        while True:
            try:
                fragments = connection.poll()
            except Exception as e:
                # the reader must always end with a closed fragment
                logger.exception("Reader thread failed")
                fragments = [closed_fragment(f"Reader failed: {e}")]
            self.events.put(("fragments", fragments))
            if any(f.kind is FragmentKind.CLOSED for f in fragments):
                return

    def run(self) -> State:
        """Process events until the bridge stops or fails."""
        if self.state is State.DISCONNECTED:
            self.start()
        while self.state is State.READY:
            self.step()
        return self.state

    def step(self, timeout: Optional[float] = None) -> bool:
        """Handle one event. Returns False if none arrived within timeout."""
        try:
            source, payload = self.events.get(timeout=timeout)
        except queue.Empty:
            return False
        if source == "command":
            self.handle_command(payload)
        else:
            self.handle_fragments(payload)
        return True

    def stop(self) -> None:
        """Close the session, surface unfinished evals, and notify exit."""
        if self.state is not State.READY:
            logger.debug("Stop ignored in state %s", self.state.value)
            return
        self.state = State.STOPPING
        connection = self.connection

        try:
            connection.send(connection.new_request(RequestKind.STOP))
        except ConnectionClosed as e:
            logger.info("Could not send close request: %s", e.reason)

        self._surface_incomplete("stopped")
        connection.close()
        if self._reader is not None:
            self._reader.join(READER_JOIN_TIMEOUT)
        self.sink.close()
        self.state = State.STOPPED
        logger.info("Bridge stopped")
        self.notifier.exited({})

    # =========================================================================
    # Commands
    # =========================================================================

    def handle_command(self, command: Command) -> None:
        if self.state is not State.READY:
            logger.debug("Ignoring %s command in state %s", command.kind, self.state.value)
            return
        if command.kind == "eval":
            self._eval(command.params)
        elif command.kind == "interrupt":
            self._interrupt()
        elif command.kind == "stop":
            self.stop()
        else:
            logger.warning("Unknown command: %s", command.kind)

    def _eval(self, params: dict[str, Any]) -> None:
        request = self.connection.new_request(
            RequestKind.EVAL,
            code=params.get("code", ""),
            file=params.get("file"),
            line=params.get("line", 0),
            column=params.get("column", 0),
            ns=params.get("ns"),
        )
        outgoing = self.correlator.submit(request)
        if not outgoing:
            logger.debug("Queued eval %s behind the one in flight", request.id)
        for each in outgoing:
            if not self._send(each):
                return

    def _interrupt(self) -> None:
        connection = self.connection
        if not connection.supports_interrupt:
            logger.info("Interrupt is not supported over %s", connection.kind.value)
            self.notifier.unsupported(
                {"command": "interrupt", "protocol": connection.kind.value}
            )
            return
        target = self.correlator.oldest()
        if target is None:
            logger.debug("Interrupt with nothing outstanding")
            return
        logger.info("Interrupting eval %s", target.request.id)
        self._send(
            connection.new_request(RequestKind.INTERRUPT, interrupt_id=target.request.id)
        )

    def _send(self, request: Request) -> bool:
        try:
            self.connection.send(request)
        except ConnectionClosed as e:
            self._connection_lost(e.reason)
            return False
        return True

    # =========================================================================
    # Fragments
    # =========================================================================

    def handle_fragments(self, fragments: list[ResponseFragment]) -> None:
        for fragment in fragments:
            if self.state is not State.READY:
                return
            if fragment.kind is FragmentKind.CLOSED:
                self._connection_lost(fragment.payload)
                return
            try:
                completed = self.correlator.feed(fragment)
            except OrphanFragment as e:
                logger.info("Dropping fragment: %s", e.reason)
                continue
            if completed is not None:
                self._complete(completed)

    def _complete(self, pending: PendingEval) -> None:
        self.sink.append(pending.request, pending)
        self.notifier.evaluated(pending.summary())
        following = self.correlator.release()
        if following is not None:
            self._send(following)

    def _surface_incomplete(self, reason: str) -> None:
        for pending in self.correlator.discard_all():
            self.sink.append(pending.request, pending, incomplete=reason)
            self.notifier.evaluated(
                {"id": pending.request.id, "error": f"incomplete: {reason}"}
            )

    def _connection_lost(self, reason: str) -> None:
        logger.error("Connection lost: %s", reason)
        self._surface_incomplete(reason)
        self.sink.message(f"Connection lost: {reason}")
        self.connection.close()
        self.sink.close()
        self.state = State.FAILED
        self.notifier.failed(ConnectionClosed(reason).to_params())

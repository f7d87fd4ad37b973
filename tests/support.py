"""
Shared helpers for the replbridge tests: in-process fake nREPL and prepl
servers, a recording notifier, and polling helpers.
"""

import socket
import threading
import time
from typing import Any, Callable, Optional

from replbridge.codec.bencode import BencodeDecoder, encode
from replbridge.codec.edn import pr_str
from replbridge.codec.nrepl import THROWABLE_KEY
from replbridge.config import DEFAULT_INIT_CODE
from replbridge.dispatcher import Notifier

THROWABLE = (
    '{:via [{:type clojure.lang.ExceptionInfo, :message "boom"}], '
    ":trace [[user$eval1 invokeStatic \"NO_SOURCE_FILE\" 1]], "
    ':cause "boom"}'
)


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll predicate until it holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def pump_until(dispatcher, predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Step a dispatcher on the calling thread until predicate holds."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        dispatcher.step(timeout=0.05)
    return predicate()


class RecordingNotifier(Notifier):
    """Notifier that records every notification in order."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def _record(self, method: str, params: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((method, params))

    def ready(self, params):
        self._record("ready", params)

    def failed(self, params):
        self._record("failed", params)

    def exited(self, params):
        self._record("exited", params)

    def evaluated(self, params):
        self._record("evaluated", params)

    def unsupported(self, params):
        self._record("unsupported", params)

    def methods(self) -> list[str]:
        with self._lock:
            return [method for method, _ in self.events]

    def params(self, method: str) -> list[dict[str, Any]]:
        with self._lock:
            return [params for name, params in self.events if name == method]


# =============================================================================
# Fake servers
# =============================================================================


class FakeServer:
    """Threaded TCP listener on an ephemeral port; subclasses speak a protocol."""

    def __init__(self):
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(5)
        self.listener.settimeout(0.05)
        self.port = self.listener.getsockname()[1]

        self.raw: list[bytes] = []
        self.received: list[Any] = []
        self.clients: list[socket.socket] = []
        self.lock = threading.Lock()
        self._running = True
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()

    @property
    def connections(self) -> int:
        with self.lock:
            return len(self.clients)

    def wire_bytes(self) -> bytes:
        with self.lock:
            return b"".join(self.raw)

    def messages(self) -> list[Any]:
        with self.lock:
            return list(self.received)

    def _accept_loop(self) -> None:
        while self._running:
            try:
                client, _ = self.listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            client.settimeout(None)
            with self.lock:
                self.clients.append(client)
            threading.Thread(target=self._serve, args=(client,), daemon=True).start()

    def _serve(self, client: socket.socket) -> None:
        state = self.new_state()
        try:
            while True:
                data = client.recv(4096)
                if not data:
                    break
                with self.lock:
                    self.raw.append(data)
                self.handle(client, data, state)
        except OSError:
            pass
        finally:
            client.close()

    def new_state(self) -> Any:
        return None

    def handle(self, client: socket.socket, data: bytes, state: Any) -> None:
        raise NotImplementedError

    def hang_up(self, client: socket.socket) -> None:
        try:
            client.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def drop_clients(self) -> None:
        with self.lock:
            clients = list(self.clients)
        for client in clients:
            self.hang_up(client)

    def stop(self) -> None:
        self._running = False
        self._thread.join(1.0)
        self.listener.close()
        self.drop_clients()


class FakeNreplServer(FakeServer):
    """
    Minimal nREPL server.

    Args:
        session: Session id handed out by clone
        values: code -> printed value
        outputs: code -> text written to *out* before the value
        errors: code -> text written to *err* before an exception reply
        hold: codes left unanswered until interrupted
        drop: codes that make the server hang up
        garbage: code -> raw bytes sent instead of a reply
    """

    def __init__(
        self,
        session: str = "abc",
        values: Optional[dict[str, str]] = None,
        outputs: Optional[dict[str, str]] = None,
        errors: Optional[dict[str, str]] = None,
        hold=(),
        drop=(),
        garbage: Optional[dict[str, bytes]] = None,
    ):
        self.session = session
        self.values = {"(+ 1 2)": "3", DEFAULT_INIT_CODE: "false"}
        self.values.update(values or {})
        self.outputs = outputs or {}
        self.errors = errors or {}
        self.hold = set(hold)
        self.drop = set(drop)
        self.garbage = garbage or {}
        self.held: dict[str, socket.socket] = {}
        super().__init__()

    def new_state(self) -> BencodeDecoder:
        return BencodeDecoder()

    def handle(self, client, data, state):
        state.feed(data)
        for message in state.values():
            with self.lock:
                self.received.append(message)
            self.reply(client, message)

    def send(self, client: socket.socket, message: dict[str, Any]) -> None:
        client.sendall(encode(message))

    def reply(self, client: socket.socket, message: dict[str, Any]) -> None:
        op = message.get("op")
        base = {"id": message.get("id", ""), "session": message.get("session", "")}

        if op == "clone":
            self.send(
                client,
                {"id": base["id"], "new-session": self.session, "status": ["done"]},
            )
        elif op == "eval":
            code = message.get("code", "")
            if code in self.drop:
                self.hang_up(client)
                return
            if code in self.garbage:
                client.sendall(self.garbage[code])
                return
            if code in self.hold:
                with self.lock:
                    self.held[base["id"]] = client
                return
            if code in self.outputs:
                self.send(client, {**base, "out": self.outputs[code]})
            if code in self.errors:
                self.send(client, {**base, "err": self.errors[code]})
                self.send(
                    client,
                    {
                        **base,
                        "ex": "class clojure.lang.ExceptionInfo",
                        "root-ex": "class clojure.lang.ExceptionInfo",
                        THROWABLE_KEY: THROWABLE,
                        "status": ["eval-error"],
                    },
                )
            else:
                self.send(
                    client, {**base, "value": self.values.get(code, "nil"), "ns": "user"}
                )
            self.send(client, {**base, "status": ["done"]})
        elif op == "interrupt":
            target = message.get("interrupt-id", "")
            with self.lock:
                held = self.held.pop(target, None)
            if held is not None:
                interrupted = {"id": target, "session": base["session"]}
                self.send(held, {**interrupted, "status": ["interrupted"]})
                self.send(held, {**interrupted, "status": ["done"]})
                self.send(client, {**base, "status": ["done"]})
            else:
                self.send(client, {**base, "status": ["done", "interrupt-id-mismatch"]})
        elif op == "close":
            self.send(client, {**base, "status": ["done", "session-closed"]})
        else:
            self.send(client, {**base, "status": ["done", "unknown-op", "error"]})


def split_forms(text: str) -> tuple[list[str], str]:
    """Split complete top-level forms off the front of text."""
    forms = []
    i = 0
    n = len(text)
    while True:
        while i < n and text[i] in " \t\r\n,":
            i += 1
        if i >= n:
            return forms, ""

        start = j = i
        complete = False
        if text[j] in "([{":
            depth = 0
            in_string = False
            while j < n:
                c = text[j]
                if in_string:
                    if c == "\\":
                        j += 2
                        continue
                    if c == '"':
                        in_string = False
                elif c == '"':
                    in_string = True
                elif c in "([{":
                    depth += 1
                elif c in ")]}":
                    depth -= 1
                    if depth == 0:
                        j += 1
                        complete = True
                        break
                j += 1
        else:
            while j < n and text[j] not in " \t\r\n,":
                j += 1
            complete = j < n

        if not complete:
            return forms, text[start:]
        forms.append(text[start:j])
        i = j


class FakePreplServer(FakeServer):
    """
    Minimal prepl server.

    Args:
        values: code -> printed value
        outputs: code -> text written to *out* before the value
        errors: codes that throw
        hold: codes answered only when release() is called
        drop: codes that make the server hang up
        garbage: code -> raw bytes sent instead of a reply
    """

    def __init__(
        self,
        values: Optional[dict[str, str]] = None,
        outputs: Optional[dict[str, str]] = None,
        errors=(),
        hold=(),
        drop=(),
        garbage: Optional[dict[str, bytes]] = None,
    ):
        self.values = {"(+ 1 2)": "3", DEFAULT_INIT_CODE: "false"}
        self.values.update(values or {})
        self.outputs = outputs or {}
        self.errors = set(errors)
        self.hold = set(hold)
        self.drop = set(drop)
        self.garbage = garbage or {}
        self.deferred: list[tuple[socket.socket, str]] = []
        self.codes: list[str] = []
        super().__init__()

    def new_state(self) -> dict[str, str]:
        return {"buffer": ""}

    def handle(self, client, data, state):
        forms, state["buffer"] = split_forms(state["buffer"] + data.decode("utf-8"))
        for form in forms:
            with self.lock:
                self.received.append(form)
            if form == ":repl/quit":
                self.hang_up(client)
                return
            code = form
            if form.startswith("(do\n") and form.endswith("\n)"):
                code = form[4:-2]
            with self.lock:
                self.codes.append(code)
            if code in self.drop:
                self.hang_up(client)
                return
            if code in self.garbage:
                client.sendall(self.garbage[code])
                continue
            if code in self.hold:
                with self.lock:
                    self.deferred.append((client, code))
                continue
            self.reply(client, code)

    def release(self) -> None:
        """Answer every held eval."""
        with self.lock:
            deferred, self.deferred = self.deferred, []
        for client, code in deferred:
            self.reply(client, code)

    def sent_codes(self) -> list[str]:
        with self.lock:
            return list(self.codes)

    def reply(self, client: socket.socket, code: str) -> None:
        lines = []
        if code in self.outputs:
            lines.append(f"{{:tag :out, :val {pr_str(self.outputs[code])}}}")
        if code in self.errors:
            lines.append(
                f"{{:tag :ret, :val {pr_str(THROWABLE)}, :ns \"user\", :ms 1, "
                f":form {pr_str(code)}, :exception true}}"
            )
        else:
            value = self.values.get(code, "nil")
            lines.append(
                f"{{:tag :ret, :val {pr_str(value)}, :ns \"user\", :ms 0, "
                f":form {pr_str(code)}}}"
            )
        client.sendall(("\n".join(lines) + "\n").encode("utf-8"))


def closed_port() -> int:
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port

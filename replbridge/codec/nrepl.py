"""
replbridge.codec.nrepl - nREPL request encoding and response decoding

Requests are bencoded maps:
    {"op": "eval", "id": "7", "session": "...", "code": "(+ 1 2)", ...}

Responses are bencoded maps carrying one or more of: new-session, out, err,
value/ns, ex/root-ex, status. Each response map is split into fragments in
that order, with a `done` fragment last when the status says so.
"""

import logging
from typing import Any, Optional

from replbridge.codec.bencode import BencodeDecoder, encode
from replbridge.codec.edn import format_throwable
from replbridge.errors import MalformedMessage
from replbridge.messages import (
    FragmentKind,
    ProtocolKind,
    Request,
    RequestKind,
    ResponseFragment,
)

logger = logging.getLogger(__name__)

THROWABLE_KEY = "nrepl.middleware.caught/throwable"

_OPS = {
    RequestKind.CLONE: "clone",
    RequestKind.EVAL: "eval",
    RequestKind.INTERRUPT: "interrupt",
    RequestKind.STOP: "close",
}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


class NreplCodec:
    """Encodes Requests to nREPL messages and decodes responses to fragments."""

    kind = ProtocolKind.NREPL

    def __init__(self):
        self._decoder = BencodeDecoder()

    def message(self, request: Request, session: Optional[str] = None) -> dict[str, Any]:
        """Build the nREPL message map for a request."""
        message: dict[str, Any] = {"op": _OPS[request.kind], "id": request.id}

        if request.kind is RequestKind.EVAL:
            message["code"] = request.code
            if request.file:
                message["file"] = request.file
                if request.line > 0:
                    message["line"] = request.line
                    message["column"] = request.column
            if request.ns:
                message["ns"] = request.ns
        elif request.kind is RequestKind.INTERRUPT and request.interrupt_id:
            message["interrupt-id"] = request.interrupt_id

        if session and request.kind is not RequestKind.CLONE:
            message["session"] = session
        return message

    def encode(self, request: Request, session: Optional[str] = None) -> bytes:
        return encode(self.message(request, session))

    def decode(self, data: bytes) -> list[ResponseFragment]:
        """
        Buffer data and return fragments for every complete message.

        Raises:
            MalformedMessage: If the bytes are not valid bencode or a message
                is not a map.
        """
        self._decoder.feed(data)
        fragments = []
        for message in self._decoder.values():
            logger.debug("nREPL message: %r", message)
            try:
                fragments.extend(self.fragments(message))
            except (RecursionError, TypeError, ValueError) as e:
                raise MalformedMessage(f"Unrenderable nREPL message: {e}")
        return fragments

    @staticmethod
    def fragments(message: Any) -> list[ResponseFragment]:
        """Split one nREPL response map into fragments."""
        if not isinstance(message, dict):
            raise MalformedMessage(
                f"Unexpected nREPL message, expected a map: {message!r}"
            )

        request_id = _text(message.get("id"))
        session = _text(message.get("session"))

        def fragment(kind: FragmentKind, payload: str = "", **fields) -> ResponseFragment:
            return ResponseFragment(
                kind, payload, request_id=request_id, session=session, **fields
            )

        fragments = []
        if "new-session" in message:
            fragments.append(fragment(FragmentKind.SESSION, _text(message["new-session"])))
        if "out" in message:
            fragments.append(fragment(FragmentKind.STDOUT, _text(message["out"])))
        if "err" in message:
            fragments.append(fragment(FragmentKind.STDERR, _text(message["err"])))
        if "value" in message:
            fragments.append(
                fragment(
                    FragmentKind.VALUE,
                    _text(message["value"]),
                    ns=_text(message.get("ns")),
                )
            )
        if "ex" in message or "root-ex" in message:
            throwable = message.get(THROWABLE_KEY)
            if isinstance(throwable, str):
                payload = format_throwable(throwable)
            else:
                payload = _text(message.get("ex") or message.get("root-ex"))
            fragments.append(fragment(FragmentKind.EXCEPTION, payload))

        status = message.get("status") or []
        if isinstance(status, str):
            status = [status]
        words = [word for word in status if isinstance(word, str)]
        for word in words:
            if word != "done":
                fragments.append(fragment(FragmentKind.STATUS, word, status=[word]))
        if "done" in words:
            fragments.append(fragment(FragmentKind.DONE, status=words))

        if not fragments:
            logger.debug("Ignoring nREPL message with nothing to report: %r", message)
        return fragments

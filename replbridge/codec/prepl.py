"""
replbridge.codec.prepl - prepl request encoding and response decoding

prepl reads forms from the socket and prints one EDN map per event:
    {:tag :out, :val "hi\\n"}
    {:tag :ret, :val "3", :ns "user", :ms 1, :form "..."}
    {:tag :ret, :val "{:via [...] :trace [...]}", :exception true, ...}

Unlike a plain prepl client, which writes the code followed by a newline,
the bridge wraps eval code in a single top-level (do ...) form. A submission
holding several forms then produces exactly one :ret instead of one per
form, and that :ret is what marks the eval complete. The code is still
evaluated form by form, but only the last value is reported.
"""

import logging
from typing import Optional

from replbridge.codec.edn import Keyword, format_throwable, pr_str, read_one
from replbridge.errors import MalformedMessage
from replbridge.messages import (
    FragmentKind,
    ProtocolKind,
    Request,
    RequestKind,
    ResponseFragment,
)

logger = logging.getLogger(__name__)

QUIT = b":repl/quit\n"

_TAG = Keyword("tag")
_VAL = Keyword("val")
_NS = Keyword("ns")
_MS = Keyword("ms")
_FORM = Keyword("form")
_EXCEPTION = Keyword("exception")


class PreplCodec:
    """Encodes Requests as prepl input and decodes prepl output lines."""

    kind = ProtocolKind.PREPL

    def __init__(self):
        self._buffer = bytearray()
        # buffered bytes already searched for a newline
        self._scanned = 0

    def encode(self, request: Request, session: Optional[str] = None) -> bytes:
        """
        Encode a request. prepl has no sessions, so `session` is ignored.

        Interrupt and clone have no prepl form and encode to b"".
        """
        if request.kind is RequestKind.EVAL:
            return f"(do\n{request.code}\n)\n".encode("utf-8")
        if request.kind is RequestKind.STOP:
            return QUIT
        return b""

    def decode(self, data: bytes) -> list[ResponseFragment]:
        """
        Buffer data and return fragments for every complete line.

        Raises:
            MalformedMessage: If a line is not an EDN map with a keyword :tag.
        """
        self._buffer += data
        fragments = []
        while True:
            newline = self._buffer.find(b"\n", self._scanned)
            if newline == -1:
                self._scanned = len(self._buffer)
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            self._scanned = 0
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            logger.debug("prepl line: %s", text)
            try:
                fragments.extend(self.parse_line(text))
            except (RecursionError, TypeError, ValueError) as e:
                raise MalformedMessage(f"Unrenderable prepl line: {e}", raw)
        return fragments

    @staticmethod
    def parse_line(text: str) -> list[ResponseFragment]:
        """Convert one prepl output line into fragments."""
        try:
            message = read_one(text)
        except MalformedMessage as e:
            raise MalformedMessage(
                f"Unparseable prepl line: {e.reason}", text.encode("utf-8")
            )
        if not isinstance(message, dict) or not isinstance(message.get(_TAG), Keyword):
            raise MalformedMessage(
                f"prepl line is not a tagged map: {text}", text.encode("utf-8")
            )

        tag = message[_TAG].name
        val = message.get(_VAL)
        payload = val if isinstance(val, str) else pr_str(val)
        ns = message.get(_NS) if isinstance(message.get(_NS), str) else None

        if tag == "ret":
            ms = message.get(_MS)
            form = message.get(_FORM)
            fields = {
                "ns": ns,
                "ms": ms if isinstance(ms, int) else 0,
                "form": form if isinstance(form, str) else None,
            }
            if message.get(_EXCEPTION) is True:
                result = ResponseFragment(
                    FragmentKind.EXCEPTION, format_throwable(val), **fields
                )
            else:
                result = ResponseFragment(FragmentKind.VALUE, payload, **fields)
            return [result, ResponseFragment(FragmentKind.DONE, ns=ns, status=["done"])]
        if tag == "out":
            return [ResponseFragment(FragmentKind.STDOUT, payload)]
        if tag == "err":
            return [ResponseFragment(FragmentKind.STDERR, payload)]
        return [ResponseFragment(FragmentKind.STATUS, payload, status=[tag])]

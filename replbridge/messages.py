"""
replbridge.messages - In-memory message model shared by both protocols

- ProtocolKind: NREPL or PREPL
- RequestKind: eval, interrupt, stop (plus the handshake-only clone)
- Request: An editor-originated request, keyed by its id
- FragmentKind: The kind of one asynchronous response piece
- ResponseFragment: One decoded piece of a REPL response
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ProtocolKind(Enum):
    """Wire protocol spoken by a connection."""

    NREPL = "nrepl"
    PREPL = "prepl"


class RequestKind(Enum):
    """Kind of request sent to the REPL server."""

    EVAL = "eval"
    INTERRUPT = "interrupt"
    STOP = "stop"
    CLONE = "clone"  # nREPL handshake only


class FragmentKind(Enum):
    """Kind of a response fragment."""

    VALUE = "value"
    STDOUT = "stdout"
    STDERR = "stderr"
    EXCEPTION = "exception"
    DONE = "done"
    SESSION = "session"
    STATUS = "status"
    CLOSED = "closed"


@dataclass
class Request:
    """A request to the REPL server. The id is the correlation key."""

    id: str
    kind: RequestKind
    code: str = ""
    file: Optional[str] = None
    line: int = 0
    column: int = 0
    ns: Optional[str] = None
    interrupt_id: Optional[str] = None

    @property
    def location(self) -> str:
        """Source location as file:line:column, or <repl> without a file."""
        if not self.file:
            return "<repl>"
        return f"{self.file}:{self.line}:{self.column}"


@dataclass
class ResponseFragment:
    """One asynchronous piece of a REPL response."""

    kind: FragmentKind
    payload: str = ""
    request_id: Optional[str] = None
    session: Optional[str] = None
    ns: Optional[str] = None
    status: list[str] = field(default_factory=list)
    ms: int = 0
    form: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in (FragmentKind.DONE, FragmentKind.CLOSED)


def closed_fragment(reason: str) -> ResponseFragment:
    """Synthetic fragment marking the end of the response stream."""
    return ResponseFragment(FragmentKind.CLOSED, payload=reason)

"""
replbridge.correlator - Matching response fragments to outstanding evals

nREPL responses carry the id of the request that produced them, so any number
of evals may be outstanding at once. prepl responses carry no id; the bridge
keeps at most one eval in flight and queues the rest in submission order.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from replbridge.errors import OrphanFragment
from replbridge.messages import FragmentKind, ProtocolKind, Request, ResponseFragment


@dataclass
class PendingEval:
    """
    Accumulates the fragments of one eval until it completes.

    Attributes:
        request: The eval request
        chunks: (STDOUT|STDERR, text) in arrival order, adjacent same-kind
                chunks merged
        value: Most recent value
        exception: Most recent rendered exception
        ns: Namespace reported with the value
        status: Status words other than done (interrupted, eval-error, ...)
        complete: Set once the terminal fragment arrived
    """

    request: Request
    chunks: list[tuple[FragmentKind, str]] = field(default_factory=list)
    value: Optional[str] = None
    exception: Optional[str] = None
    ns: Optional[str] = None
    status: list[str] = field(default_factory=list)
    complete: bool = False

    def add(self, fragment: ResponseFragment) -> bool:
        """Merge a fragment. Returns True once the eval is complete."""
        kind = fragment.kind
        if kind in (FragmentKind.STDOUT, FragmentKind.STDERR):
            if self.chunks and self.chunks[-1][0] is kind:
                self.chunks[-1] = (kind, self.chunks[-1][1] + fragment.payload)
            else:
                self.chunks.append((kind, fragment.payload))
        elif kind is FragmentKind.VALUE:
            self.value = fragment.payload
            self.ns = fragment.ns or self.ns
        elif kind is FragmentKind.EXCEPTION:
            self.exception = fragment.payload
        elif kind is FragmentKind.STATUS:
            self.status.extend(fragment.status or [fragment.payload])
        elif kind is FragmentKind.DONE:
            self.ns = fragment.ns or self.ns
            self.complete = True
        return self.complete

    def output(self, kind: FragmentKind) -> str:
        return "".join(text for chunk_kind, text in self.chunks if chunk_kind is kind)

    def summary(self) -> dict[str, Any]:
        """Params of the `evaluated` notification."""
        result: dict[str, Any] = {"id": self.request.id}
        if self.exception is not None:
            result["error"] = _first_line(self.exception)
        elif self.value is not None:
            result["value"] = self.value
        else:
            stderr = self.output(FragmentKind.STDERR)
            if stderr.strip():
                result["error"] = _first_line(stderr)
        return result


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


class Correlator:
    """Tracks outstanding evals and routes fragments to them."""

    def __init__(self, kind: ProtocolKind, session: Optional[str] = None):
        self.kind = kind
        self.session = session
        # insertion order is submission order
        self.pending: dict[str, PendingEval] = {}
        self.queued: deque[Request] = deque()

    def __len__(self) -> int:
        return len(self.pending) + len(self.queued)

    @property
    def single_flight(self) -> bool:
        return self.kind is ProtocolKind.PREPL

    def submit(self, request: Request) -> list[Request]:
        """
        Register an eval.

        Returns:
            The requests to write now: the eval itself, or nothing when a
            prepl eval is already in flight and this one was queued.

        Raises:
            ValueError: If an eval with the same id is still outstanding.
        """
        if request.id in self.pending or any(q.id == request.id for q in self.queued):
            raise ValueError(f"Request id {request.id} is already outstanding")

        if self.single_flight and self.pending:
            self.queued.append(request)
            return []
        self.pending[request.id] = PendingEval(request)
        return [request]

    def feed(self, fragment: ResponseFragment) -> Optional[PendingEval]:
        """
        Merge a fragment into its eval.

        Returns:
            The eval, removed from the pending set, if this fragment completed it.

        Raises:
            OrphanFragment: If no outstanding eval owns the fragment.
        """
        if self.single_flight:
            if not self.pending:
                raise OrphanFragment(
                    f"prepl {fragment.kind.value} with no eval in flight", fragment
                )
            pending = next(iter(self.pending.values()))
        else:
            if fragment.session and self.session and fragment.session != self.session:
                raise OrphanFragment(
                    f"Fragment for foreign session {fragment.session}", fragment
                )
            pending = self.pending.get(fragment.request_id)
            if pending is None:
                raise OrphanFragment(
                    f"No pending eval for id {fragment.request_id}", fragment
                )

        if pending.add(fragment):
            del self.pending[pending.request.id]
            return pending
        return None

    def release(self) -> Optional[Request]:
        """Promote the next queued prepl eval once nothing is in flight."""
        if self.pending or not self.queued:
            return None
        request = self.queued.popleft()
        self.pending[request.id] = PendingEval(request)
        return request

    def oldest(self) -> Optional[PendingEval]:
        return next(iter(self.pending.values()), None)

    def discard_all(self) -> list[PendingEval]:
        """Drop every pending and queued eval, returning them for reporting."""
        dropped = list(self.pending.values())
        dropped.extend(PendingEval(request) for request in self.queued)
        self.pending.clear()
        self.queued.clear()
        return dropped

"""
replbridge - Editor bridge to Clojure nREPL and prepl servers

This package connects an editor to a running REPL server, evaluates code
fragments the editor sends, and streams the results into a size-bounded log.

Modules:
- messages.py: Requests and response fragments shared by both protocols
- errors.py: Error taxonomy
- codec/: bencode, EDN, and the nREPL/prepl wire codecs
- connection.py: Socket, handshake and protocol selection
- correlator.py: Matching fragments to outstanding evals
- sink.py: The bounded output log
- dispatcher.py: State machine and event loop
- editor.py: JSON-RPC notification channel to the editor
- config.py: Configuration and port-file lookup
- cli.py: Command line entry point
"""

from replbridge.config import BridgeConfig
from replbridge.connection import NreplConnection, PreplConnection, ReplConnection, connect
from replbridge.correlator import Correlator, PendingEval
from replbridge.dispatcher import Command, Dispatcher, Notifier, State
from replbridge.errors import (
    BridgeError,
    ConnectionClosed,
    HandshakeFailed,
    MalformedMessage,
    OrphanFragment,
)
from replbridge.messages import (
    FragmentKind,
    ProtocolKind,
    Request,
    RequestKind,
    ResponseFragment,
)
from replbridge.sink import LogBuffer, OutputSink

__version__ = "0.1.0"

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "Command",
    "ConnectionClosed",
    "Correlator",
    "Dispatcher",
    "FragmentKind",
    "HandshakeFailed",
    "LogBuffer",
    "MalformedMessage",
    "Notifier",
    "NreplConnection",
    "OrphanFragment",
    "OutputSink",
    "PendingEval",
    "PreplConnection",
    "ProtocolKind",
    "ReplConnection",
    "Request",
    "RequestKind",
    "ResponseFragment",
    "State",
    "connect",
]

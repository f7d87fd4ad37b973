"""
replbridge.cli - Command line entry point

    replbridge -l /tmp/repl.log [-s 100] [-p 7888] [--protocol auto]

The editor spawns this process, talks JSON-RPC notifications over its stdio,
and displays the file given with --log. Exit status is 0 after a requested
stop, 1 when connecting fails or the connection is lost.
"""

import argparse
import logging
import sys
from typing import Optional

from replbridge.config import (
    DEFAULT_HOST,
    DEFAULT_LOG_LINES,
    PROBE_TIMEOUT_ENV,
    PROTOCOLS,
    BridgeConfig,
)
from replbridge.dispatcher import Dispatcher, State
from replbridge.editor import EditorChannel
from replbridge.log import configure_logging
from replbridge.sink import LogBuffer, OutputSink

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="replbridge",
        description="Bridge an editor to a running nREPL or prepl server",
    )
    parser.add_argument(
        "--log",
        "-l",
        required=True,
        metavar="FILE",
        help="Output log the editor displays",
    )
    parser.add_argument(
        "--logsize",
        "-s",
        type=int,
        default=DEFAULT_LOG_LINES,
        metavar="LINES",
        help=f"Maximum lines kept in the output log (default: {DEFAULT_LOG_LINES})",
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        help="REPL server port (default: read .nrepl-port or .prepl-port)",
    )
    parser.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=f"REPL server host (default: {DEFAULT_HOST})",
    )
    parser.add_argument(
        "--protocol",
        choices=PROTOCOLS,
        default="auto",
        help="Wire protocol; auto probes nREPL then falls back to prepl",
    )
    parser.add_argument(
        "--probe-timeout",
        type=float,
        metavar="SECONDS",
        help=f"Handshake timeout (default: ${PROBE_TIMEOUT_ENV} or 2.0)",
    )
    parser.add_argument(
        "--init-code",
        metavar="CODE",
        help="Form evaluated once after connecting; empty string to skip",
    )
    parser.add_argument(
        "--debug-log",
        metavar="FILE",
        help="Also write diagnostic logging to this file",
    )
    parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        help="Diagnostic log level (default: $LOG_LEVEL or INFO)",
    )
    return parser


def run_bridge(dispatcher: Dispatcher, channel: EditorChannel) -> int:
    """Connect, pump editor commands, and run until stopped or failed."""
    if not dispatcher.start():
        return 1
    channel.start_pump(dispatcher.submit)
    try:
        dispatcher.run()
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping")
        dispatcher.stop()
    return 0 if dispatcher.state is State.STOPPED else 1


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the replbridge command. Calls sys.exit with return code."""
    sys.exit(_main(argv))


def _main(argv: Optional[list[str]] = None) -> int:
    """Internal main that returns exit code."""
    args = create_parser().parse_args(argv)
    configure_logging(args.log_level, args.debug_log)
    channel = EditorChannel()

    try:
        config = BridgeConfig.from_args(args)
    except (OSError, ValueError) as e:
        logger.error("Cannot start: %s", e)
        channel.failed({"reason": str(e), "error": type(e).__name__})
        return 1

    sink = OutputSink(LogBuffer(config.log_path, config.max_lines))
    dispatcher = Dispatcher(config, sink, channel)
    return run_bridge(dispatcher, channel)


if __name__ == "__main__":
    main()

"""
replbridge.config - Bridge configuration and port-file lookup

When no port is given on the command line, the port is read from the file
a Clojure tool leaves next to the project:
    .nrepl-port     written by nREPL servers (lein, clj -M:nrepl, ...)
    .prepl-port     written by hand or by a prepl launcher script

The lookup walks up from the working directory, so the bridge can be started
from any subdirectory of the project.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_HOST = "127.0.0.1"
DEFAULT_LOG_LINES = 100
DEFAULT_PROBE_TIMEOUT = 2.0
DEFAULT_INIT_CODE = "(set! *print-namespace-maps* false)"
PORT_FILENAMES = (".nrepl-port", ".prepl-port")
PROTOCOLS = ("auto", "nrepl", "prepl")

PROBE_TIMEOUT_ENV = "REPLBRIDGE_PROBE_TIMEOUT"


def default_probe_timeout() -> float:
    """Probe timeout from REPLBRIDGE_PROBE_TIMEOUT, falling back to 2 seconds."""
    raw = os.getenv(PROBE_TIMEOUT_ENV)
    if not raw:
        return DEFAULT_PROBE_TIMEOUT
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", PROBE_TIMEOUT_ENV, raw)
        return DEFAULT_PROBE_TIMEOUT


def find_port_file(start_path: Optional[str] = None) -> Optional[str]:
    """
    Find a port file by walking up the directory tree.

    Args:
        start_path: Path to start searching from. If None, uses current working directory.
                   Can be a file or directory path.

    Returns:
        Absolute path of the nearest .nrepl-port (preferred) or .prepl-port,
        or None if not found.
    """
    if start_path is None:
        current = os.getcwd()
    elif os.path.isfile(start_path):
        current = os.path.dirname(os.path.abspath(start_path))
    else:
        current = os.path.abspath(start_path)

    while True:
        for name in PORT_FILENAMES:
            candidate = os.path.join(current, name)
            if os.path.isfile(candidate):
                return candidate

        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


def read_port_file(path: str) -> int:
    """
    Read a port number from a port file.

    Raises:
        ValueError: If the file does not hold a port number.
    """
    with open(path, encoding="utf-8") as f:
        text = f.read().strip()
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"Port file {path} does not contain a port number: {text!r}")


@dataclass
class BridgeConfig:
    """
    Everything the bridge needs to start.

    Attributes:
        log_path: Output log file shown by the editor
        port: REPL server port
        host: REPL server host
        max_lines: Line bound of the output log
        protocol: "auto", "nrepl" or "prepl"
        probe_timeout: Seconds to wait for a handshake reply
        init_code: Form evaluated once after connecting (empty to skip)
        port_file: Port file the port was read from, if any
    """

    log_path: str
    port: int
    host: str = DEFAULT_HOST
    max_lines: int = DEFAULT_LOG_LINES
    protocol: str = "auto"
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    init_code: str = DEFAULT_INIT_CODE
    port_file: Optional[str] = None

    def __post_init__(self):
        if self.max_lines < 1:
            raise ValueError(f"Log size must be at least 1 line, got {self.max_lines}")
        if not 0 < self.port < 65536:
            raise ValueError(f"Port out of range: {self.port}")
        if self.probe_timeout <= 0:
            raise ValueError(f"Probe timeout must be positive, got {self.probe_timeout}")
        if self.protocol not in PROTOCOLS:
            raise ValueError(
                f"Unknown protocol {self.protocol!r}, expected one of {', '.join(PROTOCOLS)}"
            )

    @classmethod
    def from_args(cls, args: Any, start_path: Optional[str] = None) -> "BridgeConfig":
        """
        Build a config from parsed command-line arguments.

        Raises:
            FileNotFoundError: If no port was given and no port file exists.
            ValueError: If a value is out of range.
        """
        port = args.port
        port_file = None
        if port is None:
            port_file = find_port_file(start_path)
            if port_file is None:
                raise FileNotFoundError(
                    f"No port given and no {' or '.join(PORT_FILENAMES)} file found"
                )
            port = read_port_file(port_file)
            logger.info("Using port %d from %s", port, port_file)

        protocol = args.protocol
        if protocol == "auto" and port_file and port_file.endswith(".prepl-port"):
            protocol = "prepl"

        probe_timeout = args.probe_timeout
        if probe_timeout is None:
            probe_timeout = default_probe_timeout()

        init_code = args.init_code
        if init_code is None:
            init_code = DEFAULT_INIT_CODE

        return cls(
            log_path=os.path.abspath(args.log),
            port=port,
            host=args.host,
            max_lines=args.logsize,
            protocol=protocol,
            probe_timeout=probe_timeout,
            init_code=init_code,
            port_file=port_file,
        )

"""Command line entry point of the daemon."""

from __future__ import annotations

import getopt
import sys
from importlib import metadata
from typing import Optional, Sequence

from .log import FatalError, open_log
from .server import Server

DEFAULT_CONFIG = "config.default.json"
USAGE = "Usage: {prog} [--log LOG_FILE] [--config CONFIG_FILE] [--version]"


def _version() -> str:
    try:
        return metadata.version("brubeck")
    except metadata.PackageNotFoundError:
        return "unknown"


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse the options, load the configuration and run the server."""
    args = sys.argv[1:] if argv is None else list(argv)
    config_file = DEFAULT_CONFIG
    log_file = None

    try:
        opts, _ = getopt.gnu_getopt(args, "l:c:v", ["log=", "config=", "version"])
    except getopt.GetoptError:
        print(USAGE.format(prog="brubeck"))
        return 1

    for opt, value in opts:
        if opt in ("-l", "--log"):
            log_file = value
        elif opt in ("-c", "--config"):
            config_file = value
        else:
            print(f"brubeck {_version()}")
            return 0

    open_log(log_file)
    try:
        server = Server(config_file)
    except FatalError:
        return 1
    return server.run()
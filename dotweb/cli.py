# -*- coding: utf-8 -*-
"""
dotweb demo server: every request is answered with "it works".

Run:
  dotweb -host example.org
  dotweb -http 8080 -certsDir ""
  dotweb -config config.json
"""

import atexit
import logging
import os
import signal
import sys

from .config import config_from_flags
from .errors import DotwebError
from .server import WebServer

logger = logging.getLogger("dotweb")

IS_POSIX = (os.name == "posix")

# Globals for cleanup
_active_server = None


def hello_handler(request):
    return "it works"


# ─── Signals / Cleanup ───────────────────────────────────────────────────────
def _cleanup(*, wait=True):
    global _active_server
    server = _active_server
    _active_server = None
    if server is not None:
        server.shutdown(wait=wait)

atexit.register(_cleanup)

def _signal_handler(signum, frame):
    logger.info("received %s, shutting down", signal.Signals(signum).name)
    # the main thread is inside serve_forever(); never block here
    _cleanup(wait=False)

def install_signal_handlers():
    signal.signal(signal.SIGINT, _signal_handler)
    if hasattr(signal, "SIGTERM"): signal.signal(signal.SIGTERM, _signal_handler)
    if hasattr(signal, "SIGHUP"):  signal.signal(signal.SIGHUP,  _signal_handler)


def _warn_privileged(config):
    if not (IS_POSIX and hasattr(os, "geteuid") and os.geteuid() != 0):
        return
    ports = [config.http_port] + ([config.https_port] if config.certs_dir else [])
    for port in ports:
        if 0 < port < 1024:
            logger.warning("port %d is privileged; binding it usually needs root", port)


# ─── Main ────────────────────────────────────────────────────────────────────
def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        config = config_from_flags(sys.argv[1:] if argv is None else argv)
    except DotwebError as e:
        logger.error("%s", e)
        return 2

    _warn_privileged(config)

    global _active_server
    _active_server = WebServer(config.with_handler(hello_handler))
    install_signal_handlers()
    try:
        _active_server.serve_forever()
    except DotwebError as e:
        logger.error("%s", e)
        return 1
    finally:
        _active_server = None
    return 0


if __name__ == "__main__":
    sys.exit(main())

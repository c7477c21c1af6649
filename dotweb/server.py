# -*- coding: utf-8 -*-
"""
Bootstraps the HTTP and HTTPS listeners.

HTTPS is served on a background thread with certificates from an autocert
Manager. HTTP is served in the foreground and either redirects to HTTPS or
passes requests to the handler. ACME http-01 challenges are always answered
on HTTP and never redirected.
"""

import logging
import os
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from . import __version__
from .autocert import Manager, accept_tos, host_whitelist
from .cache import DirCache
from .config import Config, load_config
from .errors import BindError, CertsDirError, ListenerError
from .messages import Request, Response, redirect, split_host_port, to_response

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 30.0
MAX_BODY_SIZE     = 10 * 1024 * 1024


# ─── Request handling ────────────────────────────────────────────────────────
class _RequestHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server_version = f"dotweb/{__version__}"

    def _read_body(self):
        if "chunked" in (self.headers.get("Transfer-Encoding") or "").lower():
            return self._read_chunked()
        length = self.headers.get("Content-Length")
        if not length:
            return b""
        try:
            n = int(length)
            if n < 0:
                raise ValueError(length)
        except ValueError:
            self.send_error(400, "Bad Content-Length")
            return None
        if n > MAX_BODY_SIZE:
            self.send_error(413)
            return None
        return self.rfile.read(n)

    def _read_chunked(self):
        chunks = []
        received = 0
        while True:
            line = self.rfile.readline(65537)
            try:
                size = int(line.split(b";", 1)[0].strip(), 16)
                if size < 0:
                    raise ValueError(line)
            except ValueError:
                self.send_error(400, "Bad chunk size")
                return None
            if size == 0:
                # trailers end with an empty line
                while self.rfile.readline(65537) not in (b"\r\n", b"\n", b""):
                    pass
                return b"".join(chunks)
            received += size
            if received > MAX_BODY_SIZE:
                self.send_error(413)
                return None
            chunks.append(self.rfile.read(size))
            self.rfile.readline(65537)

    def _dispatch(self):
        body = self._read_body()
        if body is None:
            return
        request = Request(
            method=self.command,
            target=self.path,
            headers=self.headers,
            body=body,
            host=self.headers.get("Host", ""),
            client_address=self.client_address,
            tls=self.server.tls,
        )
        try:
            response = to_response(self.server.app(request))
        except Exception:
            logger.exception("handler failed for %s %s", self.command, self.path)
            response = Response(status=500, body="Internal Server Error\n")
        self._write(response)

    do_GET = do_HEAD = do_POST = do_PUT = do_PATCH = do_DELETE = do_OPTIONS = _dispatch

    def _write(self, response):
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
            if name.lower() == "connection" and value.lower() == "close":
                self.close_connection = True
        if not any(n.lower() == "content-length" for n in response.headers):
            self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if self.command != "HEAD" and response.body:
            self.wfile.write(response.body)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def log_error(self, format, *args):
        logger.info("%s - %s", self.address_string(), format % args)


class ReusableHTTPServer(ThreadingHTTPServer):
    allow_reuse_address = True
    daemon_threads = True
    tls = False

    def __init__(self, address, app):
        self.app = app
        super().__init__(address, _RequestHandler)


class TLSHTTPServer(ReusableHTTPServer):
    """Accepts plain sockets and runs the TLS handshake on the worker thread."""
    tls = True

    def __init__(self, address, app, context):
        self.context = context
        super().__init__(address, app)

    def get_request(self):
        sock, addr = self.socket.accept()
        return self.context.wrap_socket(sock, server_side=True, do_handshake_on_connect=False), addr

    def finish_request(self, request, client_address):
        request.settimeout(HANDSHAKE_TIMEOUT)
        try:
            request.do_handshake()
        except (ssl.SSLError, OSError) as e:
            logger.debug("tls handshake with %s failed: %s", client_address, e)
            return
        request.settimeout(None)
        super().finish_request(request, client_address)


def _listen(cls, address, *args):
    try:
        return cls(address, *args)
    except (OSError, OverflowError) as e:
        raise BindError(f"cannot listen on {_format_addr(address)}: {e}") from e


def _format_addr(address):
    host, port = address[:2]
    return f"{host}:{port}"


def _shutdown_httpd(httpd, *, wait=True, timeout=3.0):
    # Run shutdown off-thread so callers inside serve_forever() don't deadlock.
    def _do_shutdown():
        httpd.shutdown()
        httpd.server_close()

    t = threading.Thread(target=_do_shutdown, daemon=True)
    t.start()
    if wait:
        t.join(timeout)


def ensure_certs_dir(path):
    if os.path.isdir(path):
        return
    if os.path.exists(path):
        raise CertsDirError(f"certs dir {path} exists and is not a directory")
    try:
        os.mkdir(path, 0o700)
    except OSError as e:
        raise CertsDirError(f"cannot create certs dir {path}: {e}") from e
    logger.info("created certs dir %s", path)


# ─── Server ──────────────────────────────────────────────────────────────────
class WebServer:
    """
    HTTP listener plus, when a certs dir is configured, an HTTPS listener.

    bind() creates the certs dir and binds both sockets; serve_forever()
    blocks on the HTTP listener. A failure of the background HTTPS listener
    stops the HTTP listener and is raised from serve_forever().
    """

    def __init__(self, config: Config, *, manager=None):
        self.config = config
        self.https_available = bool(config.certs_dir)
        self.manager = manager
        self.http_server = None
        self.https_server = None
        self._https_thread = None
        self._https_error = None
        self._started = False

    @property
    def http_address(self):
        return self.http_server.server_address if self.http_server else None

    @property
    def https_address(self):
        return self.https_server.server_address if self.https_server else None

    def bind(self):
        if self.http_server is not None:
            return self
        cfg = self.config
        if not self.https_available:
            logger.warning("no certs dir was provided, https was disabled")
        else:
            ensure_certs_dir(cfg.certs_dir)
            if self.manager is None:
                self.manager = Manager(
                    DirCache(cfg.certs_dir),
                    host_policy=host_whitelist(cfg.host),
                    prompt=accept_tos,
                )

        if self.https_available:
            self.https_server = _listen(TLSHTTPServer, (cfg.host, cfg.https_port),
                                        self._call_handler, self.manager.ssl_context())
        try:
            self.http_server = _listen(ReusableHTTPServer, (cfg.host, cfg.http_port), self._http_app())
        except BindError:
            if self.https_server is not None:
                self.https_server.server_close()
                self.https_server = None
            raise
        return self

    def _call_handler(self, request):
        handler = self.config.handler
        if handler is None:
            return None
        return handler(request)

    def _http_app(self):
        cfg = self.config

        def fallback(request):
            if cfg.redirect_http and self.https_available:
                return redirect(self.redirect_location(request), 301, request)
            return self._call_handler(request)

        if self.https_available:
            return self.manager.http_handler(fallback)
        return fallback

    def redirect_location(self, request) -> str:
        cfg = self.config
        host = request.host or cfg.host or "localhost"
        if host.endswith(":"):
            host = host[:-1]
        http_suffix, https_suffix = f":{cfg.http_port}", f":{cfg.https_port}"
        if host.endswith(http_suffix):
            host = host[:-len(http_suffix)] + https_suffix
        elif cfg.https_port != 443 and split_host_port(host)[1] is None:
            # no explicit port: clients would assume 443
            host += https_suffix
        return f"https://{host}{request.path_with_query}"

    def _serve_https(self):
        try:
            self.https_server.serve_forever(poll_interval=0.5)
        except Exception as e:
            logger.error("https listener on %s failed: %s", _format_addr(self.https_address), e, exc_info=True)
            self._https_error = e
            _shutdown_httpd(self.http_server, wait=False)

    def serve_forever(self):
        self.bind()
        self._started = True
        if self.https_server is not None:
            logger.info("starting listening on %s", _format_addr(self.https_address))
            self._https_thread = threading.Thread(target=self._serve_https, name="dotweb-https", daemon=True)
            self._https_thread.start()

        logger.info("starting listening on %s", _format_addr(self.http_address))
        try:
            self.http_server.serve_forever(poll_interval=0.5)
        except Exception as e:
            raise ListenerError(f"http listener on {_format_addr(self.http_address)} failed: {e}") from e
        finally:
            self.http_server.server_close()
            self._stop_https()

        if self._https_error is not None:
            raise ListenerError(f"https listener failed: {self._https_error}") from self._https_error

    def _stop_https(self, *, wait=True):
        if self.https_server is None:
            return
        if self._https_error is None and self._https_thread is not None and self._https_thread.is_alive():
            _shutdown_httpd(self.https_server, wait=wait)
        else:
            self.https_server.server_close()

    def shutdown(self, *, wait=True):
        self._stop_https(wait=wait)
        if self.http_server is None:
            return
        if self._started:
            _shutdown_httpd(self.http_server, wait=wait)
        else:
            self.http_server.server_close()


def start_web_server(config: Config):
    """Start serving with the given config. Blocks until the HTTP listener stops."""
    return WebServer(config).serve_forever()


def start_web_server_from_config(config_file, handler):
    config = load_config(config_file).with_handler(handler)
    return start_web_server(config)

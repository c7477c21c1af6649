# -*- coding: utf-8 -*-
"""
Configuration for the dotweb server.

A Config comes either from command-line flags or from a JSON file:

  -host string          hostname to listen on. Leave blank to listen for localhost
  -http int             port to listen on for HTTP requests (default 80)
  -https int            port to listen on for HTTPS requests (default 443)
  -certsDir string      directory to save the certificates to (default "certs")
  -redirectHttp         redirect all HTTP requests to HTTPS (default true)
  -config string        path to json config file, overrides flags

The JSON file uses the keys host, http, https, certsDir and redirectHttp.
Keys missing from the file keep their default values.
"""

import argparse
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import ConfigFileError, ConfigParseError, FlagError

logger = logging.getLogger(__name__)

# Handler(request) -> Response | bytes | str | None
Handler = Callable[[Any], Any]

# JSON key -> (Config field, expected type)
JSON_FIELDS = {
    "host":         ("host", str),
    "http":         ("http_port", int),
    "https":        ("https_port", int),
    "certsDir":     ("certs_dir", str),
    "redirectHttp": ("redirect_http", bool),
}

_TRUE  = ("1", "t", "T", "true", "TRUE", "True")
_FALSE = ("0", "f", "F", "false", "FALSE", "False")


@dataclass(frozen=True)
class Config:
    # Hostname the server listens on, also the only domain a certificate is
    # requested for. Leave blank for localhost.
    host: str = ""
    http_port: int = 80
    https_port: int = 443
    # Certificate cache directory. Empty disables HTTPS.
    certs_dir: str = "certs"
    # Redirect HTTP to HTTPS. ACME http-01 challenges are never redirected.
    redirect_http: bool = True
    handler: Optional[Handler] = field(default=None, compare=False, repr=False)

    def with_handler(self, handler: Optional[Handler]) -> "Config":
        return dataclasses.replace(self, handler=handler)

    def to_dict(self) -> dict:
        return {key: getattr(self, attr) for key, (attr, _) in JSON_FIELDS.items()}

    @classmethod
    def from_dict(cls, data: dict, *, base: Optional["Config"] = None) -> "Config":
        if not isinstance(data, dict):
            raise ConfigParseError(f"config must be a JSON object, got {type(data).__name__}")
        values = {}
        for key, (attr, typ) in JSON_FIELDS.items():
            if key not in data:
                continue
            value = data[key]
            # bool is an int subclass; keep ports strictly numeric
            if not isinstance(value, typ) or (typ is int and isinstance(value, bool)):
                raise ConfigParseError(
                    f"config key {key!r} must be {typ.__name__}, got {type(value).__name__}")
            values[attr] = value
        return dataclasses.replace(base if base is not None else default_config(), **values)


def default_config() -> Config:
    return Config()


# ─── Flags ───────────────────────────────────────────────────────────────────
class _FlagParser(argparse.ArgumentParser):
    def error(self, message):
        raise FlagError(message)


def _parse_int(s: str) -> int:
    try:
        return int(s, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value {s!r}")


def _parse_bool(s: str) -> bool:
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {s!r}")


def build_parser(defaults: Optional[Config] = None) -> argparse.ArgumentParser:
    d = defaults or default_config()
    p = _FlagParser(prog="dotweb", allow_abbrev=False,
                    description="HTTP(S) web server with automatic Let's Encrypt certificates.")
    p.add_argument("-host", "--host", dest="host", default=d.host,
                   help="hostname to listen on. Leave blank to listen for localhost")
    p.add_argument("-http", "--http", dest="http_port", type=_parse_int, default=d.http_port,
                   help=f"port to listen on for HTTP requests (default {d.http_port})")
    p.add_argument("-https", "--https", dest="https_port", type=_parse_int, default=d.https_port,
                   help=f"port to listen on for HTTPS requests (default {d.https_port})")
    p.add_argument("-certsDir", "--certsDir", dest="certs_dir", default=d.certs_dir,
                   help=f"directory to save the certificates to (default {d.certs_dir!r})")
    p.add_argument("-redirectHttp", "--redirectHttp", dest="redirect_http", type=_parse_bool,
                   nargs="?", const=True, default=d.redirect_http,
                   help="redirect all HTTP requests to HTTPS (default true)")
    p.add_argument("-config", "--config", dest="config", default="",
                   help="path to json config file, overrides flags")
    return p


def config_from_flags(args) -> Config:
    """
    Resolve a Config from command-line arguments, e.g. sys.argv[1:].
    If -config names a file every other flag is ignored and the file is loaded.
    """
    ns = build_parser().parse_args(list(args))
    if ns.config:
        return load_config(ns.config)
    return Config(
        host=ns.host,
        http_port=ns.http_port,
        https_port=ns.https_port,
        certs_dir=ns.certs_dir,
        redirect_http=ns.redirect_http,
    )


# ─── JSON file ───────────────────────────────────────────────────────────────
def load_config(path) -> Config:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigFileError(f"cannot read config file {path}: {e}") from e
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ConfigParseError(f"invalid JSON in {path}: {e}") from e
    cfg = Config.from_dict(data)
    logger.debug("loaded config from %s: %r", path, cfg)
    return cfg


def save_config(cfg: Config, path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(cfg.to_dict(), f, indent=4)

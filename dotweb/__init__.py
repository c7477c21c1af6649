"""HTTP(S) web server with automatic Let's Encrypt certificates."""

__version__ = "0.1.0"

from .config import Config, config_from_flags, default_config, load_config, save_config
from .errors import (
    ACMEError, BindError, CertsDirError, ConfigError, ConfigFileError,
    ConfigParseError, DotwebError, FlagError, HostNotAllowed, ListenerError,
)
from .messages import Request, Response, redirect
from .server import WebServer, start_web_server, start_web_server_from_config

__all__ = [
    "Config", "config_from_flags", "default_config", "load_config", "save_config",
    "Request", "Response", "redirect",
    "WebServer", "start_web_server", "start_web_server_from_config",
    "DotwebError", "ConfigError", "FlagError", "ConfigFileError", "ConfigParseError",
    "CertsDirError", "ListenerError", "BindError", "ACMEError", "HostNotAllowed",
]

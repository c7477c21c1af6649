"""Exceptions raised by dotweb."""


class DotwebError(Exception):
    pass


# ─── Configuration ───────────────────────────────────────────────────────────
class ConfigError(DotwebError):
    pass


class FlagError(ConfigError):
    """Unknown flag, stray argument or malformed flag value."""


class ConfigFileError(ConfigError):
    """The JSON config file could not be read."""


class ConfigParseError(ConfigError):
    """The JSON config file is not a valid config document."""


# ─── Bootstrap / listeners ───────────────────────────────────────────────────
class CertsDirError(DotwebError):
    pass


class ListenerError(DotwebError):
    pass


class BindError(ListenerError):
    pass


# ─── Certificates ────────────────────────────────────────────────────────────
class ACMEError(DotwebError):
    def __init__(self, message, *, type=None, status=None):
        super().__init__(message)
        self.type = type
        self.status = status


class HostNotAllowed(DotwebError):
    pass

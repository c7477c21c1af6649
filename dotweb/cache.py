# -*- coding: utf-8 -*-
"""Certificate cache used by the autocert Manager."""

import logging
import os
import tempfile

logger = logging.getLogger(__name__)


class CacheMiss(KeyError):
    pass


class Cache:
    """Key/value store for account keys and certificates. Values are bytes."""

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError


class DirCache(Cache):
    """Stores each entry as a file named after its key inside a directory."""

    def __init__(self, directory: str):
        self.directory = directory

    def _path(self, key: str) -> str:
        # keys are domain names or "acme_account+key"; never let one escape the dir
        name = os.path.basename(key.replace("\\", "/"))
        if not name or name in (".", ".."):
            raise ValueError(f"invalid cache key: {key!r}")
        return os.path.join(self.directory, name)

    def get(self, key):
        try:
            with open(self._path(key), "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise CacheMiss(key) from None

    def put(self, key, data):
        os.makedirs(self.directory, mode=0o700, exist_ok=True)
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=self.directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except BaseException:
            try: os.unlink(tmp)
            except OSError: pass
            raise
        logger.debug("cached %s", path)

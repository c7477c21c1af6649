# -*- coding: utf-8 -*-
"""
On-demand TLS certificates from an ACME CA.

The Manager hands out an SSLContext whose SNI callback looks up (or obtains)
a certificate for the requested server name, and an HTTP handler wrapper
that answers http-01 challenges on the plain HTTP listener.
"""

import logging
import os
import re
import ssl
import tempfile
import threading
from datetime import datetime, timedelta, timezone

from cryptography import x509

from .issuer import LETS_ENCRYPT_URL, Issuer, generate_key, key_from_pem, key_to_pem
from .cache import CacheMiss
from .errors import ACMEError, HostNotAllowed
from .messages import Response, split_host_port

logger = logging.getLogger(__name__)

ACCOUNT_KEY      = "acme_account+key"
CHALLENGE_PREFIX = "/.well-known/acme-challenge/"

_PEM_BLOCK = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----.+?-----END \1-----\r?\n?", re.S)


def accept_tos(tos_url):
    """Prompt that always agrees to the CA's terms of service."""
    return True


def _normalize(name: str) -> str:
    return (name or "").strip().rstrip(".").lower()


def host_whitelist(*hosts):
    allowed = {_normalize(h) for h in hosts}
    def policy(host):
        if _normalize(host) not in allowed:
            raise HostNotAllowed(f"acme/autocert: host {host!r} not configured in host_whitelist")
    return policy


def _split_pem(data: bytes):
    key_pem, certs_pem = b"", b""
    for m in _PEM_BLOCK.finditer(data):
        block = m.group(0)
        if not block.endswith(b"\n"):
            block += b"\n"
        if b"PRIVATE KEY" in m.group(1):
            key_pem += block
        elif m.group(1) == b"CERTIFICATE":
            certs_pem += block
    if not key_pem or not certs_pem:
        raise ValueError("cache entry needs a private key and a certificate")
    return key_pem, certs_pem


class _Entry:
    __slots__ = ("context", "not_after")

    def __init__(self, context, not_after):
        self.context = context
        self.not_after = not_after


class Manager:
    def __init__(self, cache, host_policy=None, prompt=None, *,
                 directory_url=LETS_ENCRYPT_URL, email="",
                 renew_before=timedelta(days=30), issuer=None):
        self.cache = cache
        self.host_policy = host_policy
        self.prompt = prompt
        self.directory_url = directory_url
        self.email = email
        self.renew_before = renew_before
        self.issuer = issuer

        self._entries = {}
        self._tokens = {}
        self._domain_locks = {}
        self._renewing = set()
        self._state = threading.Lock()
        self._issuer_lock = threading.Lock()

    # ─── TLS side ──────────────────────────────────────────────────────────
    def ssl_context(self) -> ssl.SSLContext:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        ctx.sni_callback = self._sni_callback
        return ctx

    def _sni_callback(self, sslsock, server_name, base_context):
        if not server_name:
            logger.warning("acme/autocert: missing server name")
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        try:
            sslsock.context = self.get_context(server_name)
        except HostNotAllowed as e:
            logger.warning("%s", e)
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        except Exception:
            # nothing can propagate out of an OpenSSL callback; fail the handshake
            logger.exception("acme/autocert: no certificate for %s", server_name)
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        return None

    def _check_host(self, name):
        if self.host_policy is not None:
            self.host_policy(name)

    def get_context(self, server_name) -> ssl.SSLContext:
        name = _normalize(server_name)
        self._check_host(name)

        entry = self._fresh_entry(name)
        if entry is not None:
            return entry.context

        with self._domain_lock(name):
            entry = self._fresh_entry(name)
            if entry is not None:
                return entry.context
            try:
                entry = self._load(name, self.cache.get(name))
            except CacheMiss:
                entry = None
            except (ValueError, ssl.SSLError) as e:
                logger.warning("acme/autocert: ignoring cached certificate for %s: %s", name, e)
                entry = None
            if entry is None or self._expired(entry):
                entry = self._issue(name)
            with self._state:
                self._entries[name] = entry
        self._maybe_renew(name, entry)
        return entry.context

    def _fresh_entry(self, name):
        with self._state:
            entry = self._entries.get(name)
        if entry is None or self._expired(entry):
            return None
        self._maybe_renew(name, entry)
        return entry

    def _domain_lock(self, name):
        with self._state:
            return self._domain_locks.setdefault(name, threading.Lock())

    @staticmethod
    def _expired(entry):
        return datetime.now(timezone.utc) >= entry.not_after

    def _load(self, name, pem: bytes) -> _Entry:
        key_pem, certs_pem = _split_pem(pem)
        certs = x509.load_pem_x509_certificates(certs_pem)
        leaf = certs[0]
        try:
            sans = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            names = {_normalize(n) for n in sans.value.get_values_for_type(x509.DNSName)}
        except x509.ExtensionNotFound:
            names = set()
        if name not in names:
            raise ValueError(f"certificate is not valid for {name}")

        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        with tempfile.TemporaryDirectory(prefix="dotweb-") as tmp:
            cert_file = os.path.join(tmp, "cert.pem")
            key_file  = os.path.join(tmp, "key.pem")
            with open(cert_file, "wb") as f:
                f.write(certs_pem)
            with open(key_file, "wb") as f:
                f.write(key_pem)
            ctx.load_cert_chain(certfile=cert_file, keyfile=key_file)
        return _Entry(ctx, leaf.not_valid_after_utc)

    # ─── Issuance ──────────────────────────────────────────────────────────
    def _registered_issuer(self) -> Issuer:
        with self._issuer_lock:
            issuer = self.issuer
            if issuer is not None and issuer.account_uri:
                return issuer
            if issuer is None:
                issuer = Issuer(self._account_key(), self.directory_url)
            tos = issuer.terms_of_service()
            if self.prompt is None or not self.prompt(tos):
                raise ACMEError(f"terms of service {tos or '(none)'} were not accepted")
            issuer.register(self.email)
            self.issuer = issuer
            return issuer

    def _account_key(self):
        try:
            return key_from_pem(self.cache.get(ACCOUNT_KEY))
        except CacheMiss:
            pass
        key = generate_key()
        self.cache.put(ACCOUNT_KEY, key_to_pem(key))
        logger.info("acme/autocert: created account key")
        return key

    def _issue(self, name) -> _Entry:
        issuer = self._registered_issuer()
        cert_key = generate_key()
        chain = issuer.obtain_certificate(name, cert_key, self._put_token, self._delete_token)
        pem = key_to_pem(cert_key) + chain
        entry = self._load(name, pem)
        self.cache.put(name, pem)
        return entry

    def _maybe_renew(self, name, entry):
        if datetime.now(timezone.utc) + self.renew_before < entry.not_after:
            return
        with self._state:
            if name in self._renewing:
                return
            self._renewing.add(name)
        threading.Thread(target=self._renew, args=(name,), name=f"renew-{name}", daemon=True).start()

    def _renew(self, name):
        try:
            with self._domain_lock(name):
                entry = self._issue(name)
                with self._state:
                    self._entries[name] = entry
            logger.info("acme/autocert: renewed certificate for %s", name)
        except Exception:
            logger.exception("acme/autocert: renewal for %s failed", name)
        finally:
            with self._state:
                self._renewing.discard(name)

    # ─── http-01 side ──────────────────────────────────────────────────────
    def _put_token(self, token, key_auth):
        with self._state:
            self._tokens[token] = key_auth

    def _delete_token(self, token):
        with self._state:
            self._tokens.pop(token, None)

    def http_handler(self, fallback):
        """Wrap fallback so that http-01 challenge requests are answered first."""
        def handler(request):
            if not request.path.startswith(CHALLENGE_PREFIX):
                return fallback(request)
            host, _ = split_host_port(request.host)
            try:
                self._check_host(host)
            except HostNotAllowed:
                return Response(status=403, body="forbidden\n")
            with self._state:
                key_auth = self._tokens.get(request.path[len(CHALLENGE_PREFIX):])
            if key_auth is None:
                return Response(status=404, body="not found\n")
            return Response(headers={"Content-Type": "text/plain"}, body=key_auth.encode("ascii"))
        return handler

# -*- coding: utf-8 -*-
"""
Certificate issuance through an ACME CA.

Wraps the `acme` client library: account registration, single-name orders
answered with http-01, finalization and the PEM chain download. Account and
certificate keys are ECDSA P-256; requests are signed with ES256.
"""

import logging
from datetime import datetime, timedelta

import josepy as jose
import requests
from acme import challenges, client, crypto_util, errors, messages
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from . import __version__
from .errors import ACMEError

logger = logging.getLogger(__name__)

LETS_ENCRYPT_URL = "https://acme-v02.api.letsencrypt.org/directory"
USER_AGENT       = f"dotweb/{__version__}"


# ─── Keys ────────────────────────────────────────────────────────────────────
def generate_key():
    return ec.generate_private_key(ec.SECP256R1())

def key_to_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption())

def key_from_pem(data: bytes):
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("ACME keys must be ECDSA keys")
    return key


# ─── Issuer ──────────────────────────────────────────────────────────────────
class Issuer:
    """
    One ACME account. The library client is created on first use so that
    constructing an Issuer never touches the network.
    """

    def __init__(self, key, directory_url=LETS_ENCRYPT_URL, *, acme_client=None,
                 timeout=45, issue_timeout=timedelta(seconds=90)):
        self.key = key
        self.jwk = jose.JWKEC(key=key)
        self.directory_url = directory_url
        self.timeout = timeout
        self.issue_timeout = issue_timeout
        self.account_uri = None
        self._client = acme_client

    def _acme(self) -> client.ClientV2:
        if self._client is None:
            net = client.ClientNetwork(self.jwk, alg=jose.ES256, user_agent=USER_AGENT, timeout=self.timeout)
            try:
                directory = messages.Directory.from_json(net.get(self.directory_url).json())
            except (errors.Error, requests.RequestException, ValueError) as e:
                raise ACMEError(f"fetching directory {self.directory_url}: {e}") from e
            self._client = client.ClientV2(directory, net=net)
        return self._client

    def terms_of_service(self) -> str:
        meta = getattr(self._acme().directory, "meta", None)
        return (meta.terms_of_service if meta is not None else None) or ""

    def register(self, email="") -> str:
        acme = self._acme()
        reg = messages.NewRegistration.from_data(email=email or None, terms_of_service_agreed=True)
        try:
            regr = acme.new_account(reg)
        except errors.ConflictError as e:
            # the key already owns an account
            regr = messages.RegistrationResource(uri=e.location, body=messages.Registration())
            acme.net.account = regr
        except (errors.Error, requests.RequestException) as e:
            raise _wrap("registering account", e) from e
        self.account_uri = regr.uri
        logger.info("acme: using account %s", regr.uri)
        return regr.uri

    def obtain_certificate(self, domain, cert_key, respond, cleanup=None) -> bytes:
        """
        Run a full order for domain and return the PEM chain.

        respond(token, key_authorization) must publish the http-01 answer
        before the CA is told to validate it; cleanup(token) is called for
        every published token once the order is done, successful or not.
        """
        acme = self._acme()
        csr_pem = crypto_util.make_csr(key_to_pem(cert_key), [domain])
        published = []
        logger.info("acme: ordering certificate for %s", domain)
        try:
            orderr = acme.new_order(csr_pem)
            for authzr in orderr.authorizations:
                if authzr.body.status == messages.STATUS_VALID:
                    continue
                challb = _http01(authzr)
                response, validation = challb.response_and_validation(self.jwk)
                token = challb.chall.encode("token")
                respond(token, validation)
                published.append(token)
                acme.answer_challenge(challb, response)
            orderr = acme.poll_and_finalize(orderr, datetime.now() + self.issue_timeout)
        except errors.ValidationError as e:
            raise ACMEError(f"authorization for {domain} is invalid: {_describe_failure(e)}") from e
        except (errors.Error, requests.RequestException) as e:
            raise _wrap(f"ordering certificate for {domain}", e) from e
        finally:
            if cleanup is not None:
                for token in published:
                    cleanup(token)

        if not orderr.fullchain_pem:
            raise ACMEError(f"order for {domain} carries no certificate")
        logger.info("acme: certificate issued for %s", domain)
        return orderr.fullchain_pem.encode("ascii")


def _http01(authzr):
    for challb in authzr.body.challenges:
        if isinstance(challb.chall, challenges.HTTP01):
            return challb
    raise ACMEError(f"no http-01 challenge offered for {authzr.body.identifier.value}")

def _wrap(what, e) -> ACMEError:
    if isinstance(e, messages.Error):
        return ACMEError(f"{what}: {e}", type=e.typ)
    return ACMEError(f"{what}: {e}")

def _describe_failure(e):
    details = [str(challb.error)
               for authzr in e.failed_authzrs
               for challb in authzr.body.challenges
               if challb.error is not None]
    return "; ".join(details) or "no detail"

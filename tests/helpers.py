import socket
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import josepy as jose
from acme import messages
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509 import NameOID

from dotweb.cache import Cache, CacheMiss


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def make_ca():
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "dotweb test CA")])
    not_before = datetime.now(timezone.utc) - timedelta(minutes=5)
    cert = (x509.CertificateBuilder()
            .subject_name(name).issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before).not_valid_after(not_before + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(key, hashes.SHA256()))
    return key, cert


def issue_cert(public_key, domain, ca_key, ca_cert, days=365, age=timedelta(minutes=5)):
    not_before = datetime.now(timezone.utc) - age
    return (x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
            .issuer_name(ca_cert.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before).not_valid_after(not_before + timedelta(days=days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(ca_key, hashes.SHA256()))


def pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def cache_entry(domain, days=365, age=timedelta(minutes=5)):
    """Key + chain in the layout the autocert Manager stores."""
    ca_key, ca_cert = make_ca()
    key = ec.generate_private_key(ec.SECP256R1())
    leaf = issue_cert(key.public_key(), domain, ca_key, ca_cert, days=days, age=age)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption())
    return key_pem + pem(leaf) + pem(ca_cert)




class MemoryCache(Cache):
    def __init__(self):
        self._data = {}

    def get(self, key):
        try:
            return self._data[key]
        except KeyError:
            raise CacheMiss(key) from None

    def put(self, key, data):
        self._data[key] = bytes(data)


# ─── ACME ────────────────────────────────────────────────────────────────────
ACCOUNT_URI = "https://acme.test/acct/1"
TOS = "https://acme.test/terms"
TOKEN = jose.b64encode(b"t" * 32).decode()


def authorization(domain, status="pending", error=None, types=("dns-01", "http-01")):
    challenges = []
    for i, typ in enumerate(types):
        chall = {"type": typ, "url": f"https://acme.test/chal/{i}", "status": status,
                 "token": TOKEN if typ == "http-01" else jose.b64encode(b"d" * 32).decode()}
        if error is not None:
            chall["error"] = error
        challenges.append(chall)
    return messages.AuthorizationResource(
        uri="https://acme.test/authz/1",
        body=messages.Authorization.from_json({
            "identifier": {"type": "dns", "value": domain},
            "status": status,
            "challenges": challenges,
        }))


def csr_names(csr_pem):
    csr = x509.load_pem_x509_csr(csr_pem)
    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    return san.value.get_values_for_type(x509.DNSName)


def acme_client_mock(status="pending"):
    """ClientV2 stand-in whose orders are signed by a local test CA."""
    ca_key, ca_cert = make_ca()
    acme_client = Mock()
    acme_client.directory = messages.Directory.from_json({
        "newAccount": "https://acme.test/new-account",
        "newOrder": "https://acme.test/new-order",
        "meta": {"termsOfService": TOS},
    })
    acme_client.new_account.return_value = messages.RegistrationResource(
        uri=ACCOUNT_URI, body=messages.Registration())

    def new_order(csr_pem):
        return messages.OrderResource(
            uri="https://acme.test/order/1", body=messages.Order(), csr_pem=csr_pem,
            authorizations=[authorization(csr_names(csr_pem)[0], status)])

    def poll_and_finalize(orderr, deadline=None):
        csr = x509.load_pem_x509_csr(orderr.csr_pem)
        leaf = issue_cert(csr.public_key(), csr_names(orderr.csr_pem)[0], ca_key, ca_cert)
        return orderr.update(fullchain_pem=(pem(leaf) + pem(ca_cert)).decode("ascii"))

    acme_client.new_order.side_effect = new_order
    acme_client.poll_and_finalize.side_effect = poll_and_finalize
    return acme_client

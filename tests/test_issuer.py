from unittest.mock import patch

import josepy as jose
import pytest
from acme import errors, messages
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from dotweb.errors import ACMEError
from dotweb.issuer import Issuer, generate_key, key_from_pem, key_to_pem

from helpers import ACCOUNT_URI, TOKEN, TOS, acme_client_mock, authorization, csr_names


def test_key_pem_round_trip():
    key = generate_key()
    again = key_from_pem(key_to_pem(key))
    assert again.private_numbers() == key.private_numbers()


def test_key_from_pem_rejects_non_ec_keys():
    rsa_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    data = rsa_key.private_bytes(serialization.Encoding.PEM,
                                 serialization.PrivateFormat.TraditionalOpenSSL,
                                 serialization.NoEncryption())
    with pytest.raises(ValueError):
        key_from_pem(data)


def test_client_is_built_on_first_use():
    with patch("acme.client.ClientNetwork") as net_cls, patch("acme.client.ClientV2") as client_cls:
        net_cls.return_value.get.return_value.json.return_value = {"meta": {"termsOfService": TOS}}
        issuer = Issuer(generate_key(), "https://acme.test/directory")
        net_cls.assert_not_called()

        issuer._acme()
        issuer._acme()

    net_cls.assert_called_once()
    assert net_cls.call_args.kwargs["alg"] == jose.ES256
    net_cls.return_value.get.assert_called_once_with("https://acme.test/directory")
    directory = client_cls.call_args.args[0]
    assert directory.meta.terms_of_service == TOS


def test_terms_of_service():
    issuer = Issuer(generate_key(), acme_client=acme_client_mock())
    assert issuer.terms_of_service() == TOS


def test_register_agrees_and_sends_contact():
    acme_client = acme_client_mock()
    issuer = Issuer(generate_key(), acme_client=acme_client)
    assert issuer.register("ops@example.test") == ACCOUNT_URI
    assert issuer.account_uri == ACCOUNT_URI
    reg = acme_client.new_account.call_args.args[0]
    assert reg.terms_of_service_agreed is True
    assert reg.contact == ("mailto:ops@example.test",)


def test_register_without_email():
    acme_client = acme_client_mock()
    Issuer(generate_key(), acme_client=acme_client).register()
    assert acme_client.new_account.call_args.args[0].contact == ()


def test_register_with_existing_account():
    acme_client = acme_client_mock()
    acme_client.new_account.side_effect = errors.ConflictError("https://acme.test/acct/7")
    issuer = Issuer(generate_key(), acme_client=acme_client)
    assert issuer.register() == "https://acme.test/acct/7"
    assert acme_client.net.account.uri == "https://acme.test/acct/7"


def test_register_problem_becomes_acme_error():
    acme_client = acme_client_mock()
    acme_client.new_account.side_effect = messages.Error(
        typ="urn:ietf:params:acme:error:malformed", detail="bad contact")
    with pytest.raises(ACMEError, match="bad contact") as exc:
        Issuer(generate_key(), acme_client=acme_client).register("nope")
    assert exc.value.type == "urn:ietf:params:acme:error:malformed"


def test_obtain_certificate_answers_http01():
    key = generate_key()
    acme_client = acme_client_mock()
    issuer = Issuer(key, acme_client=acme_client)
    published, removed = {}, []

    chain = issuer.obtain_certificate("example.test", generate_key(), published.__setitem__, removed.append)

    assert len(x509.load_pem_x509_certificates(chain)) == 2
    assert csr_names(acme_client.new_order.call_args.args[0]) == ["example.test"]
    thumbprint = jose.b64encode(jose.JWKEC(key=key).thumbprint()).decode()
    assert published == {TOKEN: f"{TOKEN}.{thumbprint}"}
    assert removed == [TOKEN]

    challb, response = acme_client.answer_challenge.call_args.args
    assert challb.chall.typ == "http-01"
    assert response.key_authorization == published[TOKEN]


def test_valid_authorization_is_not_answered():
    acme_client = acme_client_mock(status="valid")
    respond = []
    Issuer(generate_key(), acme_client=acme_client).obtain_certificate(
        "example.test", generate_key(), lambda token, key_auth: respond.append(token))
    assert respond == []
    acme_client.answer_challenge.assert_not_called()


def test_failed_validation_cleans_up_tokens():
    acme_client = acme_client_mock()
    failed = authorization("example.test", status="invalid", error={
        "type": "urn:ietf:params:acme:error:unauthorized", "detail": "wrong key authorization"})
    acme_client.poll_and_finalize.side_effect = errors.ValidationError([failed])
    removed = []

    with pytest.raises(ACMEError, match="example.test is invalid.*wrong key authorization"):
        Issuer(generate_key(), acme_client=acme_client).obtain_certificate(
            "example.test", generate_key(), lambda token, key_auth: None, removed.append)
    assert removed == [TOKEN]


def test_no_http01_challenge_offered():
    acme_client = acme_client_mock()
    acme_client.new_order.side_effect = lambda csr_pem: messages.OrderResource(
        uri="https://acme.test/order/1", body=messages.Order(), csr_pem=csr_pem,
        authorizations=[authorization("example.test", types=("dns-01",))])
    with pytest.raises(ACMEError, match="no http-01 challenge"):
        Issuer(generate_key(), acme_client=acme_client).obtain_certificate(
            "example.test", generate_key(), lambda token, key_auth: None)
    acme_client.poll_and_finalize.assert_not_called()

"""Tests for certificate issuance and verification."""

import ipaddress

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from botcloud.certificates import (
    der_to_pem,
    extract_bot_id_from_cert,
    generate_bot_certificate,
    generate_ca_certificate,
    generate_server_certificate,
    verify_certificate,
)


@pytest.fixture(scope="module")
def other_ca():
    return generate_ca_certificate()


def _load(pem: str) -> x509.Certificate:
    return x509.load_pem_x509_certificate(pem.encode())


def test_ca_is_self_signed_root(ca_pair):
    cert = _load(ca_pair.certificate)
    assert cert.subject == cert.issuer
    assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "Botcloud Internal CA"
    constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    assert constraints.critical and constraints.value.ca
    usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    assert usage.key_cert_sign and usage.crl_sign
    assert cert.public_key().key_size == 4096
    assert "PRIVATE KEY" in ca_pair.private_key


def test_bot_id_round_trip(ca_pair):
    bot = generate_bot_certificate("3f2a-bot", ca_pair.certificate, ca_pair.private_key)
    assert extract_bot_id_from_cert(bot.certificate) == "3f2a-bot"


def test_bot_certificate_is_client_leaf(ca_pair):
    bot = generate_bot_certificate("abc", ca_pair.certificate, ca_pair.private_key)
    cert = _load(bot.certificate)
    assert not cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert ExtendedKeyUsageOID.CLIENT_AUTH in eku
    assert cert.issuer == _load(ca_pair.certificate).subject


def test_serials_are_unique(ca_pair):
    first = _load(generate_bot_certificate("a", ca_pair.certificate, ca_pair.private_key).certificate)
    second = _load(generate_bot_certificate("a", ca_pair.certificate, ca_pair.private_key).certificate)
    assert first.serial_number != second.serial_number


def test_server_certificate_sans(ca_pair):
    server = generate_server_certificate(
        "backend.internal", "10.0.0.2", ca_pair.certificate, ca_pair.private_key
    )
    cert = _load(server.certificate)
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["backend.internal"]
    assert san.get_values_for_type(x509.IPAddress) == [ipaddress.ip_address("10.0.0.2")]
    eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert ExtendedKeyUsageOID.SERVER_AUTH in eku
    assert verify_certificate(server.certificate, ca_pair.certificate)


def test_verify_against_own_and_unrelated_ca(ca_pair, other_ca):
    bot = generate_bot_certificate("x", ca_pair.certificate, ca_pair.private_key)
    assert verify_certificate(bot.certificate, ca_pair.certificate)
    assert not verify_certificate(bot.certificate, other_ca.certificate)


def test_verify_never_raises_on_garbage(ca_pair):
    assert not verify_certificate("not a cert", ca_pair.certificate)
    assert not verify_certificate(None, ca_pair.certificate)
    assert not verify_certificate(ca_pair.certificate, "")


def test_extract_rejects_non_bot_subjects(ca_pair):
    server = generate_server_certificate("host", "10.0.0.2", ca_pair.certificate, ca_pair.private_key)
    assert extract_bot_id_from_cert(server.certificate) is None
    assert extract_bot_id_from_cert(ca_pair.certificate) is None
    assert extract_bot_id_from_cert("garbage") is None
    assert extract_bot_id_from_cert(None) is None


def test_extract_rejects_empty_id(ca_pair):
    bot = generate_bot_certificate("", ca_pair.certificate, ca_pair.private_key)
    assert extract_bot_id_from_cert(bot.certificate) is None


def test_der_to_pem(ca_pair):
    from cryptography.hazmat.primitives.serialization import Encoding

    bot = generate_bot_certificate("der-bot", ca_pair.certificate, ca_pair.private_key)
    der = _load(bot.certificate).public_bytes(Encoding.DER)
    assert extract_bot_id_from_cert(der_to_pem(der)) == "der-bot"

import hashlib
import ipaddress
import json
import threading
from pathlib import Path
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from app.ilves.certificates import (
    CertificateError,
    _add_years,
    build_certificate,
    certificate_fingerprint,
    ensure_server_certificate_exists,
    export_pkcs12,
    generate_self_signed_certificate,
    get_certificate,
    get_private_key,
    has_certificate,
    load_key_store,
    remove_certificate,
    save_certificate,
)

STORE_PASSWORD = "store-secret"
ENTRY_PASSWORD = "entry-secret"


@pytest.fixture()
def key_store_path(tmp_path, monkeypatch):
    monkeypatch.setenv("SERVER_CERTIFICATE_SELF_SIGNED_KEY_SIZE", "1024")
    return str(tmp_path / "keystore.json")


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=1024)


def test_certificate_validity_window(private_key):
    before = datetime.now(timezone.utc)
    cert = build_certificate("client.example.com", None, private_key)

    assert before - timedelta(days=1, seconds=5) <= cert.not_valid_before_utc <= before - timedelta(days=1) + timedelta(seconds=5)
    assert cert.not_valid_after_utc.year == cert.not_valid_before_utc.year + 100
    assert cert.not_valid_after_utc.month == cert.not_valid_before_utc.month


def test_certificate_subject_is_issuer(private_key):
    cert = build_certificate("client.example.com", None, private_key)
    assert cert.subject == cert.issuer
    assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "client.example.com"
    with pytest.raises(x509.ExtensionNotFound):
        cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)


def test_certificate_ip_address_alternative_name(private_key):
    cert = build_certificate("localhost", "127.0.0.1", private_key)
    ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert ext.critical is False
    assert ext.value.get_values_for_type(x509.IPAddress) == [ipaddress.ip_address("127.0.0.1")]


def test_certificate_serial_is_epoch_millis(private_key):
    now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
    cert = build_certificate("localhost", None, private_key)
    assert abs(cert.serial_number - now_ms) < 60_000


def test_add_years_leap_day():
    assert _add_years(datetime(2024, 2, 29), 100) == datetime(2124, 2, 29)
    assert _add_years(datetime(2024, 2, 29), 1) == datetime(2025, 2, 28)


def test_generated_alias_is_sha256_of_der(key_store_path):
    alias = generate_self_signed_certificate("user@example.com", None, key_store_path, STORE_PASSWORD, ENTRY_PASSWORD)

    cert = get_certificate(alias, key_store_path, STORE_PASSWORD)
    assert cert is not None
    assert alias == hashlib.sha256(cert.public_bytes(serialization.Encoding.DER)).hexdigest()
    assert alias == certificate_fingerprint(cert)

    key = get_private_key(alias, key_store_path, STORE_PASSWORD, ENTRY_PASSWORD)
    assert key.public_key().public_numbers() == cert.public_key().public_numbers()


def test_concurrent_generation_keeps_every_entry(key_store_path):
    aliases: list[str] = []
    errors: list[Exception] = []

    def issue(i):
        try:
            aliases.append(
                generate_self_signed_certificate(f"u{i}@example.com", None, key_store_path, STORE_PASSWORD, ENTRY_PASSWORD)
            )
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=issue, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(load_key_store(key_store_path, STORE_PASSWORD).aliases()) == sorted(aliases)
    assert len(set(aliases)) == 6
    assert [p.name for p in Path(key_store_path).parent.iterdir()] == ["keystore.json"]


def test_missing_key_store_is_empty(key_store_path):
    assert load_key_store(key_store_path, STORE_PASSWORD).aliases() == []
    assert has_certificate("nope", key_store_path, STORE_PASSWORD) is False
    assert get_certificate("nope", key_store_path, STORE_PASSWORD) is None


def test_wrong_key_store_password(key_store_path):
    alias = generate_self_signed_certificate("user@example.com", None, key_store_path, STORE_PASSWORD, ENTRY_PASSWORD)
    with pytest.raises(CertificateError):
        get_certificate(alias, key_store_path, "wrong")


def test_tampered_key_store_is_rejected(key_store_path):
    alias = generate_self_signed_certificate("user@example.com", None, key_store_path, STORE_PASSWORD, ENTRY_PASSWORD)
    with open(key_store_path, encoding="utf-8") as f:
        doc = json.load(f)
    doc["entries"][alias]["private_key"] = None
    with open(key_store_path, "w", encoding="utf-8") as f:
        json.dump(doc, f)
    with pytest.raises(CertificateError):
        load_key_store(key_store_path, STORE_PASSWORD)


def test_wrong_entry_password(key_store_path):
    alias = generate_self_signed_certificate("user@example.com", None, key_store_path, STORE_PASSWORD, ENTRY_PASSWORD)
    with pytest.raises(CertificateError):
        get_private_key(alias, key_store_path, STORE_PASSWORD, "wrong")


def test_ensure_server_certificate_exists_is_idempotent(key_store_path):
    ensure_server_certificate_exists("localhost", "127.0.0.1", "ilves-server", "server-secret", key_store_path, STORE_PASSWORD)
    first = get_certificate("ilves-server", key_store_path, STORE_PASSWORD)
    ensure_server_certificate_exists("localhost", "127.0.0.1", "ilves-server", "server-secret", key_store_path, STORE_PASSWORD)
    second = get_certificate("ilves-server", key_store_path, STORE_PASSWORD)

    assert first is not None
    assert certificate_fingerprint(first) == certificate_fingerprint(second)
    assert get_private_key("ilves-server", key_store_path, STORE_PASSWORD, "server-secret") is not None


def test_save_and_remove_certificate(key_store_path, private_key):
    cert = build_certificate("trusted.example.com", None, private_key)
    save_certificate("trusted", key_store_path, STORE_PASSWORD, cert)
    assert has_certificate("trusted", key_store_path, STORE_PASSWORD)
    # Certificate-only entries have no key
    assert get_private_key("trusted", key_store_path, STORE_PASSWORD, ENTRY_PASSWORD) is None

    remove_certificate("trusted", key_store_path, STORE_PASSWORD)
    assert not has_certificate("trusted", key_store_path, STORE_PASSWORD)


def test_export_pkcs12(key_store_path):
    alias = generate_self_signed_certificate("user@example.com", None, key_store_path, STORE_PASSWORD, ENTRY_PASSWORD)
    data = export_pkcs12(alias, key_store_path, STORE_PASSWORD, ENTRY_PASSWORD, "export-secret")

    key, cert, extra = pkcs12.load_key_and_certificates(data, b"export-secret")
    assert certificate_fingerprint(cert) == alias
    assert key is not None
    assert not extra


def test_export_pkcs12_unknown_alias(key_store_path):
    with pytest.raises(CertificateError):
        export_pkcs12("nope", key_store_path, STORE_PASSWORD, ENTRY_PASSWORD, "export-secret")

"""
Self-signed X.509 certificates and the file based key store.

Key store format (JSON, UTF-8):

    {
      "version": 1,
      "salt": "<base64>",
      "entries": {
        "<alias>": {"certificate": "<PEM>", "private_key": "<encrypted PKCS#8 PEM>" | null}
      },
      "mac": "<hex HMAC-SHA256 of the canonical entries JSON>"
    }

The MAC key is derived from the key store password with PBKDF2, so a wrong
password and a tampered file are both rejected on load. Private keys are
additionally encrypted with their own entry password.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import ipaddress
import json
import logging
import os
import secrets
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from app.ilves.config import DEFAULT_CATEGORY, get_int_property

logger = logging.getLogger(__name__)

KEY_STORE_VERSION = 1
KEY_STORE_KDF_ITERATIONS = 100_000
CERTIFICATE_PUBLIC_EXPONENT = 65537
CERTIFICATE_VALIDITY_YEARS = 100

# Held across load, modify and save so concurrent writers do not drop entries.
_key_store_lock = threading.RLock()


class CertificateError(RuntimeError):
    pass


@dataclass
class KeyStoreEntry:
    certificate: x509.Certificate
    private_key_pem: bytes | None = None

    @property
    def is_key_entry(self) -> bool:
        return self.private_key_pem is not None


@dataclass
class KeyStore:
    entries: dict[str, KeyStoreEntry] = field(default_factory=dict)

    def aliases(self) -> list[str]:
        return sorted(self.entries)

    def contains_alias(self, alias: str) -> bool:
        return alias in self.entries

    def get_certificate(self, alias: str) -> x509.Certificate | None:
        entry = self.entries.get(alias)
        return entry.certificate if entry else None

    def get_key(self, alias: str, key_password: str) -> rsa.RSAPrivateKey | None:
        entry = self.entries.get(alias)
        if entry is None or entry.private_key_pem is None:
            return None
        return serialization.load_pem_private_key(entry.private_key_pem, password=_password_bytes(key_password))

    def set_key_entry(self, alias: str, private_key, key_password: str, certificate: x509.Certificate) -> None:
        self.entries[alias] = KeyStoreEntry(
            certificate=certificate,
            private_key_pem=private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=_key_encryption(key_password),
            ),
        )

    def set_certificate_entry(self, alias: str, certificate: x509.Certificate) -> None:
        self.entries[alias] = KeyStoreEntry(certificate=certificate)

    def delete_entry(self, alias: str) -> None:
        self.entries.pop(alias, None)


def _password_bytes(password: str | None) -> bytes | None:
    return password.encode("utf-8") if password else None


def _key_encryption(password: str | None):
    if password:
        return serialization.BestAvailableEncryption(password.encode("utf-8"))
    return serialization.NoEncryption()


def _mac_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=KEY_STORE_KDF_ITERATIONS)
    return kdf.derive(password.encode("utf-8"))


def _canonical(entries: dict) -> bytes:
    return json.dumps(entries, sort_keys=True, separators=(",", ":")).encode("utf-8")


def certificate_fingerprint(certificate: x509.Certificate) -> str:
    """SHA-256 hex digest of the DER encoding."""
    return hashlib.sha256(certificate.public_bytes(serialization.Encoding.DER)).hexdigest()


def certificate_to_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


def load_key_store(key_store_path: str, key_store_password: str) -> KeyStore:
    """Load the key store, or return an empty one if the file does not exist."""
    try:
        path = Path(key_store_path)
        if not path.exists():
            return KeyStore()
        doc = json.loads(path.read_text(encoding="utf-8"))
        if doc.get("version") != KEY_STORE_VERSION:
            raise ValueError(f"Unsupported key store version: {doc.get('version')}")
        salt = base64.b64decode(doc["salt"])
        raw_entries = doc.get("entries") or {}
        expected = hmac.new(_mac_key(key_store_password, salt), _canonical(raw_entries), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, str(doc.get("mac") or "")):
            raise ValueError("Key store password incorrect or key store tampered.")
        ks = KeyStore()
        for alias, raw in raw_entries.items():
            key_pem = raw.get("private_key")
            ks.entries[alias] = KeyStoreEntry(
                certificate=x509.load_pem_x509_certificate(raw["certificate"].encode("ascii")),
                private_key_pem=key_pem.encode("ascii") if key_pem else None,
            )
        return ks
    except Exception as e:
        raise CertificateError(f"Unable to load key store: {key_store_path}") from e


def save_key_store(key_store: KeyStore, key_store_path: str, key_store_password: str) -> None:
    try:
        raw_entries = {
            alias: {
                "certificate": certificate_to_pem(entry.certificate),
                "private_key": entry.private_key_pem.decode("ascii") if entry.private_key_pem else None,
            }
            for alias, entry in key_store.entries.items()
        }
        salt = secrets.token_bytes(16)
        doc = {
            "version": KEY_STORE_VERSION,
            "salt": base64.b64encode(salt).decode("ascii"),
            "entries": raw_entries,
            "mac": hmac.new(_mac_key(key_store_password, salt), _canonical(raw_entries), hashlib.sha256).hexdigest(),
        }
        path = Path(key_store_path)
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=path.name + ".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(doc, indent=2, sort_keys=True))
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except Exception as e:
        raise CertificateError(f"Unable to save key store: {key_store_path}") from e


def ensure_server_certificate_exists(
    certificate_common_name: str,
    ip_address: str | None,
    certificate_alias: str,
    certificate_private_key_password: str,
    key_store_path: str,
    key_store_password: str,
) -> None:
    """Generate and store a self-signed server certificate unless the alias already exists."""
    with _key_store_lock:
        if not has_certificate(certificate_alias, key_store_path, key_store_password):
            _generate_self_signed_certificate_entry(
                certificate_alias,
                certificate_common_name,
                ip_address,
                key_store_path,
                key_store_password,
                certificate_private_key_password,
            )


def has_certificate(certificate_alias: str, key_store_path: str, key_store_password: str) -> bool:
    try:
        return load_key_store(key_store_path, key_store_password).contains_alias(certificate_alias)
    except Exception as e:
        raise CertificateError(
            f"Error checking if certificate exists '{certificate_alias}' in key store: {key_store_path}"
        ) from e


def get_certificate(certificate_alias: str, key_store_path: str, key_store_password: str) -> x509.Certificate | None:
    try:
        return load_key_store(key_store_path, key_store_password).get_certificate(certificate_alias)
    except Exception as e:
        raise CertificateError(
            f"Error loading certificate '{certificate_alias}' from key store: {key_store_path}"
        ) from e


def save_certificate(
    certificate_alias: str, key_store_path: str, key_store_password: str, certificate: x509.Certificate
) -> None:
    try:
        with _key_store_lock:
            ks = load_key_store(key_store_path, key_store_password)
            ks.set_certificate_entry(certificate_alias, certificate)
            save_key_store(ks, key_store_path, key_store_password)
    except Exception as e:
        raise CertificateError(
            f"Error saving certificate '{certificate_alias}' to key store: {key_store_path}"
        ) from e


def get_private_key(
    certificate_alias: str, key_store_path: str, key_store_password: str, key_entry_password: str
):
    try:
        return load_key_store(key_store_path, key_store_password).get_key(certificate_alias, key_entry_password)
    except Exception as e:
        raise CertificateError(
            f"Error loading private key '{certificate_alias}' from key store: {key_store_path}"
        ) from e


def remove_certificate(certificate_alias: str, key_store_path: str, key_store_password: str) -> None:
    try:
        with _key_store_lock:
            ks = load_key_store(key_store_path, key_store_password)
            ks.delete_entry(certificate_alias)
            save_key_store(ks, key_store_path, key_store_password)
    except Exception as e:
        raise CertificateError(
            f"Error removing certificate '{certificate_alias}' from key store: {key_store_path}"
        ) from e


def _new_key_pair() -> rsa.RSAPrivateKey:
    key_size = get_int_property(DEFAULT_CATEGORY, "server-certificate-self-signed-key-size")
    return rsa.generate_private_key(public_exponent=CERTIFICATE_PUBLIC_EXPONENT, key_size=key_size)


def _generate_self_signed_certificate_entry(
    alias: str,
    common_name: str,
    ip_address: str | None,
    key_store_path: str,
    key_store_password: str,
    key_entry_password: str,
) -> None:
    try:
        private_key = _new_key_pair()
        certificate = build_certificate(common_name, ip_address, private_key)
        logger.info(
            "Generated self signed certificate: alias=%s subject=%s fingerprint=%s",
            alias,
            certificate.subject.rfc4514_string(),
            certificate_fingerprint(certificate),
        )
        with _key_store_lock:
            ks = load_key_store(key_store_path, key_store_password)
            ks.set_key_entry(alias, private_key, key_entry_password, certificate)
            save_key_store(ks, key_store_path, key_store_password)
    except Exception as e:
        raise CertificateError("Unable to generate self signed certificate.") from e


def generate_self_signed_certificate(
    common_name: str,
    ip_address: str | None,
    key_store_path: str,
    key_store_password: str,
    key_entry_password: str,
) -> str:
    """
    Generate a self-signed certificate and store it under its fingerprint.
    Returns the alias (SHA-256 hex of the DER encoding).
    """
    try:
        private_key = _new_key_pair()
        certificate = build_certificate(common_name, ip_address, private_key)
        alias = certificate_fingerprint(certificate)
        logger.info(
            "Generated self signed certificate: alias=%s subject=%s",
            alias,
            certificate.subject.rfc4514_string(),
        )
        with _key_store_lock:
            ks = load_key_store(key_store_path, key_store_password)
            ks.set_key_entry(alias, private_key, key_entry_password, certificate)
            save_key_store(ks, key_store_path, key_store_password)
        return alias
    except Exception as e:
        raise CertificateError("Unable to generate self signed certificate.") from e


def _add_years(d: datetime, years: int) -> datetime:
    try:
        return d.replace(year=d.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return d.replace(year=d.year + years, day=28)


def build_certificate(common_name: str, ip_address: str | None, private_key) -> x509.Certificate:
    """
    Self-signed certificate for the key pair: valid from one day ago for
    100 years, serial from the current epoch milliseconds.
    """
    not_before = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(days=1)
    not_after = _add_years(not_before, CERTIFICATE_VALIDITY_YEARS)
    serial = int(time.time() * 1000)

    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(serial)
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if ip_address:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.IPAddress(ipaddress.ip_address(ip_address))]),
            critical=False,
        )
    return builder.sign(private_key, hashes.SHA256())


def export_pkcs12(
    certificate_alias: str,
    key_store_path: str,
    key_store_password: str,
    key_entry_password: str,
    export_password: str,
) -> bytes:
    """Bundle a key entry as PKCS#12 so a user can import it into a browser."""
    try:
        ks = load_key_store(key_store_path, key_store_password)
        certificate = ks.get_certificate(certificate_alias)
        private_key = ks.get_key(certificate_alias, key_entry_password)
        if certificate is None or private_key is None:
            raise KeyError(certificate_alias)
        return pkcs12.serialize_key_and_certificates(
            name=certificate_alias.encode("ascii"),
            key=private_key,
            cert=certificate,
            cas=None,
            encryption_algorithm=_key_encryption(export_password),
        )
    except Exception as e:
        raise CertificateError(
            f"Error exporting certificate '{certificate_alias}' from key store: {key_store_path}"
        ) from e

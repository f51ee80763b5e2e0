import urllib.parse
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from app.ilves.certificates import build_certificate, certificate_fingerprint, certificate_to_pem
from app.ilves.client_certificates import (
    ClientCertificateCache,
    ClientCertificateError,
    certificate_from_request,
    is_within_validity,
)
from app.ilves.db import session_scope
from app.ilves.models import User


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=1024)


@pytest.fixture()
def certificate(private_key):
    return build_certificate("admin@example.com", None, private_key)


def _expired_certificate(private_key):
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "old")])
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(1)
        .not_valid_before(now - timedelta(days=10))
        .not_valid_after(now - timedelta(days=1))
        .sign(private_key, hashes.SHA256())
    )


def _register(app, certificate):
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "admin@example.com").one()
        u.certificate_alias = certificate_fingerprint(certificate)
        u.certificate_pem = certificate_to_pem(certificate)
        return u.id


def test_user_by_certificate(app, certificate):
    user_id = _register(app, certificate)
    cache = ClientCertificateCache(app.extensions["sqlalchemy_sessionmaker"])

    user = cache.get_user_by_certificate(certificate)
    assert user is not None
    assert user.id == user_id


def test_unknown_certificate_is_cached(app, certificate):
    clock = FakeClock()
    cache = ClientCertificateCache(app.extensions["sqlalchemy_sessionmaker"], max_age=60, clock=clock)

    assert cache.get_user_by_certificate(certificate) is None
    _register(app, certificate)
    # Miss is still cached
    assert cache.get_user_by_certificate(certificate) is None

    clock.now += 61
    assert cache.get_user_by_certificate(certificate) is not None


def test_invalidate(app, certificate):
    cache = ClientCertificateCache(app.extensions["sqlalchemy_sessionmaker"], clock=FakeClock())
    assert cache.get_user_id_by_fingerprint(certificate_fingerprint(certificate)) is None
    _register(app, certificate)
    cache.invalidate(certificate_fingerprint(certificate))
    assert cache.get_user_id_by_fingerprint(certificate_fingerprint(certificate)) is not None


def test_lookup_racing_invalidate_is_not_cached(app, certificate):
    _register(app, certificate)
    fingerprint = certificate_fingerprint(certificate)
    cache = ClientCertificateCache(app.extensions["sqlalchemy_sessionmaker"], clock=FakeClock())
    load = cache._load_user_id

    def load_then_revoke(fp):
        user_id = load(fp)
        # Certificate revoked while the lookup was in flight
        with session_scope(app) as s:
            u = s.query(User).filter(User.email == "admin@example.com").one()
            u.certificate_alias = None
            u.certificate_pem = None
        cache.invalidate(fp)
        return user_id

    cache._load_user_id = load_then_revoke
    assert cache.get_user_id_by_fingerprint(fingerprint) is not None

    cache._load_user_id = load
    assert cache.get_user_id_by_fingerprint(fingerprint) is None


def test_inactive_user_is_not_trusted(app, certificate):
    _register(app, certificate)
    with session_scope(app) as s:
        s.query(User).filter(User.email == "admin@example.com").one().is_active = False
    cache = ClientCertificateCache(app.extensions["sqlalchemy_sessionmaker"])
    assert cache.get_user_by_certificate(certificate) is None


def test_check_client_trusted(app, certificate, private_key):
    cache = ClientCertificateCache(app.extensions["sqlalchemy_sessionmaker"])

    with pytest.raises(ClientCertificateError, match="Certificate paths not supported."):
        cache.check_client_trusted([certificate, certificate])
    with pytest.raises(ClientCertificateError, match="Unknown certificate."):
        cache.check_client_trusted([certificate])

    _register(app, certificate)
    cache.invalidate()
    cache.check_client_trusted([certificate])


def test_expired_certificate(app, private_key):
    expired = _expired_certificate(private_key)
    assert not is_within_validity(expired)
    _register(app, expired)
    cache = ClientCertificateCache(app.extensions["sqlalchemy_sessionmaker"])

    assert cache.get_user_by_certificate(expired) is None
    assert cache.get_user_by_certificate(expired, verify_validity=False) is not None
    with pytest.raises(ClientCertificateError):
        cache.check_client_trusted([expired])


def test_trusted_certificates_pem(app, certificate):
    cache = ClientCertificateCache(app.extensions["sqlalchemy_sessionmaker"])
    assert cache.trusted_certificates_pem() == ""
    _register(app, certificate)
    assert cache.trusted_certificates_pem() == certificate_to_pem(certificate)


def test_certificate_from_request(certificate):
    pem = certificate_to_pem(certificate)
    assert certificate_from_request({}) is None
    assert certificate_from_request({"SSL_CLIENT_CERT": pem}) == certificate

    environ = {"HTTP_X_CLIENT_CERT": urllib.parse.quote(pem)}
    assert certificate_from_request(environ) is None
    assert certificate_from_request(environ, "X-Client-Cert") == certificate


def test_certificate_from_request_malformed():
    assert certificate_from_request({"SSL_CLIENT_CERT": "not a certificate"}) is None

"""
Client certificate to user lookup.

A client certificate is trusted when it is the single certificate presented
and its SHA-256 fingerprint is the certificate alias of an active user.
Lookups are cached per fingerprint for `max_age` seconds, including misses,
so unknown certificates do not hit the database on every handshake.
"""

from __future__ import annotations

import logging
import threading
import time
import urllib.parse
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from cryptography import x509
from sqlalchemy.orm import Session, sessionmaker

from app.ilves.certificates import certificate_fingerprint
from app.ilves.models import User

logger = logging.getLogger(__name__)


class ClientCertificateError(Exception):
    pass


@dataclass(frozen=True)
class _CacheEntry:
    user_id: int | None
    loaded_at: float


def is_within_validity(certificate: x509.Certificate, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc


class ClientCertificateCache:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        max_age: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _CacheEntry] = {}
        # Bumped by invalidate(); a lookup started before it is not cached.
        self._generation = 0

    def _load_user_id(self, fingerprint: str) -> int | None:
        s: Session = self._session_factory()
        try:
            return (
                s.query(User.id)
                .filter(User.certificate_alias == fingerprint, User.is_active.is_(True))
                .scalar()
            )
        finally:
            s.close()

    def get_user_id_by_fingerprint(self, fingerprint: str) -> int | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is not None and now - entry.loaded_at < self._max_age:
                return entry.user_id
            generation = self._generation
        user_id = self._load_user_id(fingerprint)
        with self._lock:
            if generation == self._generation:
                self._entries[fingerprint] = _CacheEntry(user_id=user_id, loaded_at=now)
        return user_id

    def get_user_by_certificate(
        self,
        certificate: x509.Certificate,
        verify_validity: bool = True,
        *,
        session: Session | None = None,
    ) -> User | None:
        """
        User owning the certificate, or None.
        The user is loaded into `session` when given, otherwise returned detached.
        """
        if verify_validity and not is_within_validity(certificate):
            return None
        user_id = self.get_user_id_by_fingerprint(certificate_fingerprint(certificate))
        if user_id is None:
            return None
        if session is not None:
            return session.get(User, user_id)
        s: Session = self._session_factory()
        try:
            user = s.get(User, user_id)
            if user is not None:
                s.expunge(user)
            return user
        finally:
            s.close()

    def invalidate(self, fingerprint: str | None = None) -> None:
        with self._lock:
            self._generation += 1
            if fingerprint is None:
                self._entries.clear()
            else:
                self._entries.pop(fingerprint, None)

    def check_client_trusted(self, chain: Sequence[x509.Certificate]) -> None:
        if len(chain) != 1:
            raise ClientCertificateError("Certificate paths not supported.")
        if self.get_user_id_by_fingerprint(certificate_fingerprint(chain[0])) is None:
            raise ClientCertificateError("Unknown certificate.")
        if not is_within_validity(chain[0]):
            raise ClientCertificateError("Certificate expired or not yet valid.")

    def trusted_certificates_pem(self) -> str:
        """PEM bundle of every active user's client certificate."""
        s: Session = self._session_factory()
        try:
            rows = (
                s.query(User.certificate_pem)
                .filter(User.certificate_pem.isnot(None), User.is_active.is_(True))
                .order_by(User.id.asc())
                .all()
            )
        finally:
            s.close()
        return "".join(pem if pem.endswith("\n") else pem + "\n" for (pem,) in rows)


def certificate_from_request(environ: Mapping[str, object], header: str = "") -> x509.Certificate | None:
    """
    Client certificate of a WSGI request: SSL_CLIENT_CERT set by the TLS
    connector, or a URL-escaped PEM forwarded by a TLS terminating proxy.
    """
    pem = environ.get("SSL_CLIENT_CERT")
    if not pem and header:
        raw = environ.get("HTTP_" + header.upper().replace("-", "_"))
        if raw:
            pem = urllib.parse.unquote(str(raw))
    if not pem:
        return None
    try:
        return x509.load_pem_x509_certificate(str(pem).encode("ascii"))
    except ValueError as e:
        logger.warning("Malformed client certificate in request: %s", e)
        return None

import http.client
import socket
import ssl

import pytest

from app.ilves.certificates import (
    CertificateError,
    certificate_to_pem,
    ensure_server_certificate_exists,
    generate_self_signed_certificate,
    get_certificate,
    has_certificate,
)
from app.ilves.server import REQUEST_HEADER_SIZE, ResponseHeaderLimit, new_server, new_ssl_context

STORE_PASSWORD = "store-secret"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture()
def key_store_path(tmp_path, monkeypatch):
    monkeypatch.setenv("SERVER_CERTIFICATE_SELF_SIGNED_KEY_SIZE", "1024")
    path = str(tmp_path / "keystore.json")
    ensure_server_certificate_exists("localhost", "127.0.0.1", "ilves-server", "server-secret", path, STORE_PASSWORD)
    return path


def _context(key_store_path, **kwargs):
    return new_ssl_context(key_store_path, STORE_PASSWORD, "ilves-server", "server-secret", **kwargs)


def test_ssl_context_client_authentication_modes(key_store_path):
    ctx = _context(key_store_path, request_client_authentication=False, require_client_authentication=False)
    assert ctx.verify_mode == ssl.CERT_NONE
    ctx = _context(key_store_path, request_client_authentication=True, require_client_authentication=False)
    assert ctx.verify_mode == ssl.CERT_OPTIONAL
    ctx = _context(key_store_path, request_client_authentication=True, require_client_authentication=True)
    assert ctx.verify_mode == ssl.CERT_REQUIRED


def test_ssl_context_hardening(key_store_path):
    ctx = _context(key_store_path, request_client_authentication=True, require_client_authentication=False)
    assert ctx.options & ssl.OP_NO_RENEGOTIATION
    assert ctx.minimum_version >= ssl.TLSVersion.TLSv1_2
    names = [c["name"] for c in ctx.get_ciphers()]
    assert names
    assert not [n for n in names if "RC4" in n or "DES" in n or "EXP" in n]


def test_ssl_context_trusts_user_certificates(key_store_path):
    alias = generate_self_signed_certificate("user@example.com", None, key_store_path, STORE_PASSWORD, "entry-secret")
    pem = certificate_to_pem(get_certificate(alias, key_store_path, STORE_PASSWORD))
    ctx = _context(
        key_store_path,
        request_client_authentication=True,
        require_client_authentication=False,
        trusted_certificates_pem=pem,
    )
    assert ctx.cert_store_stats()["x509"] == 1


def test_ssl_context_unknown_alias(key_store_path):
    with pytest.raises(CertificateError):
        new_ssl_context(
            key_store_path,
            STORE_PASSWORD,
            "missing",
            "server-secret",
            request_client_authentication=False,
            require_client_authentication=False,
        )


def test_new_server_creates_server_certificate(app):
    cfg = app.config
    assert not has_certificate(cfg["SERVER_CERTIFICATE_ALIAS"], cfg["KEY_STORE_PATH"], cfg["KEY_STORE_PASSWORD"])

    server = new_server(0, _free_port(), True, False, app, host="127.0.0.1")
    try:
        assert has_certificate(cfg["SERVER_CERTIFICATE_ALIAS"], cfg["KEY_STORE_PATH"], cfg["KEY_STORE_PASSWORD"])
        assert len(server.connectors) == 1
        assert server.ssl_context.verify_mode == ssl.CERT_OPTIONAL
        assert app.extensions["site_server"] is server
    finally:
        server.shutdown()


def test_new_server_without_connectors(app):
    server = new_server(0, 0, False, False, app)
    assert server.connectors == []
    assert server.ssl_context is None


@pytest.fixture()
def http_server(app):
    port = _free_port()
    server = new_server(port, 0, False, False, app, host="127.0.0.1")
    server.start()
    yield port
    server.shutdown()


def test_http_response_has_no_server_or_date_header(http_server):
    conn = http.client.HTTPConnection("127.0.0.1", http_server, timeout=5)
    try:
        conn.request("GET", "/healthz")
        r = conn.getresponse()
        assert r.status == 200
        assert r.read() == b"ok"
        assert r.getheader("Server") is None
        assert r.getheader("Date") is None
    finally:
        conn.close()


def test_oversized_request_header(http_server):
    conn = http.client.HTTPConnection("127.0.0.1", http_server, timeout=5)
    try:
        conn.request("GET", "/healthz", headers={"X-Padding": "a" * REQUEST_HEADER_SIZE})
        r = conn.getresponse()
        assert r.status == 431
    finally:
        conn.close()


def test_response_header_limit():
    def app(environ, start_response):
        start_response("200 OK", [("X-Big", "a" * 100)])
        return [b"body"]

    statuses = []

    def start_response(status, headers, exc_info=None):
        statuses.append(status)

    assert ResponseHeaderLimit(app, limit=1000)({"PATH_INFO": "/"}, start_response) == [b"body"]
    assert ResponseHeaderLimit(app, limit=50)({"PATH_INFO": "/"}, start_response) == [b"Response header too large"]
    assert statuses == ["200 OK", "500 Internal Server Error"]

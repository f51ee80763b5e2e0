"""
Embedded HTTP/HTTPS server.

Each connector is a threaded werkzeug WSGI server running in its own thread.
The HTTPS connector serves the key-store server certificate and asks for (or
requires) a client certificate. Registered user certificates are the TLS
trust anchors; the certificate cache rechecks every presented certificate
before a request is handled, so revoked certificates are refused even while
the TLS context still trusts them.
"""

from __future__ import annotations

import logging
import os
import ssl
import tempfile
import threading
from http import HTTPStatus

from cryptography import x509
from flask import Flask
from werkzeug.serving import BaseWSGIServer, WSGIRequestHandler, make_server

from app.ilves.certificates import CertificateError, certificate_to_pem, ensure_server_certificate_exists, load_key_store
from app.ilves.client_certificates import ClientCertificateCache, ClientCertificateError
from app.ilves.config import get_property

logger = logging.getLogger(__name__)

OUTPUT_BUFFER_SIZE = 32768
REQUEST_HEADER_SIZE = 8192
RESPONSE_HEADER_SIZE = 8192
IDLE_TIMEOUT = 30  # seconds

# OpenSSL cipher string; weak, export, DES and RC4 suites are never offered.
_CIPHERS = "DEFAULT:!aNULL:!eNULL:!EXPORT:!DES:!3DES:!RC4:!MD5"
_SUPPRESSED_HEADERS = ("server", "date")


class SiteRequestHandler(WSGIRequestHandler):
    timeout = IDLE_TIMEOUT
    wbufsize = OUTPUT_BUFFER_SIZE

    def parse_request(self) -> bool:
        if not super().parse_request():
            return False
        size = len(self.raw_requestline) + sum(len(k) + len(v) + 4 for k, v in self.headers.items())
        if size > REQUEST_HEADER_SIZE:
            self.send_error(HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE)
            return False
        return True

    def send_header(self, keyword: str, value: str) -> None:
        if keyword.lower() in _SUPPRESSED_HEADERS:
            return
        super().send_header(keyword, value)

    def _client_trusted(self) -> bool:
        getpeercert = getattr(self.connection, "getpeercert", None)
        if getpeercert is None:
            return True
        der = getpeercert(binary_form=True)
        if der is None:
            return True
        cache: ClientCertificateCache | None = getattr(self.server, "client_certificate_cache", None)
        if cache is None:
            return True
        try:
            cache.check_client_trusted([x509.load_der_x509_certificate(der)])
        except ClientCertificateError as e:
            logger.warning("Client certificate refused (client=%s): %s", self.client_address[0], e)
            return False
        return True

    def handle(self) -> None:
        if not self._client_trusted():
            return
        super().handle()


class ResponseHeaderLimit:
    """WSGI middleware answering 500 when the response headers are too large to send."""

    def __init__(self, app, limit: int = RESPONSE_HEADER_SIZE) -> None:
        self.app = app
        self.limit = limit

    def __call__(self, environ, start_response):
        oversized: list[int] = []

        def _start_response(status, headers, exc_info=None):
            size = len(status) + sum(len(k) + len(v) + 4 for k, v in headers)
            if size > self.limit:
                oversized.append(size)
                return lambda data: None
            return start_response(status, headers, exc_info)

        result = self.app(environ, _start_response)
        if not oversized:
            return result
        if hasattr(result, "close"):
            result.close()
        logger.error("Response header too large (%s bytes) for %s", oversized[0], environ.get("PATH_INFO"))
        body = b"Response header too large"
        start_response(
            "500 Internal Server Error",
            [("Content-Type", "text/plain; charset=utf-8"), ("Content-Length", str(len(body)))],
        )
        return [body]


def new_ssl_context(
    key_store_path: str,
    key_store_password: str,
    certificate_alias: str,
    certificate_password: str,
    *,
    request_client_authentication: bool,
    require_client_authentication: bool,
    trusted_certificates_pem: str = "",
) -> ssl.SSLContext:
    ks = load_key_store(key_store_path, key_store_password)
    entry = ks.entries.get(certificate_alias)
    if entry is None or not entry.is_key_entry:
        raise CertificateError(f"Server certificate '{certificate_alias}' not found in key store: {key_store_path}")

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.set_ciphers(_CIPHERS)
    ctx.options |= ssl.OP_NO_RENEGOTIATION

    # ssl only loads certificate chains from files.
    fd, chain_path = tempfile.mkstemp(suffix=".pem")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(certificate_to_pem(entry.certificate).encode("ascii"))
            f.write(entry.private_key_pem or b"")
        ctx.load_cert_chain(chain_path, password=certificate_password or None)
    finally:
        os.unlink(chain_path)

    if require_client_authentication:
        ctx.verify_mode = ssl.CERT_REQUIRED
    elif request_client_authentication:
        ctx.verify_mode = ssl.CERT_OPTIONAL
    else:
        ctx.verify_mode = ssl.CERT_NONE
    if ctx.verify_mode != ssl.CERT_NONE:
        ctx.verify_flags |= ssl.VERIFY_X509_PARTIAL_CHAIN
        if trusted_certificates_pem:
            ctx.load_verify_locations(cadata=trusted_certificates_pem)
    return ctx


class SiteServer:
    def __init__(self, app: Flask, ssl_context: ssl.SSLContext | None = None) -> None:
        self.app = app
        self.ssl_context = ssl_context
        self.connectors: list[BaseWSGIServer] = []
        self._threads: list[threading.Thread] = []

    def add_connector(self, server: BaseWSGIServer) -> None:
        self.connectors.append(server)

    def start(self) -> None:
        for srv in self.connectors:
            scheme = "https" if srv.ssl_context is not None else "http"
            t = threading.Thread(target=srv.serve_forever, name=f"ilves-{scheme}-{srv.server_port}", daemon=True)
            t.start()
            self._threads.append(t)
            logger.info("Listening on %s://%s:%s", scheme, srv.host, srv.server_port)

    def serve_forever(self) -> None:
        self.start()
        try:
            for t in self._threads:
                t.join()
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down")
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        running = bool(self._threads)
        for srv in self.connectors:
            if running:
                srv.shutdown()
            srv.server_close()
        for t in self._threads:
            t.join(timeout=IDLE_TIMEOUT)
        self._threads = []

    def reload_trusted_certificates(self) -> None:
        """Add newly issued user certificates to the live TLS context."""
        cache: ClientCertificateCache | None = self.app.extensions.get("client_certificate_cache")
        if self.ssl_context is None or cache is None:
            return
        if self.ssl_context.verify_mode == ssl.CERT_NONE:
            return
        pem = cache.trusted_certificates_pem()
        if pem:
            self.ssl_context.load_verify_locations(cadata=pem)
        logger.info("Trusted client certificates reloaded")


def new_server(
    http_port: int,
    https_port: int,
    request_client_authentication: bool,
    require_client_authentication: bool,
    app: Flask,
    *,
    host: str = "0.0.0.0",
) -> SiteServer:
    """
    Build the site server. A port of 0 or less disables that connector.
    """
    cfg = app.config
    category = cfg["PROPERTIES_CATEGORY"]
    cache: ClientCertificateCache | None = app.extensions.get("client_certificate_cache")
    wsgi_app = ResponseHeaderLimit(app)

    ssl_context = None
    if https_port > 0:
        ensure_server_certificate_exists(
            get_property(category, "server-certificate-self-sign-host-name"),
            get_property(category, "server-certificate-self-sign-ip-address") or None,
            cfg["SERVER_CERTIFICATE_ALIAS"],
            cfg["SERVER_CERTIFICATE_PASSWORD"],
            cfg["KEY_STORE_PATH"],
            cfg["KEY_STORE_PASSWORD"],
        )
        ssl_context = new_ssl_context(
            cfg["KEY_STORE_PATH"],
            cfg["KEY_STORE_PASSWORD"],
            cfg["SERVER_CERTIFICATE_ALIAS"],
            cfg["SERVER_CERTIFICATE_PASSWORD"],
            request_client_authentication=request_client_authentication,
            require_client_authentication=require_client_authentication,
            trusted_certificates_pem=cache.trusted_certificates_pem() if cache is not None else "",
        )

    server = SiteServer(app, ssl_context)
    if http_port > 0:
        server.add_connector(
            make_server(host, http_port, wsgi_app, threaded=True, request_handler=SiteRequestHandler)
        )
    if ssl_context is not None:
        srv = make_server(
            host,
            https_port,
            wsgi_app,
            threaded=True,
            request_handler=SiteRequestHandler,
            ssl_context=ssl_context,
        )
        srv.client_certificate_cache = cache  # type: ignore[attr-defined]
        server.add_connector(srv)

    app.extensions["site_server"] = server
    return server

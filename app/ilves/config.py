import os
import threading
from dataclasses import dataclass

DEFAULT_CATEGORY = "site"

# Built-in property defaults, per category. Dash-separated keys.
_DEFAULTS: dict[str, dict[str, str]] = {
    DEFAULT_CATEGORY: {
        "database-url": "sqlite:///ilves.db",
        "migrations-script-location": "",
        "key-store-path": "ilves-keystore.json",
        "key-store-password": "changeit",
        "server-certificate-entry-alias": "ilves-server",
        "server-certificate-entry-password": "changeit",
        "server-certificate-self-sign-host-name": "localhost",
        "server-certificate-self-sign-ip-address": "127.0.0.1",
        "server-certificate-self-signed-key-size": "2048",
        "client-certificate-entry-password": "changeit",
        "http-port": "8080",
        "https-port": "8443",
        "client-certificate-request": "true",
        "client-certificate-require": "false",
        "client-certificate-header": "",
    },
}

_overrides: dict[tuple[str, str], str] = {}
_overrides_lock = threading.Lock()


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    migrations_script_location: str

    key_store_path: str
    key_store_password: str
    server_certificate_alias: str
    server_certificate_password: str
    client_certificate_entry_password: str
    client_certificate_header: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_name(category: str, key: str) -> str:
    name = key.replace("-", "_").upper()
    if category == DEFAULT_CATEGORY:
        return name
    return f"{category.replace('-', '_').upper()}_{name}"


def get_property(category: str, key: str) -> str:
    """
    Resolve a dash-separated property key of a properties category.

    Lookup order: in-process override, environment variable, built-in default.
    Category "site" reads plain names (KEY_STORE_PATH); other categories are
    prefixed (TEST_KEY_STORE_PATH) and fall back to the site defaults.
    """
    with _overrides_lock:
        if (category, key) in _overrides:
            return _overrides[(category, key)]
    value = os.environ.get(_env_name(category, key))
    if value is not None:
        return value.strip()
    for cat in (category, DEFAULT_CATEGORY):
        defaults = _DEFAULTS.get(cat, {})
        if key in defaults:
            return defaults[key]
    raise KeyError(f"Unknown property '{key}' in category '{category}'")


def set_property(category: str, key: str, value: str | None) -> None:
    """Override a property in-process. None clears the override."""
    with _overrides_lock:
        if value is None:
            _overrides.pop((category, key), None)
        else:
            _overrides[(category, key)] = value


def get_bool_property(category: str, key: str) -> bool:
    return get_property(category, key).strip().lower() in ("1", "true", "yes", "on")


def get_int_property(category: str, key: str) -> int:
    return int(get_property(category, key))


def load_settings(category: str = DEFAULT_CATEGORY) -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=get_property(category, "database-url"),
        migrations_script_location=get_property(category, "migrations-script-location"),
        key_store_path=get_property(category, "key-store-path"),
        key_store_password=get_property(category, "key-store-password"),
        server_certificate_alias=get_property(category, "server-certificate-entry-alias"),
        server_certificate_password=get_property(category, "server-certificate-entry-password"),
        client_certificate_entry_password=get_property(category, "client-certificate-entry-password"),
        client_certificate_header=get_property(category, "client-certificate-header"),
    )


def load_config(category: str = DEFAULT_CATEGORY) -> dict:
    s = load_settings(category)
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "PROPERTIES_CATEGORY": category,
        "PERSISTENCE_UNIT": "ilves",
        "DATABASE_URL": s.database_url,
        "MIGRATIONS_SCRIPT_LOCATION": s.migrations_script_location,
        "KEY_STORE_PATH": s.key_store_path,
        "KEY_STORE_PASSWORD": s.key_store_password,
        "SERVER_CERTIFICATE_ALIAS": s.server_certificate_alias,
        "SERVER_CERTIFICATE_PASSWORD": s.server_certificate_password,
        "CLIENT_CERTIFICATE_ENTRY_PASSWORD": s.client_certificate_entry_password,
        "CLIENT_CERTIFICATE_HEADER": s.client_certificate_header,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        "MAX_CONTENT_LENGTH": 1 * 1024 * 1024,
        "PASSWORD_RESET_MAX_AGE": 3600,
    }

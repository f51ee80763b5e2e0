import hashlib

from flask import session

from app.ilves.constants import GRAVATAR_URL
from app.ilves.site import construct_gravatar_url, gravatar_url


def test_construct_gravatar_url():
    digest = hashlib.md5(b"test@example.com").hexdigest()
    assert construct_gravatar_url("test@example.com") == f"{GRAVATAR_URL}{digest}.jpg?s=32&d=mm&r=g"


def test_gravatar_email_is_normalised():
    assert construct_gravatar_url("  Test@Example.COM ") == construct_gravatar_url("test@example.com")


def test_gravatar_url_is_memoised_in_session(app):
    with app.test_request_context("/"):
        url = gravatar_url("test@example.com")
        assert session["gravatar_url"] == url
        assert session["gravatar_email"] == "test@example.com"
        # Memoised value is served until the email changes
        session["gravatar_url"] = "cached"
        assert gravatar_url("test@example.com") == "cached"
        assert gravatar_url("other@example.com") == construct_gravatar_url("other@example.com")


def test_gravatar_outside_request():
    assert gravatar_url("test@example.com") == construct_gravatar_url("test@example.com")

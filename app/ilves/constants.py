"""
Central constants for the Ilves application.
"""
from __future__ import annotations

from enum import Enum


class AuthenticationDeviceType(str, Enum):
    NONE = "none"
    GOOGLE_AUTHENTICATOR = "google_authenticator"


# (key, display name) of every permission the seed script grants the admin role.
PERMISSIONS = (
    ("admin.view", "Admin: view shell"),
    ("customers.view", "Customers: view"),
    ("customers.create", "Customers: create"),
    ("customers.edit", "Customers: edit"),
    ("customers.delete", "Customers: delete"),
    ("users.view", "Users: view"),
    ("users.create", "Users: create"),
    ("users.edit", "Users: edit"),
    ("users.delete", "Users: delete"),
    ("users.certificates", "Users: issue and revoke client certificates"),
)

GRAVATAR_URL = "http://www.gravatar.com/avatar/"

TOTP_ISSUER = "Ilves"

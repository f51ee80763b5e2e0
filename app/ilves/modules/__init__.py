"""
Feature modules live under this package.

Each module owns its routes, models and service functions while reusing the
platform primitives (auth, RBAC, audit, tenancy, DB session).
"""

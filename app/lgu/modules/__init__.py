"""
Feature modules live under this package.

Each module owns its models, routes and business logic while reusing the
platform primitives in `app.lgu` (auth, RBAC, audit, storage, DB session).
"""

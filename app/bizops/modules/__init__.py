"""
Business modules live under this package.

Each module owns its models, service layer and API blueprint, and reuses the platform
primitives (auth, RBAC, tenancy, audit, storage, DB session).
"""

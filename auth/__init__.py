"""auth/ -- Authentication and authorization package for Gatekeeper.

Token signing, refresh-token rotation, permission resolution and the
request-time access check.

Layer rule: auth/ may import from core/, cache/ and rbac/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""

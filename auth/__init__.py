"""auth/ -- Identity core for Warden: credentials, sessions, RBAC and admin operations.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""

"""auth/ -- Authentication and authorization core for TenantGate.

Layer rule: auth/ imports only stdlib, third-party libraries and core/
(configuration and clock). It does NOT import from api/.
api/ and main.py import from auth/, not the other way around.
"""

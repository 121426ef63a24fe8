"""auth/ -- Authentication core for SimpleAuth.

Sessions, the selector/verifier password-reset scheme, and the per-request
access decision all live here.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""

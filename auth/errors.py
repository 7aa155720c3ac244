"""
auth/errors.py -- Typed failures raised across the auth core boundary.

Every failure the core can produce is one of these classes. Callers catch
AuthError (or a specific subclass) and never see a bare exception for an
expected authentication or authorization outcome. The API layer maps them
onto HTTP using the status_code and code attributes.

Two distinctions matter to callers:
  TokenExpired vs TokenInvalid -- expired means "try a refresh first",
      invalid means "force a new login".
  AuthenticationFailed / RefreshTokenInvalid vs Forbidden -- the first two
      are "we do not know who you are", Forbidden is "we know, and no".

Messages are fixed per class. AuthenticationFailed in particular must not
reveal whether the identifier or the secret was wrong [C1].

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every auth-core failure."""

    code = "auth_error"
    status_code = 401
    default_message = "Authentication required."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class AuthenticationFailed(AuthError):
    code = "bad_credentials"
    default_message = "Invalid identifier or password."


class TokenInvalid(AuthError):
    code = "token_invalid"
    default_message = "Access token is invalid."


class TokenExpired(AuthError):
    code = "token_expired"
    default_message = "Access token has expired."


class RefreshTokenInvalid(AuthError):
    code = "refresh_token_invalid"
    default_message = "Refresh token is invalid or has already been used."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "You do not have access to this resource."


class TenantUnresolved(AuthError):
    code = "tenant_required"
    status_code = 400
    default_message = "Company context is required. Provide the company header or use a company-scoped endpoint."

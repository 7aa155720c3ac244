"""
auth/credentials.py -- Secret hashing and the credential verifier.

Security design decisions:
  Secrets: bcrypt used directly (no passlib wrapper). passlib's wrap-bug
       detection creates a password longer than 72 bytes, which bcrypt 4.x
       rejects with an explicit error. Direct bcrypt usage is simpler.

  Both collaborators are pluggable: CredentialVerifier takes the lookup and
       the verification function as arguments, so a different hashing scheme
       or user directory can be wired in without touching the login flow.

  Timing equalization [C1]: the verifier always runs one hash check, against
       _DUMMY_HASH when the identifier is unknown, so response time does not
       reveal whether an account exists. Unknown identifier, wrong secret and
       deactivated account all raise the same AuthenticationFailed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import bcrypt

from auth.errors import AuthenticationFailed
from auth.models import Principal

logger = logging.getLogger("tenantgate.auth.credentials")

PrincipalLookup = Callable[[str], "Principal | None"]
SecretVerifier = Callable[[str, str], bool]


def hash_secret(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext secret.

    Secrets longer than 72 bytes are truncated by bcrypt. The API layer caps
    the password field at 255 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_secret(plain: str, hashed: str) -> bool:
    """Return True if the plaintext secret matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB -- treat as a mismatch, never as a crash.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_secret("tenantgate_timing_dummy")


class CredentialVerifier:
    """Validate an identifier + secret pair against a principal directory.

    Usage:
        verifier = CredentialVerifier(store.get_principal_by_identifier)
        principal = verifier.verify("alice@example.com", "secret")
    """

    def __init__(self, lookup: PrincipalLookup, verify: SecretVerifier = verify_secret) -> None:
        self._lookup = lookup
        self._verify = verify

    def verify(self, identifier: str, secret: str) -> Principal:
        """Return the principal on success, raise AuthenticationFailed otherwise."""
        principal = self._lookup(identifier) if identifier else None
        if principal is None or not principal.hashed_password:
            # Equalize timing -- do NOT return early before running the hash [C1]
            self._verify(secret, _DUMMY_HASH)
            logger.info("Login failed: unknown identifier or no local secret")
            raise AuthenticationFailed()
        if not self._verify(secret, principal.hashed_password):
            logger.info("Login failed: bad secret for principal %s", principal.id)
            raise AuthenticationFailed()
        if not principal.is_active:
            logger.info("Login failed: principal %s is deactivated", principal.id)
            raise AuthenticationFailed()
        return principal

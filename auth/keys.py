"""
auth/keys.py -- Signing-key provider for access tokens.

The issuer asks for the signing key, the validator for the verification key.
For HS* both are SECRET_KEY; for RS*/PS*/ES* they are the configured PEM
private and public keys. Nothing here hardcodes an algorithm or a key [K1].
"""

from __future__ import annotations

from dataclasses import dataclass

from core.config import SYMMETRIC_ALGORITHMS, Settings


@dataclass(frozen=True)
class SigningKeys:
    algorithm: str
    signing_key: str
    verification_key: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKeys":
        if settings.jwt_algorithm in SYMMETRIC_ALGORITHMS:
            return cls(settings.jwt_algorithm, settings.secret_key, settings.secret_key)
        return cls(settings.jwt_algorithm, settings.jwt_private_key, settings.jwt_public_key)

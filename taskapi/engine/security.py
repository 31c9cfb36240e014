"""
TaskAPI Credential Verification — bearer tokens and service API keys.

Implements:
- JWTVerifier: HMAC-signed JWT bearer tokens (PyJWT), the default scheme
- SignedTokenVerifier: Fernet-signed JSON claims (cryptography), key derived
  from the configured secret via SHA-256, optional max age
- APIKeyVerifier: service API keys checked against bcrypt hashes
- ChainedVerifier: first verifier that accepts wins
- generate_api_key / hash_api_key helpers for provisioning

The pipeline only needs ``verify(token) -> Verification``; no identity is
passed on to handlers.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import bcrypt
import jwt
from cryptography.fernet import Fernet, InvalidToken

from taskapi.engine.errors import TaskAPIConfigError

logger = logging.getLogger("taskapi.engine.security")


@dataclass
class Verification:
    """Outcome of a credential check."""

    valid: bool
    claims: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @classmethod
    def reject(cls, reason: str) -> "Verification":
        return cls(valid=False, reason=reason)


class CredentialVerifier:
    """Interface: validate a bearer credential."""

    def verify(self, token: str) -> Verification:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Signed tokens
# ---------------------------------------------------------------------------

def _derive_fernet_key(secret: str) -> bytes:
    # Fernet needs a URL-safe base64 32-byte key
    derived = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(derived)


class SignedTokenVerifier(CredentialVerifier):
    """
    Bearer tokens are Fernet tokens wrapping a JSON claims object.

    Usage:
        verifier = SignedTokenVerifier(secret="...")
        token = verifier.issue_token({"sub": "ci-bot"})
        verifier.verify(token).claims["sub"]   # → "ci-bot"
    """

    def __init__(self, secret: str, max_age: Optional[int] = None):
        if not secret:
            raise TaskAPIConfigError("Token secret must not be empty")
        self._fernet = Fernet(_derive_fernet_key(secret))
        self._max_age = max_age

    def issue_token(self, claims: Optional[Dict[str, Any]] = None) -> str:
        payload = dict(claims or {})
        payload.setdefault("iat", int(time.time()))
        raw = json.dumps(payload, sort_keys=True).encode("utf-8")
        return self._fernet.encrypt(raw).decode("ascii")

    def verify(self, token: str) -> Verification:
        if not token:
            return Verification.reject("empty token")
        try:
            raw = self._fernet.decrypt(token.encode("ascii"), ttl=self._max_age)
        except (InvalidToken, UnicodeEncodeError):
            return Verification.reject("invalid or expired token")
        try:
            claims = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return Verification.reject("malformed claims")
        if not isinstance(claims, dict):
            return Verification.reject("malformed claims")
        return Verification(valid=True, claims=claims)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

class JWTVerifier(CredentialVerifier):
    """
    HS256/384/512 JWTs signed with the shared secret.

    ``exp`` and ``nbf`` are enforced when present. With ``max_age`` set,
    tokens must also carry ``iat`` and be younger than ``max_age`` seconds.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", max_age: Optional[int] = None):
        if not secret:
            raise TaskAPIConfigError("Token secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._max_age = max_age

    def issue_token(self, claims: Optional[Dict[str, Any]] = None) -> str:
        payload = dict(claims or {})
        payload.setdefault("iat", int(time.time()))
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> Verification:
        if not token:
            return Verification.reject("empty token")
        options = {"require": ["iat"]} if self._max_age is not None else {}
        try:
            claims = jwt.decode(
                token, self._secret, algorithms=[self._algorithm], options=options
            )
        except jwt.ExpiredSignatureError:
            return Verification.reject("expired token")
        except jwt.InvalidTokenError:
            return Verification.reject("invalid token")
        if self._max_age is not None and time.time() - claims["iat"] > self._max_age:
            return Verification.reject("expired token")
        return Verification(valid=True, claims=claims)


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------

def hash_api_key(api_key: str, rounds: int = 12) -> str:
    """Hash an API key using bcrypt."""
    return bcrypt.hashpw(api_key.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def generate_api_key(rounds: int = 12) -> tuple[str, str]:
    """
    Generate a service API key.

    Returns:
        Tuple of (api_key, api_key_hash). The key is shown once; only the hash
        goes into taskapi.yaml.
    """
    api_key = secrets.token_urlsafe(48)
    return api_key, hash_api_key(api_key, rounds=rounds)


class APIKeyVerifier(CredentialVerifier):
    """
    Checks a presented key against the configured bcrypt hashes.

    ``api_keys`` maps a service name to its hash; the matching name is
    returned as the ``sub`` claim.
    """

    def __init__(self, api_keys: Dict[str, str]):
        self._hashes = {name: h.encode("utf-8") for name, h in api_keys.items()}

    def verify(self, token: str) -> Verification:
        if not token:
            return Verification.reject("empty api key")
        presented = token.encode("utf-8")
        for name, key_hash in self._hashes.items():
            try:
                if bcrypt.checkpw(presented, key_hash):
                    return Verification(valid=True, claims={"sub": name, "kind": "api_key"})
            except ValueError:
                logger.error(f"Stored hash for API key '{name}' is not a bcrypt hash")
        return Verification.reject("unknown api key")


class ChainedVerifier(CredentialVerifier):
    """Accepts a credential when any wrapped verifier accepts it."""

    def __init__(self, verifiers: List[CredentialVerifier]):
        self._verifiers = verifiers

    def verify(self, token: str) -> Verification:
        last = Verification.reject("no verifiers configured")
        for verifier in self._verifiers:
            last = verifier.verify(token)
            if last.valid:
                return last
        return last


def build_verifier(auth_config) -> CredentialVerifier:
    """Build the verifier described by the ``auth`` config section."""
    kind = auth_config.type
    verifiers: List[CredentialVerifier] = []
    if kind in ("jwt", "any"):
        verifiers.append(JWTVerifier(
            auth_config.token_secret,
            algorithm=auth_config.jwt_algorithm,
            max_age=auth_config.token_max_age,
        ))
    if kind in ("token", "any"):
        verifiers.append(SignedTokenVerifier(
            secret=auth_config.token_secret,
            max_age=auth_config.token_max_age,
        ))
    if kind in ("api_key", "any"):
        verifiers.append(APIKeyVerifier(auth_config.api_keys))
    return verifiers[0] if len(verifiers) == 1 else ChainedVerifier(verifiers)

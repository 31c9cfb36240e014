"""TaskAPI Engine — config, errors, logging, credentials, key-value stores."""

from taskapi.engine.security import CredentialVerifier, SignedTokenVerifier, build_verifier  # noqa: F401
from taskapi.engine.store import InMemoryKVStore, KeyValueStore, RedisKVStore  # noqa: F401

__all__ = [
    "CredentialVerifier",
    "SignedTokenVerifier",
    "build_verifier",
    "InMemoryKVStore",
    "KeyValueStore",
    "RedisKVStore",
]

"""
SSH credential resolution.

Stored keys are encrypted with the application's master secret. Decryption
tries an ordered list of candidate secrets: the current SECRET_KEY first,
then each versioned legacy secret, so keys written before a rotation still
resolve.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from fortress.backup.errors import CredentialNotFound, DecryptionFailed
from fortress.backup.types import SSHConnectionConfig
from fortress.utils.crypto import CryptoError, decrypt, is_encrypted_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyCandidate:
    """A versioned master secret tried during decryption."""
    version: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class StoredSSHKey:
    id: str
    name: str
    private_key_data: str = field(repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    is_encrypted: bool = True


@dataclass(frozen=True)
class ResolvedCredentials:
    private_key: Optional[str] = field(default=None, repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    password: Optional[str] = field(default=None, repr=False)

    def to_ssh_config(self, host: str, port: int = 22, username: str = 'root') -> SSHConnectionConfig:
        return SSHConnectionConfig(
            host=host,
            port=port or 22,
            username=username or 'root',
            private_key=self.private_key,
            passphrase=self.passphrase,
            password=self.password,
        )


class CredentialStore(Protocol):
    def get_ssh_key(self, key_id: str) -> Optional[StoredSSHKey]:
        ...


class SQLCredentialStore:
    """Credential store backed by the SSHKey table."""

    def get_ssh_key(self, key_id: str) -> Optional[StoredSSHKey]:
        from fortress import db
        from fortress.models import SSHKey

        row = db.session.get(SSHKey, key_id)
        if row is None:
            return None
        return StoredSSHKey(
            id=row.id,
            name=row.name,
            private_key_data=row.private_key_data,
            passphrase=row.passphrase,
            is_encrypted=row.is_encrypted,
        )


class SecretResolver:
    """
    Resolves SSH credentials from stored keys or raw request values.

    Never logs decrypted material.
    """

    def __init__(self, store: CredentialStore, master_key: str,
                 legacy_keys: Iterable[Tuple[str, str]] = ()):
        """
        Args:
            store: Credential store
            master_key: Current master secret
            legacy_keys: (version, secret) pairs tried after the current secret
        """
        self.store = store
        self.candidates: List[KeyCandidate] = [KeyCandidate('current', master_key)]
        self.candidates.extend(KeyCandidate(version, secret) for version, secret in legacy_keys)

    def decrypt_field(self, value: Optional[str]) -> Optional[str]:
        """
        Decrypt one stored field. Values that are not encrypted payloads are
        returned unchanged.

        Raises:
            DecryptionFailed: If no candidate secret decrypts the payload
        """
        if not value or not is_encrypted_payload(value):
            return value

        for index, candidate in enumerate(self.candidates):
            try:
                plaintext = decrypt(value, candidate.secret)
            except CryptoError:
                if index + 1 < len(self.candidates):
                    logger.warning(f"Decryption failed with {candidate.version} secret, trying fallback")
                continue
            if candidate.version != 'current':
                logger.info(f"Decrypted with legacy secret {candidate.version}")
            return plaintext

        raise DecryptionFailed("Failed to decrypt stored credential with any known secret")

    def resolve_key(self, key_id: str) -> ResolvedCredentials:
        """
        Resolve a stored SSH key.

        Raises:
            CredentialNotFound: If the key does not exist
            DecryptionFailed: If decryption fails with every candidate secret
        """
        stored = self.store.get_ssh_key(key_id)
        if stored is None:
            raise CredentialNotFound(f"SSH key not found: {key_id}")

        if stored.is_encrypted:
            private_key = self.decrypt_field(stored.private_key_data)
        else:
            private_key = stored.private_key_data
        passphrase = self.decrypt_field(stored.passphrase)

        logger.info(f"Resolved SSH key: {stored.name}")
        return ResolvedCredentials(private_key=private_key, passphrase=passphrase)

    def resolve(self, request_credentials: Optional[Dict[str, Any]] = None,
                system_key_id: Optional[str] = None) -> ResolvedCredentials:
        """
        Resolve credentials for one invocation.

        Order: an explicit sshKeyId in the request, then the system's assigned
        key (only when the request carries no privateKey or password), then the
        raw request values.

        Args:
            request_credentials: Dict with optional sshKeyId, privateKey, passphrase, password
            system_key_id: Key id assigned to the target system

        Raises:
            CredentialNotFound: If the explicitly requested key does not exist
            DecryptionFailed: If a stored key cannot be decrypted
        """
        request = request_credentials or {}
        private_key = request.get('privateKey')
        passphrase = request.get('passphrase')
        password = request.get('password')
        key_id = request.get('sshKeyId')

        if key_id:
            resolved = self.resolve_key(key_id)
            return ResolvedCredentials(resolved.private_key, resolved.passphrase, password)

        if not private_key and not password and system_key_id:
            logger.info(f"Using system's assigned SSH key: {system_key_id}")
            try:
                resolved = self.resolve_key(system_key_id)
            except CredentialNotFound as e:
                logger.error(f"Failed to resolve system SSH key: {e}")
            else:
                return ResolvedCredentials(resolved.private_key, resolved.passphrase, password)

        return ResolvedCredentials(private_key=private_key, passphrase=passphrase, password=password)


def get_secret_resolver(app, store: Optional[CredentialStore] = None) -> SecretResolver:
    """
    Factory function to create a SecretResolver from Flask app config.

    Args:
        app: Flask application instance
        store: Credential store (defaults to the SSHKey table)
    """
    return SecretResolver(
        store or SQLCredentialStore(),
        app.config['SECRET_KEY'],
        app.config.get('LEGACY_SECRET_KEYS', ()),
    )

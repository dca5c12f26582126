"""
Secret Store - password-derived encryption of opaque payloads.

The session cache is the source of truth for the active password: an
unlock survives a reload of the store within one session, and idle
eviction of the session locks every store that shares it. The password
never reaches durable storage.
"""

import logging
from typing import Callable, Iterable, Optional

from ..exceptions import DecryptionFailedError, NoUsableKeyError, WalletLockedError
from .crypto import DEFAULT_KDF, KdfParams, decrypt_any, encrypt_secret
from .session import PASSWORD_KEY, PRIVATE_KEY_KEY, SessionCache

logger = logging.getLogger(__name__)


class SecretStore:
    """Symmetric encryption keyed by the session password."""

    def __init__(self, session: Optional[SessionCache] = None, kdf: KdfParams = DEFAULT_KDF):
        self.session = session if session is not None else SessionCache()
        self.kdf = kdf
        self._password: Optional[str] = None

    # ============================================
    # Password
    # ============================================

    def set_password(self, password: str) -> None:
        """Install the active password and mirror it into the session."""
        if not password:
            raise ValueError("Password must not be empty")
        self._password = password
        self.session.set(PASSWORD_KEY, password)
        logger.debug("Password stored in session cache")

    def clear_password(self) -> None:
        """Forget the password and the cached session key."""
        self._password = None
        self.session.remove(PASSWORD_KEY)
        self.session.remove(PRIVATE_KEY_KEY)

    def _resolve_password(self) -> Optional[str]:
        """The session copy is authoritative; an evicted session drops the in-memory one."""
        session_password = self.session.get(PASSWORD_KEY)
        if not session_password:
            if self._password is not None:
                logger.info("Session password evicted, store locked")
                self._password = None
            return None
        if self._password is None:
            logger.debug("Password restored from session cache")
        self._password = session_password
        return self._password

    def is_unlocked(self) -> bool:
        """True iff the session still holds the password."""
        return self._resolve_password() is not None

    # ============================================
    # Session private key
    # ============================================

    def set_session_private_key(self, private_key: str) -> None:
        self.session.set(PRIVATE_KEY_KEY, private_key)

    def get_session_private_key(self) -> Optional[str]:
        return self.session.get(PRIVATE_KEY_KEY)

    def clear_session_private_key(self) -> None:
        self.session.remove(PRIVATE_KEY_KEY)

    # ============================================
    # Encryption
    # ============================================

    def encrypt(self, plaintext: str) -> str:
        password = self._resolve_password()
        if password is None:
            raise WalletLockedError()
        return encrypt_secret(plaintext, password, self.kdf)

    def decrypt(self, ciphertext: str) -> str:
        password = self._resolve_password()
        if password is None:
            raise WalletLockedError()
        return decrypt_any(ciphertext, password)

    def decrypt_with_fallback(
        self,
        ciphertext: str,
        alternates: Iterable[str] = (),
        validate: Optional[Callable[[str], bool]] = None,
    ) -> str:
        """
        Decrypt with the first candidate key that works.

        Candidates, in order: the active password, the cached session
        private key, then `alternates`. A candidate whose plaintext fails
        `validate` is treated as a failure.

        Raises: NoUsableKeyError if no candidate succeeds.
        """
        candidates = []
        password = self._resolve_password()
        if password:
            candidates.append(("password", password))
        session_key = self.get_session_private_key()
        if session_key:
            candidates.append(("session key", session_key))
        candidates.extend(("alternate", key) for key in alternates if key)

        for label, key in candidates:
            try:
                plaintext = decrypt_any(ciphertext, key)
            except DecryptionFailedError:
                logger.debug(f"Decryption with {label} failed, trying next key")
                continue
            if validate is not None and not validate(plaintext):
                logger.debug(f"Decryption with {label} produced unusable plaintext")
                continue
            return plaintext

        raise NoUsableKeyError()

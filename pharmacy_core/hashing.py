"""
Password Hashing Module

Salted one-way digests for stored secrets. Digests are self-describing
strings so the algorithm can change without a data migration:

    $SCRYPT$<n>,<r>,<p>$<base64 salt>$<base64 digest>
    $SHA$<base64 salt>$<base64 digest>        (SHA-256 over salt||secret)

New digests always use the configured algorithm (scrypt by default). SHA
digests written by earlier releases still verify and are flagged by
``needs_rehash`` so callers can upgrade them after a successful login.
Comparison is constant time via ``hmac.compare_digest``.
"""

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .errors import CryptoUnavailable


SCRYPT_TAG = "SCRYPT"
SHA_TAG = "SHA"

ALGORITHM_TAGS = {
    "scrypt": SCRYPT_TAG,
    "sha256": SHA_TAG,
}

# Upper bounds accepted when parsing stored scrypt parameters
MAX_SCRYPT_N = 2 ** 20
MAX_SCRYPT_R = 32
MAX_SCRYPT_P = 16
MIN_SALT_BYTES = 16


@dataclass(frozen=True, eq=False)
class SecretDigest:
    """
    Parsed stored digest: algorithm tag, salt, digest bytes and (for scrypt)
    cost parameters.
    """
    algorithm: str
    salt: bytes
    digest: bytes
    params: Tuple[int, ...] = ()
    
    def encode(self) -> str:
        """Render the storable textual form"""
        salt_b64 = base64.b64encode(self.salt).decode('ascii')
        digest_b64 = base64.b64encode(self.digest).decode('ascii')
        if self.params:
            params = ",".join(str(p) for p in self.params)
            return f"${self.algorithm}${params}${salt_b64}${digest_b64}"
        return f"${self.algorithm}${salt_b64}${digest_b64}"
    
    def __str__(self) -> str:
        return self.encode()
    
    def __repr__(self) -> str:
        return f"SecretDigest(algorithm={self.algorithm!r})"
    
    def __eq__(self, other) -> bool:
        if not isinstance(other, SecretDigest):
            return NotImplemented
        return (
            self.algorithm == other.algorithm
            and self.params == other.params
            and hmac.compare_digest(self.salt, other.salt)
            and hmac.compare_digest(self.digest, other.digest)
        )
    
    __hash__ = None
    
    @classmethod
    def parse(cls, stored: str) -> Optional['SecretDigest']:
        """Parse a stored digest string; returns None when malformed"""
        if not isinstance(stored, str) or not stored.startswith("$"):
            return None
        
        parts = stored.split("$")
        try:
            if len(parts) == 5 and parts[1] == SCRYPT_TAG:
                params = tuple(int(p) for p in parts[2].split(","))
                if len(params) != 3:
                    return None
                n, r, p = params
                if not (1 < n <= MAX_SCRYPT_N and n & (n - 1) == 0):
                    return None
                if not (0 < r <= MAX_SCRYPT_R and 0 < p <= MAX_SCRYPT_P):
                    return None
                salt = base64.b64decode(parts[3], validate=True)
                digest = base64.b64decode(parts[4], validate=True)
                algorithm = SCRYPT_TAG
            elif len(parts) == 4 and parts[1] == SHA_TAG:
                params = ()
                salt = base64.b64decode(parts[2], validate=True)
                digest = base64.b64decode(parts[3], validate=True)
                algorithm = SHA_TAG
            else:
                return None
        except (ValueError, binascii.Error):
            return None
        
        if not salt or not digest:
            return None
        return cls(algorithm=algorithm, salt=salt, digest=digest, params=params)


def is_digest(stored: Optional[str]) -> bool:
    """Check whether a stored secret carries a recognized digest prefix"""
    if not stored:
        return False
    return any(stored.startswith(f"${tag}$") for tag in ALGORITHM_TAGS.values())


class PasswordHasher:
    """Stateless secret hasher and verifier"""
    
    def __init__(self, algorithm: str = "scrypt", n: int = 16384, r: int = 8,
                 p: int = 1, salt_bytes: int = MIN_SALT_BYTES):
        if algorithm not in ALGORITHM_TAGS:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        if salt_bytes < MIN_SALT_BYTES:
            raise ValueError(f"Salt must be at least {MIN_SALT_BYTES} bytes")
        if n <= 1 or n & (n - 1) != 0:
            raise ValueError("scrypt n must be a power of two greater than 1")
        self.algorithm = algorithm
        self.tag = ALGORITHM_TAGS[algorithm]
        self.n = n
        self.r = r
        self.p = p
        self.salt_bytes = salt_bytes
    
    @classmethod
    def from_config(cls, cfg=None) -> 'PasswordHasher':
        """Build a hasher from the deployment configuration"""
        if cfg is None:
            from .config import get_config
            cfg = get_config()
        return cls(
            algorithm=cfg.hash_algorithm,
            n=cfg.scrypt_n,
            r=cfg.scrypt_r,
            p=cfg.scrypt_p,
            salt_bytes=cfg.salt_bytes,
        )
    
    def hash(self, secret: str) -> SecretDigest:
        """
        Hash a secret with a fresh random salt.
        
        Raises:
            CryptoUnavailable: If the random source or digest primitive
                cannot run. There is no plaintext fallback.
        """
        if not isinstance(secret, str):
            raise TypeError("Secret must be a string")
        try:
            salt = secrets.token_bytes(self.salt_bytes)
        except NotImplementedError as e:
            raise CryptoUnavailable("No secure random source available") from e
        
        if self.tag == SCRYPT_TAG:
            params = (self.n, self.r, self.p)
            try:
                digest = self._scrypt(secret, salt, params)
            except ValueError as e:
                raise CryptoUnavailable(f"scrypt rejected configured parameters: {e}") from e
            return SecretDigest(SCRYPT_TAG, salt, digest, params)
        
        digest = self._sha256(secret, salt)
        return SecretDigest(SHA_TAG, salt, digest)
    
    def hash_to_string(self, secret: str) -> str:
        """Hash a secret and return the storable string form"""
        return self.hash(secret).encode()
    
    def verify(self, secret: str, digest: Union[str, SecretDigest, None]) -> bool:
        """
        Verify a secret against a stored digest.
        
        Returns False for malformed digests instead of raising. Raises
        CryptoUnavailable only when the primitive itself is missing.
        """
        if not isinstance(secret, str):
            return False
        parsed = digest if isinstance(digest, SecretDigest) else SecretDigest.parse(digest)
        if parsed is None:
            return False
        
        try:
            if parsed.algorithm == SCRYPT_TAG:
                computed = self._scrypt(secret, parsed.salt, parsed.params,
                                        length=len(parsed.digest))
            else:
                computed = self._sha256(secret, parsed.salt)
        except ValueError:
            return False
        
        return hmac.compare_digest(computed, parsed.digest)
    
    def needs_rehash(self, digest: Union[str, SecretDigest, None]) -> bool:
        """Check whether a stored digest should be upgraded to current settings"""
        parsed = digest if isinstance(digest, SecretDigest) else SecretDigest.parse(digest)
        if parsed is None:
            return True
        if parsed.algorithm != self.tag:
            return True
        if parsed.algorithm == SCRYPT_TAG:
            return parsed.params != (self.n, self.r, self.p)
        return False
    
    def _scrypt(self, secret: str, salt: bytes, params: Tuple[int, ...],
                length: int = 64) -> bytes:
        scrypt = getattr(hashlib, "scrypt", None)
        if scrypt is None:
            raise CryptoUnavailable("hashlib.scrypt is not available in this Python build")
        n, r, p = params
        maxmem = 128 * r * (n + p + 2) + 2 ** 20
        return scrypt(secret.encode('utf-8'), salt=salt, n=n, r=r, p=p,
                      maxmem=maxmem, dklen=length)
    
    def _sha256(self, secret: str, salt: bytes) -> bytes:
        try:
            digest = hashlib.sha256()
        except ValueError as e:
            raise CryptoUnavailable("SHA-256 is not available") from e
        digest.update(salt)
        digest.update(secret.encode('utf-8'))
        return digest.digest()

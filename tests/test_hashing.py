"""
Test suite for password hashing

Tests digest layout, round-trip verification, legacy SHA digests,
malformed input handling and the hard failure when the primitive is missing.
"""

import base64
import hashlib

import pytest

from pharmacy_core.errors import CryptoUnavailable
from pharmacy_core.hashing import PasswordHasher, SecretDigest, is_digest


@pytest.fixture
def hasher():
    """Low-cost scrypt hasher for tests"""
    return PasswordHasher(n=1024, r=8, p=1)


def legacy_sha_digest(secret: str, salt: bytes) -> str:
    """Digest in the original $SHA$salt$hash layout"""
    digest = hashlib.sha256(salt + secret.encode('utf-8')).digest()
    return "$SHA$" + base64.b64encode(salt).decode() + "$" + base64.b64encode(digest).decode()


class TestHashing:
    """Test digest creation"""
    
    def test_digest_layout(self, hasher):
        """Test that digests are self-describing scrypt strings"""
        encoded = hasher.hash_to_string("pharm123")
        parts = encoded.split("$")
        
        assert encoded.startswith("$SCRYPT$1024,8,1$")
        assert len(parts) == 5
        assert len(base64.b64decode(parts[3])) == 16
        assert "pharm123" not in encoded
    
    def test_salt_is_random(self, hasher):
        """Test that hashing the same secret twice gives different digests"""
        first = hasher.hash("pharm123")
        second = hasher.hash("pharm123")
        
        assert first.salt != second.salt
        assert first != second
    
    def test_parse_round_trip(self, hasher):
        """Test that encoded digests parse back to equal values"""
        digest = hasher.hash("secret")
        parsed = SecretDigest.parse(digest.encode())
        
        assert parsed == digest
        assert parsed.params == (1024, 8, 1)
    
    def test_repr_hides_material(self, hasher):
        """Test that repr does not show salt or digest bytes"""
        digest = hasher.hash("secret")
        assert repr(digest) == "SecretDigest(algorithm='SCRYPT')"
    
    def test_salt_minimum_enforced(self):
        """Test that salts below 128 bits are refused"""
        with pytest.raises(ValueError):
            PasswordHasher(salt_bytes=8)
    
    def test_unknown_algorithm_rejected(self):
        """Test that configuration typos fail loudly"""
        with pytest.raises(ValueError):
            PasswordHasher(algorithm="md5")
    
    def test_sha256_algorithm_supported(self):
        """Test hashing with the SHA-256 algorithm"""
        hasher = PasswordHasher(algorithm="sha256")
        encoded = hasher.hash_to_string("pharm123")
        
        assert encoded.startswith("$SHA$")
        assert hasher.verify("pharm123", encoded)


class TestVerification:
    """Test digest verification"""
    
    @pytest.mark.parametrize("secret", ["pharm123", "", "päss wörd", "x" * 200])
    def test_round_trip(self, hasher, secret):
        """Test verify(secret, hash(secret)) is true and a suffix breaks it"""
        assert hasher.verify(secret, hasher.hash(secret))
        assert not hasher.verify(secret, hasher.hash(secret + "x"))
    
    def test_verify_accepts_string_form(self, hasher):
        """Test verification against the stored string"""
        stored = hasher.hash_to_string("admin123")
        assert hasher.verify("admin123", stored)
        assert not hasher.verify("admin124", stored)
    
    def test_legacy_sha_digest_verifies(self, hasher):
        """Test that digests written by the original system still verify"""
        stored = legacy_sha_digest("doc123", b"0123456789abcdef")
        
        assert hasher.verify("doc123", stored)
        assert not hasher.verify("doc124", stored)
    
    @pytest.mark.parametrize("stored", [
        None,
        "",
        "plaintext",
        "$SHA$onlytwo",
        "$SHA$!!!notbase64$AAAA",
        "$SCRYPT$1024,8$c2FsdA==$ZGlnZXN0",
        "$SCRYPT$1000,8,1$c2FsdA==$ZGlnZXN0",
        "$SCRYPT$1048576000,8,1$c2FsdA==$ZGlnZXN0",
        "$SCRYPT$a,b,c$c2FsdA==$ZGlnZXN0",
        "$MD5$c2FsdA==$ZGlnZXN0",
    ])
    def test_malformed_digest_returns_false(self, hasher, stored):
        """Test that malformed digests verify as False without raising"""
        assert hasher.verify("anything", stored) is False
    
    def test_is_digest(self, hasher):
        """Test recognition of digest prefixes"""
        assert is_digest(hasher.hash_to_string("a"))
        assert is_digest("$SHA$abc$def")
        assert not is_digest("pharm123")
        assert not is_digest("")
        assert not is_digest(None)


class TestRehash:
    """Test upgrade detection"""
    
    def test_current_digest_needs_no_rehash(self, hasher):
        """Test that fresh digests are current"""
        assert not hasher.needs_rehash(hasher.hash_to_string("a"))
    
    def test_legacy_digest_needs_rehash(self, hasher):
        """Test that SHA digests are flagged for upgrade"""
        assert hasher.needs_rehash(legacy_sha_digest("a", b"0123456789abcdef"))
    
    def test_changed_cost_needs_rehash(self, hasher):
        """Test that digests with old scrypt parameters are flagged"""
        stronger = PasswordHasher(n=2048)
        assert stronger.needs_rehash(hasher.hash_to_string("a"))


class TestCryptoUnavailable:
    """Test that a missing primitive never degrades to plaintext"""
    
    def test_missing_scrypt_raises(self, hasher, monkeypatch):
        """Test hash raises CryptoUnavailable when scrypt is missing"""
        monkeypatch.delattr(hashlib, "scrypt")
        
        with pytest.raises(CryptoUnavailable):
            hasher.hash("pharm123")
    
    def test_missing_random_source_raises(self, hasher, monkeypatch):
        """Test hash raises CryptoUnavailable without a random source"""
        def no_random(n):
            raise NotImplementedError("no entropy")
        monkeypatch.setattr("pharmacy_core.hashing.secrets.token_bytes", no_random)
        
        with pytest.raises(CryptoUnavailable):
            hasher.hash("pharm123")

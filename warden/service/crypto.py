"""Credential primitives shared by the server and the reference client.

The login handshake never sends the password. The client derives the stored
password hash from the password and the salt returned by ``initLogin``, then
encrypts the server's challenge with ``encrypt_challenge``. The server runs
the same routine over the hash it holds and compares ciphertexts.

* password hash: PBKDF2-HMAC-SHA512 over the UTF-8 password with the hex salt
  as salt bytes, 64-byte output, hex encoded
* challenge key: SHA-256 of the password-hash hex string (32 bytes, AES-256)
* cipher: AES-256-CBC, PKCS#7 padding, IV from ``initLogin``, hex ciphertext
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

PASSWORD_HASH_BYTES = 64
SALT_BYTES = 16
IV_BYTES = 16
CHALLENGE_LENGTH = 64
SESSION_DIGITS = 16
VERIFICATION_CODE_LENGTH = 6

_ALPHANUMERIC = string.ascii_letters + string.digits
# No 0/O, 1/l/I so codes survive being read off a screen
_READABLE = "".join(c for c in _ALPHANUMERIC if c not in "0O1lI")


def random_string(length: int, alphabet: str = _ALPHANUMERIC) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_salt() -> str:
    return secrets.token_hex(SALT_BYTES)


def generate_iv() -> str:
    return secrets.token_hex(IV_BYTES)


def generate_challenge() -> str:
    return random_string(CHALLENGE_LENGTH)


def generate_session_id() -> str:
    return "challenge-" + random_string(SESSION_DIGITS, string.digits)


def generate_verification_code() -> str:
    return random_string(VERIFICATION_CODE_LENGTH, _READABLE)


def hash_password(password: str, salt: str, *, iterations: int = 10000) -> str:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=PASSWORD_HASH_BYTES,
        salt=bytes.fromhex(salt),
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8")).hex()


def decoy_salt(identifier: str, server_secret: str) -> str:
    """Stable salt-shaped value for identifiers that match no identity.

    Repeated ``initLogin`` calls for the same unknown identifier return the
    same value, as they would for a real account.
    """
    digest = hmac.new(
        server_secret.encode(), f"decoy-salt:{identifier}".encode(), hashlib.sha256
    ).digest()
    return digest[:SALT_BYTES].hex()


def challenge_key(password_hash: str) -> bytes:
    return hashlib.sha256(password_hash.encode("utf-8")).digest()


def encrypt_challenge(challenge: str, password_hash: str, iv: str) -> str:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(challenge.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(
        algorithms.AES(challenge_key(password_hash)), modes.CBC(bytes.fromhex(iv))
    ).encryptor()
    return (encryptor.update(padded) + encryptor.finalize()).hex()


def challenge_matches(
    processed_challenge: str, challenge: str, password_hash: str, iv: str
) -> bool:
    candidate = processed_challenge.strip().lower()
    # compare_digest rejects non-ASCII str input
    if not candidate.isascii():
        return False
    expected = encrypt_challenge(challenge, password_hash, iv)
    return hmac.compare_digest(expected, candidate)

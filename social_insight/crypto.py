"""
End-to-end encrypted media decryption.

Key material is expanded with HKDF-SHA256 (zero salt, 112 bytes) using a
label that depends on the media kind:

    iv          = expanded[0:16]
    cipher_key  = expanded[16:48]
    mac_key     = expanded[48:80]
    (reserved)  = expanded[80:112]

The downloaded blob is ``ciphertext || mac`` where ``mac`` is the first
10 bytes of an HMAC-SHA256 over the ciphertext and the IV. The ciphertext
is AES-256-CBC with PKCS#7 padding.
"""

import hashlib
import hmac
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

EXPANDED_KEY_LENGTH = 112
MAC_LENGTH = 10

HKDF_INFO = {
    "image": b"WhatsApp Image Keys",
    "sticker": b"WhatsApp Image Keys",
    "audio": b"WhatsApp Audio Keys",
    "video": b"WhatsApp Video Keys",
    "document": b"WhatsApp Document Keys",
}
DEFAULT_HKDF_INFO = b"WhatsApp Document Keys"


class MediaDecryptionError(Exception):
    """Raised when an encrypted media blob cannot be authenticated or decrypted."""


@dataclass(frozen=True)
class MediaKeys:
    iv: bytes
    cipher_key: bytes
    mac_key: bytes


def info_for(kind: str) -> bytes:
    return HKDF_INFO.get((kind or "").lower(), DEFAULT_HKDF_INFO)


def derive_media_keys(media_key: bytes, kind: str) -> MediaKeys:
    """Expand a media key into IV, cipher key and MAC key."""
    if not media_key:
        raise MediaDecryptionError("Empty media key")

    expanded = HKDF(
        algorithm=hashes.SHA256(),
        length=EXPANDED_KEY_LENGTH,
        salt=None,
        info=info_for(kind),
    ).derive(media_key)

    return MediaKeys(
        iv=expanded[0:16],
        cipher_key=expanded[16:48],
        mac_key=expanded[48:80],
    )


def compute_mac(keys: MediaKeys, ciphertext: bytes) -> bytes:
    """Truncated HMAC-SHA256 over ``ciphertext || iv``."""
    return hmac.new(keys.mac_key, ciphertext + keys.iv, hashlib.sha256).digest()[:MAC_LENGTH]


def compute_wire_order_mac(keys: MediaKeys, ciphertext: bytes) -> bytes:
    """Truncated HMAC-SHA256 over ``iv || ciphertext`` (WhatsApp wire format)."""
    return hmac.new(keys.mac_key, keys.iv + ciphertext, hashlib.sha256).digest()[:MAC_LENGTH]


def verify_mac(keys: MediaKeys, ciphertext: bytes, expected: bytes, accept_wire_order: bool = False) -> bool:
    """
    Check the MAC trailer in constant time.

    Only ``ciphertext || iv`` is accepted unless ``accept_wire_order`` also
    allows the ``iv || ciphertext`` form.
    """
    if hmac.compare_digest(compute_mac(keys, ciphertext), expected):
        return True
    if accept_wire_order:
        return hmac.compare_digest(compute_wire_order_mac(keys, ciphertext), expected)
    return False


def split_blob(blob: bytes) -> tuple:
    """Split a downloaded blob into ``(ciphertext, mac)``."""
    if len(blob) <= MAC_LENGTH:
        raise MediaDecryptionError(f"Encrypted blob too short: {len(blob)} bytes")
    return blob[:-MAC_LENGTH], blob[-MAC_LENGTH:]


def decrypt_media(blob: bytes, media_key: bytes, kind: str, accept_wire_order: bool = False) -> bytes:
    """
    Authenticate and decrypt an encrypted media blob.

    Raises:
        MediaDecryptionError: MAC mismatch, bad length or bad padding
    """
    keys = derive_media_keys(media_key, kind)
    ciphertext, mac = split_blob(blob)

    if not verify_mac(keys, ciphertext, mac, accept_wire_order=accept_wire_order):
        raise MediaDecryptionError("Media MAC mismatch")

    if len(ciphertext) % 16 != 0:
        raise MediaDecryptionError(f"Ciphertext length {len(ciphertext)} is not a multiple of the block size")

    decryptor = Cipher(algorithms.AES(keys.cipher_key), modes.CBC(keys.iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise MediaDecryptionError(f"Invalid padding: {e}") from e


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()

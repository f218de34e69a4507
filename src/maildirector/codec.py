"""Summary: At-rest encoding for tenant collection files.

Importance: Keeps persisted tenant data obscured when a storage secret is configured.
Alternatives: Use a dedicated secrets manager or strong encryption library.
"""

from __future__ import annotations

import base64
import hashlib
import hmac


_PREFIX = "mdx1:"


class PayloadCodec:
    """Summary: Reversible keystream codec with an integrity tag.

    Importance: Lets the persistence layer stay agnostic to how data is protected.
    Alternatives: Use AES-GCM from the cryptography package.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8")

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    def encode(self, plaintext: str) -> str:
        """Summary: Encode plaintext into a tagged, obfuscated string.

        Importance: Avoids storing tenant documents as readable JSON.
        Alternatives: Store documents in an encrypted volume.
        """

        if not self.enabled:
            return plaintext
        raw = plaintext.encode("utf-8")
        key = _keystream(self._secret, len(raw))
        obfuscated = bytes([b ^ k for b, k in zip(raw, key)])
        tag = hmac.new(self._secret, obfuscated, hashlib.sha256).digest()[:16]
        return _PREFIX + base64.urlsafe_b64encode(tag + obfuscated).decode("utf-8")

    def decode(self, payload: str) -> str:
        """Summary: Decode a stored payload back to plaintext.

        Importance: Reads both encoded files and plaintext files written before a secret was set.
        Alternatives: Require a migration whenever the secret changes.
        """

        if not payload.startswith(_PREFIX):
            return payload
        if not self.enabled:
            raise ValueError("Encoded payload found but no storage secret is configured")
        blob = base64.urlsafe_b64decode(payload[len(_PREFIX):].encode("utf-8"))
        tag, obfuscated = blob[:16], blob[16:]
        expected = hmac.new(self._secret, obfuscated, hashlib.sha256).digest()[:16]
        if not hmac.compare_digest(tag, expected):
            raise ValueError("Payload integrity check failed")
        key = _keystream(self._secret, len(obfuscated))
        return bytes([b ^ k for b, k in zip(obfuscated, key)]).decode("utf-8")


def _keystream(secret: bytes, length: int) -> bytes:
    """Derive a deterministic keystream from a secret."""

    output = b""
    counter = 0
    while len(output) < length:
        counter_bytes = counter.to_bytes(4, "big")
        output += hashlib.sha256(secret + counter_bytes).digest()
        counter += 1
    return output[:length]

"""
Core token logic.

A token is the hex encoding of:

    8-byte big-endian user id || HMAC-SHA256(secret_key, those 8 bytes)

so the id can be read back without any server-side session state, and a
client cannot forge someone else's id without the secret key.
"""

import hashlib
import hmac

ID_BYTES = 8
MAC_BYTES = hashlib.sha256().digest_size


class TokenBuilder:
    """Signs user ids into opaque tokens and verifies them."""

    def __init__(self, secret_key: str) -> None:
        self._key = secret_key.encode("utf-8")

    def create_token(self, user_id: str) -> str:
        """
        Sign a numeric user id.

        Args:
            user_id (str): Decimal id as returned by the user repository.

        Returns:
            str: Hex token.

        Raises:
            ValueError: If the id is not an unsigned 64-bit integer.
        """
        number = int(user_id)
        if number < 0 or number >= 1 << 64:
            raise ValueError(f"user id out of range: {user_id}")
        raw = number.to_bytes(ID_BYTES, "big")
        return (raw + self._mac(raw)).hex()

    def is_token_valid(self, token: str) -> bool:
        """True when `token` decodes and its signature matches."""
        raw = self._decode(token)
        if raw is None:
            return False
        return hmac.compare_digest(raw[ID_BYTES:], self._mac(raw[:ID_BYTES]))

    def get_id_from_token(self, token: str) -> str:
        """
        Return the user id carried by a valid token.

        Raises:
            ValueError: If the token is malformed or its signature does not match.
        """
        if not self.is_token_valid(token):
            raise ValueError("invalid user token")
        raw = self._decode(token)
        return str(int.from_bytes(raw[:ID_BYTES], "big"))

    def _mac(self, raw: bytes) -> bytes:
        return hmac.new(self._key, raw, hashlib.sha256).digest()

    @staticmethod
    def _decode(token: str):
        if not isinstance(token, str):
            return None
        try:
            raw = bytes.fromhex(token)
        except ValueError:
            return None
        if len(raw) != ID_BYTES + MAC_BYTES:
            return None
        return raw

"""
Activation credentials.

A credential is the hex HMAC-SHA256 of ``identifier|plan`` under the server's
activation secret. It carries no expiry: revocation is enforced by a live
entitlement check, not by the token.
"""

import hashlib
import hmac


class ActivationSigner:
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("activation secret must be non-empty")
        self._key = secret.encode("utf-8")

    def sign(self, identifier: str, plan: str) -> str:
        message = f"{identifier}|{plan}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def verify(self, identifier: str, plan: str, token: object) -> bool:
        """Constant-time check of a presented token. Malformed input is False, never an exception."""
        if not isinstance(token, str) or not isinstance(identifier, str) or not isinstance(plan, str):
            return False
        try:
            presented = bytes.fromhex(token)
        except ValueError:
            return False
        expected = bytes.fromhex(self.sign(identifier, plan))
        if len(presented) != len(expected):
            return False
        return hmac.compare_digest(presented, expected)

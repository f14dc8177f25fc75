"""Webhook signature schemes for the two platforms.

- Platform A: hex HMAC-SHA256 of the raw body, optionally prefixed "sha256=".
- Platform B: base64 HMAC-SHA256 of notification URL + raw body.

Comparisons use ``hmac.compare_digest``. A missing secret or signature never
verifies.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class SignatureScheme(ABC):
    """Signs and verifies webhook bodies for one platform."""

    def __init__(self, secret: str) -> None:
        self.secret = secret

    @abstractmethod
    def sign(self, body: bytes, **context: Any) -> str:
        """Compute the signature the platform would send for ``body``."""
        ...

    def verify(self, signature: str | None, body: bytes, **context: Any) -> bool:
        if not self.secret or not signature:
            return False
        expected = self.sign(body, **context)
        is_valid = hmac.compare_digest(self._normalize(signature), expected)
        if not is_valid:
            logger.warning("webhook.signature_mismatch", scheme=type(self).__name__)
        return is_valid

    def _normalize(self, signature: str) -> str:
        return signature.strip()


class HexBodySignature(SignatureScheme):
    """HMAC-SHA256 over the raw body, hex encoded."""

    def sign(self, body: bytes, **context: Any) -> str:
        return hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()

    def _normalize(self, signature: str) -> str:
        signature = signature.strip()
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        return signature.lower()


class UrlBodyBase64Signature(SignatureScheme):
    """HMAC-SHA256 over notification URL + raw body, base64 encoded.

    Args:
        secret: Signature key.
        notification_url: Default URL the platform delivers to; a
            ``notification_url`` context value overrides it per call.
    """

    def __init__(self, secret: str, notification_url: str = "") -> None:
        super().__init__(secret)
        self.notification_url = notification_url

    def sign(self, body: bytes, **context: Any) -> str:
        url = context.get("notification_url") or self.notification_url
        digest = hmac.new(self.secret.encode(), url.encode() + body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

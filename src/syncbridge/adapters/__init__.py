"""Platform adapter implementations.

Provides the concrete adapters behind the engine's PlatformAdapter interface:
- HttpPlatformAdapter: httpx client for a platform's canonical-JSON gateway
- HexBodySignature: Platform A webhook signatures (hex HMAC-SHA256 of body)
- UrlBodyBase64Signature: Platform B webhook signatures (base64 HMAC-SHA256 of URL + body)
"""

from src.syncbridge.adapters.http import HttpPlatformAdapter, classify_response
from src.syncbridge.adapters.signatures import (
    HexBodySignature,
    SignatureScheme,
    UrlBodyBase64Signature,
)

__all__ = [
    "HttpPlatformAdapter",
    "classify_response",
    "SignatureScheme",
    "HexBodySignature",
    "UrlBodyBase64Signature",
]

from __future__ import annotations

import base64
import hashlib
import hmac
import random
import time


def generate_nonce() -> str:
    return str(random.randint(10_000_000, 99_999_999))


def current_timestamp() -> int:
    return int(time.time())


def generate_signature(
    secret_id: str,
    secret_key: str,
    method: str,
    uri: str,
    timestamp: int,
    nonce: str,
    body: str,
) -> str:
    """Sign a meeting API request.

    The signed text is ``METHOD\\nX-TC-Key=..&X-TC-Nonce=..&X-TC-Timestamp=..\\nURI\\nBODY``
    where ``URI`` includes the query string. The HMAC-SHA256 digest is
    hex-encoded and the hex text is then base64-encoded.
    """
    header_string = f"X-TC-Key={secret_id}&X-TC-Nonce={nonce}&X-TC-Timestamp={timestamp}"
    content = f"{method}\n{header_string}\n{uri}\n{body}"
    digest = hmac.new(secret_key.encode("utf-8"), content.encode("utf-8"), hashlib.sha256).hexdigest()
    return base64.b64encode(digest.encode("ascii")).decode("ascii")

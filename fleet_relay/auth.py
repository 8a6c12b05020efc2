"""Socket and HTTP credential checks."""

import hmac
from typing import Optional

from fleet_relay.config import DEFAULT_DEV_KEY


def _matches(given: Optional[str], expected: str) -> bool:
    if not given:
        return False
    return hmac.compare_digest(given.encode(), expected.encode())


def socket_allowed(api_key: str, token: Optional[str]) -> bool:
    """A socket may connect when the relay still runs on the dev key, or when its token matches."""
    if api_key == DEFAULT_DEV_KEY:
        return True
    return _matches(token, api_key)


def api_key_valid(api_key: str, given: Optional[str]) -> bool:
    return _matches(given, api_key)

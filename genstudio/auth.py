"""
Per-request provider credential.

The key is forwarded to the generation API and never persisted.
"""
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .responses import unauthorized

bearer_scheme = HTTPBearer(auto_error=False)


def get_optional_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """Read the key from ``X-API-Key`` or ``Authorization: Bearer``."""
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    if credentials and credentials.credentials:
        return credentials.credentials.strip() or None
    return None


def get_api_key(api_key: Optional[str] = Depends(get_optional_api_key)) -> str:
    """Require a provider key (raises 401 if missing)."""
    if not api_key:
        unauthorized("API key required (X-API-Key header or Bearer token)")
    return api_key

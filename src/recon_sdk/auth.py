"""API key authentication and per-client rate limiting."""

import os
import hashlib
import secrets
import logging

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Limits on the endpoints that start runs, per client
RUN_RATE_LIMIT = os.getenv("RECONCILIATION_RATE_LIMIT", "5/5 minutes")
PREMIUM_RATE_LIMIT = os.getenv("PREMIUM_RECONCILIATION_RATE_LIMIT", "2/15 minutes")


def client_key(request: Request) -> str:
    """Rate limit key for a request.

    Clients are identified by a fingerprint of their bearer token so that
    callers behind one address do not share a budget. Requests without a
    token fall back to the remote address.
    """
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        return "key:" + hashlib.sha256(token.encode()).hexdigest()[:16]
    return get_remote_address(request)


limiter = Limiter(key_func=client_key)


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the API key from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: 500 if API_KEY is not configured, 401 if the key does not match.
    """
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Rejected reconciliation request with an invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials

"""
Security utilities: API key authentication and upload hygiene
"""
import re
import hmac
import asyncio
import random
from typing import Optional
from fastapi import HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from logger import get_logger

logger = get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(name: str) -> str:
    """Replace every character outside [a-zA-Z0-9._-] with an underscore"""
    return _UNSAFE_FILENAME_CHARS.sub("_", name or "")


def storage_key_for(document_id: str, filename: str) -> str:
    """Key under which the raw upload is stored"""
    return f"{document_id}_{sanitize_filename(filename)}"


class APIKeyAuth(HTTPBearer):
    """API Key authentication"""
    def __init__(self, api_key: Optional[str] = None):
        super().__init__(auto_error=True)
        self.api_key = api_key

    async def __call__(self, request: Request) -> Optional[HTTPAuthorizationCredentials]:
        if not self.api_key:
            return None

        credentials = await super().__call__(request)

        # Use constant-time comparison to prevent timing attacks
        if not hmac.compare_digest(credentials.credentials, self.api_key):
            await asyncio.sleep(random.uniform(0.01, 0.05))
            logger.warning(f"Rejected API key from {request.client.host if request.client else 'unknown'}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key"
            )
        return credentials

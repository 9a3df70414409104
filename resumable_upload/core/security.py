import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from jwt import InvalidTokenError
from resumable_upload.core.config import settings
from typing import Any, Dict

logger = logging.getLogger(__name__)

security = HTTPBearer()


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(
        token,
        settings.MAIN_SERVICE_JWT_PUBLIC_KEY,
        algorithms=[settings.JWT_ALGORITHM],
        audience=settings.EXPECTED_JWT_AUDIENCE,
        issuer=settings.EXPECTED_JWT_ISSUER,
    )


def get_current_user_id(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """The token's `sub` claim; it owns every session it opens."""
    try:
        payload = decode_token(credentials.credentials)
    except InvalidTokenError as e:
        logger.info(f"Rejected token: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token: missing sub.")
    return str(user_id)

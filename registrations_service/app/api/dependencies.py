"""
API dependencies for Registrations Service.
Handles authentication, payment channel detection, and common dependencies.
"""

import re
from typing import Dict, Any
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import logging

from app.core.config import config
from app.db.database import db_manager
from app.db.redis_client import redis_manager
from app.models.registration import PaymentMethod

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer()

IN_APP_BROWSER = re.compile(r"MicroMessenger", re.IGNORECASE)


class AuthenticationError(Exception):
    """Custom exception for authentication errors."""
    pass


async def get_token_payload(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """
    Decode and validate the bearer JWT.

    Args:
        credentials: HTTP Bearer token credentials

    Returns:
        Token claims

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        jwt_secret = await config.get_jwt_secret()
        jwt_algorithm = await config.get_jwt_algorithm()

        payload = jwt.decode(
            credentials.credentials,
            jwt_secret,
            algorithms=[jwt_algorithm]
        )

        if not payload.get("user_id"):
            raise AuthenticationError("Invalid token: missing user_id")

        return payload

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    except Exception as e:
        logger.error(f"Authentication error: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user_id(payload: Dict[str, Any] = Depends(get_token_payload)) -> int:
    """User ID from the JWT."""
    try:
        return int(payload["user_id"])
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: malformed user_id",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_user_agent(request: Request) -> str:
    """
    Extract user agent from request.

    Args:
        request: FastAPI request object

    Returns:
        User agent string
    """
    return request.headers.get("User-Agent", "unknown")


def resolve_payment_method(user_agent: str) -> PaymentMethod:
    """In-app payment inside the in-app browser, scannable code everywhere else."""
    if user_agent and IN_APP_BROWSER.search(user_agent):
        return PaymentMethod.JSAPI
    return PaymentMethod.NATIVE


async def get_current_user(
    payload: Dict[str, Any] = Depends(get_token_payload),
    user_id: int = Depends(get_current_user_id),
    user_agent: str = Depends(get_user_agent)
) -> Dict[str, Any]:
    """
    Get complete authenticated user information.

    Returns:
        Dictionary with user claims and request metadata
    """
    return {
        "user_id": user_id,
        "user_role": payload.get("role") or "user",
        "payment_openid": payload.get("payment_openid"),
        "user_agent": user_agent,
        "payment_method": resolve_payment_method(user_agent),
    }


async def check_service_health() -> Dict[str, Any]:
    """
    Check the health of all service dependencies.

    Returns:
        Dictionary with health status of all components
    """
    health_status = {
        "database": "unknown",
        "redis": "unknown",
        "overall": "unknown"
    }

    database_healthy = await db_manager.health_check()
    health_status["database"] = "healthy" if database_healthy else "unhealthy"

    try:
        redis_healthy = await redis_manager.health_check()
        health_status["redis"] = "healthy" if redis_healthy else "unhealthy"
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        health_status["redis"] = "unhealthy"

    if health_status["database"] == "healthy" and health_status["redis"] == "healthy":
        health_status["overall"] = "healthy"
    else:
        health_status["overall"] = "unhealthy"

    return health_status

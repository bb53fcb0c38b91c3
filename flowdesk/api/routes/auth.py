"""POST /v1/auth/token — Exchange an API key for a JWT."""

import logging
from fastapi import APIRouter, HTTPException, Request
from flowdesk.api.schemas import TokenRequest, TokenResponse
from flowdesk.auth.jwt import JWTManager
from flowdesk.config import config

logger = logging.getLogger(__name__)
router = APIRouter(tags=["auth"])


@router.post("/auth/token", response_model=TokenResponse)
async def create_token(request: Request, body: TokenRequest):
    jwt_manager = getattr(request.app.state, "jwt_manager", None) or JWTManager()
    user_id = jwt_manager.user_for_api_key(body.api_key)
    if user_id is None:
        logger.info("[auth] Rejected API key exchange")
        raise HTTPException(status_code=401, detail="Invalid API key")

    token = await jwt_manager.create_token(user_id)
    return TokenResponse(
        token=token,
        user_id=user_id,
        expires_in=config.jwt_expiry_minutes * 60,
    )

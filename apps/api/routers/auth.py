"""
Authentication router: exchange an identity-provider token for an API session.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.credits import ensure_account, get_balance
from services.errors import AuthError
from services.session_token import create_session_token, decode_identity_token

router = APIRouter()


class SessionExchangeRequest(BaseModel):
    access_token: str
    name: Optional[str] = None


class SessionExchangeResponse(BaseModel):
    user_id: str
    email: str
    session_token: str
    session_expires_at: int
    credits_remaining: int


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    credits_remaining: int = 0


@router.post("/session", response_model=SessionExchangeResponse)
async def exchange_session(
    request: SessionExchangeRequest,
    _rate_limit: None = Depends(rate_limit("auth_session", limit=60, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    """
    Validate an identity token, upsert the user, and issue a session token.
    """
    try:
        claims = decode_identity_token(request.access_token)
    except ValueError as exc:
        raise AuthError(str(exc)) from exc

    user_id = str(claims["sub"]).strip()
    email = str(claims["email"]).strip()
    metadata = claims.get("user_metadata") or {}
    name = request.name or metadata.get("full_name") or metadata.get("name")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        user = User(id=user_id, email=email, name=name)
        db.add(user)
    else:
        user.email = email
        if name:
            user.name = name
    await db.commit()

    balance = await ensure_account(user_id, db)
    session = create_session_token(user_id, email)
    return SessionExchangeResponse(
        user_id=user_id,
        email=email,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
        credits_remaining=balance,
    )


@router.get("/me", response_model=CurrentUserResponse)
async def get_me(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current user profile and credit balance."""
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        credits_remaining=await get_balance(user.id, db),
    )

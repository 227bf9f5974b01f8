"""
Authentication router: registers verified identities and returns the current user.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.entitlement import Entitlement
from models.user import ROLE_CUSTOMER, User
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.entitlements import create_entitlement, serialize_entitlement

router = APIRouter()


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=500)


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    role: str
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    entitlement: Optional[dict] = None


def _to_response(user: User, entitlement: Optional[Entitlement]) -> CurrentUserResponse:
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        role=user.role,
        name=user.name,
        phone=user.phone,
        address=user.address,
        entitlement=serialize_entitlement(entitlement) if entitlement else None,
    )


async def _load_entitlement(db: AsyncSession, user_id: str) -> Optional[Entitlement]:
    result = await db.execute(select(Entitlement).where(Entitlement.customer_id == user_id))
    return result.scalar_one_or_none()


@router.post("/register", response_model=CurrentUserResponse)
async def register(
    request: RegisterRequest,
    _rate_limit: None = Depends(rate_limit("auth_register", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Mirror a verified identity locally. Customers get a fresh entitlement:
    the full annual quota, expiring one year from today.
    """
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if user:
        return _to_response(user, await _load_entitlement(db, user.id))

    email_taken = await db.execute(select(User.id).where(User.email == request.email.strip().lower()))
    if email_taken.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="Email is already registered to another account.")

    user = User(
        id=auth.user_id,
        email=request.email.strip().lower(),
        name=request.name,
        phone=request.phone,
        address=request.address,
        role=auth.role,
    )
    db.add(user)
    await db.flush()

    entitlement = None
    if user.role == ROLE_CUSTOMER:
        entitlement = await create_entitlement(db, user.id)
    await db.commit()
    return _to_response(user, entitlement)


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get current user profile and entitlement."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return _to_response(user, await _load_entitlement(db, user.id))

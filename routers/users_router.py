"""
User registration route. Users authenticate with an external identity
provider; this endpoint records them locally the first time they appear.
"""

import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from backend.utils.responses import success_response
from crud.user import UserRepository
from database import get_db

logger = logging.getLogger(__name__)

users_router = APIRouter(prefix="/api", tags=["users"])


class RegisterUserRequest(BaseModel):
    uid: str
    email: str
    username: Optional[str] = None


def validate_email(email: str) -> bool:
    pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    return re.match(pattern, email) is not None


@users_router.post("/register-user")
async def register_user(request: RegisterUserRequest, db: AsyncSession = Depends(get_db)):
    """
    Idempotent: calling again with the same uid returns the existing user
    with its entitlement state untouched.
    """
    uid = request.uid.strip()
    if not uid:
        raise HTTPException(status_code=400, detail="uid is required")
    if not validate_email(request.email):
        raise HTTPException(status_code=400, detail="Invalid email format")

    user_repo = UserRepository(db)
    user, created = await user_repo.get_or_create_user(uid, request.email, request.username)
    if created:
        logger.info(f"Registered user {user.id} for uid {uid}")

    return success_response(
        {
            "userId": user.id,
            "uid": user.external_auth_id,
            "email": user.email,
            "username": user.username,
            "created": created,
        },
        message="User registered" if created else "User already registered",
        status=201 if created else 200,
    )

import logging
from datetime import timedelta
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, MIN_PASSWORD_LENGTH, SECRET_KEY
from database import create_document, get_db, update_document
from schemas import (
    ChangePasswordPayload,
    ForgotPasswordPayload,
    LoginPayload,
    ProfileUpdate,
    RegisterPayload,
    User,
)
from stats import platform_stats
from utils import serialize_doc, success, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

# ===== Security / Auth Setup =====
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


class TokenPayload(BaseModel):
    sub: str
    exp: int


# Helpers

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def generate_token(user_id) -> str:
    return create_access_token({"sub": str(user_id)})


def public_profile(user: dict) -> dict:
    user = dict(user)
    user.pop("password", None)
    return serialize_doc(user)


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> dict:
    """Resolve the bearer token to the stored user document (password included, never serialized)."""
    if not token:
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")
    credentials_exception = HTTPException(status_code=401, detail="Invalid token.")
    try:
        payload = TokenPayload(**jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM]))
        user_id = ObjectId(payload.sub)
    except (JWTError, InvalidId, ValueError):
        raise credentials_exception
    user = db["user"].find_one({"_id": user_id})
    if user is None:
        raise credentials_exception
    if not user.get("isActive", True):
        raise HTTPException(status_code=401, detail="Account is deactivated.")
    return user


def restrict_to(*roles: str):
    """Dependency factory allowing only the given userType values through."""

    def checker(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("userType") not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Required role: {' or '.join(roles)}",
            )
        return current_user

    return checker


def update_stats(db: Database, user_id: ObjectId, donations: int, meals: float):
    db["user"].update_one(
        {"_id": user_id},
        {"$inc": {"stats.totalDonations": donations, "stats.totalMeals": meals}, "$set": {"updatedAt": utcnow()}},
    )


# ===== Auth Endpoints =====

@router.post("/register", status_code=201)
def register(payload: RegisterPayload, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User with this email already exists")

    user_data = payload.model_dump()
    user_data["email"] = email
    user_data["password"] = get_password_hash(payload.password)
    try:
        user = create_document(db, "user", User(**user_data))
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="User with this email already exists")

    logger.info("Registered %s user %s", user["userType"], user["_id"])
    return success(
        {"user": public_profile(user), "token": generate_token(user["_id"])},
        message="User registered successfully",
    )


@router.post("/login")
def login(payload: LoginPayload, db: Database = Depends(get_db)):
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="Please provide email and password")

    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        logger.warning("Login failed for unknown email")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("isActive", True):
        raise HTTPException(status_code=401, detail="Account is deactivated. Please contact support.")
    if not verify_password(payload.password, user.get("password", "")):
        logger.warning("Login failed for user %s", user["_id"])
        raise HTTPException(status_code=401, detail="Invalid credentials")

    user = update_document(db, "user", {"_id": user["_id"]}, {"lastLogin": utcnow()})
    return success(
        {"user": public_profile(user), "token": generate_token(user["_id"])},
        message="Login successful",
    )


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordPayload, db: Database = Depends(get_db)):
    if not payload.email:
        raise HTTPException(status_code=400, detail="Please provide email address")
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        raise HTTPException(status_code=404, detail="User with this email not found")

    message = "Password reset instructions sent to your email"
    if not config.EXPOSE_RESET_TOKEN:
        return success(message=message)
    logger.warning("Returning reset token for user %s in the response", user["_id"])
    return success({"resetToken": generate_token(user["_id"])}, message=message)


@router.get("/stats")
def get_platform_stats(db: Database = Depends(get_db)):
    return success(platform_stats(db))


@router.get("/me")
def read_users_me(current_user: dict = Depends(get_current_user)):
    return success({"user": public_profile(current_user)})


@router.put("/profile")
def update_profile(
    payload: ProfileUpdate,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    updates = payload.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
    user = update_document(db, "user", {"_id": current_user["_id"]}, updates)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return success({"user": public_profile(user)}, message="Profile updated successfully")


@router.put("/change-password")
def change_password(
    payload: ChangePasswordPayload,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if not payload.current_password or not payload.new_password:
        raise HTTPException(status_code=400, detail="Please provide current and new password")
    if len(payload.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"New password must be at least {MIN_PASSWORD_LENGTH} characters long",
        )
    if not verify_password(payload.current_password, current_user.get("password", "")):
        raise HTTPException(status_code=401, detail="Current password is incorrect")

    update_document(db, "user", {"_id": current_user["_id"]}, {"password": get_password_hash(payload.new_password)})
    return success(message="Password changed successfully")


@router.post("/logout")
def logout(current_user: dict = Depends(get_current_user)):
    # Tokens are stateless; the client drops its copy
    return success(message="Logged out successfully")


@router.get("/user-stats")
def get_user_stats(current_user: dict = Depends(get_current_user)):
    return success({"stats": current_user.get("stats", {"totalDonations": 0, "totalMeals": 0})})

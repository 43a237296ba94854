import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from src.claims_api import db
from src.claims_api.auth_utils import (
    USER_COLUMNS,
    create_user_access_token,
    get_current_user,
    hash_password,
    hash_reset_token,
    new_reset_token,
    verify_password,
)
from src.claims_api.common import bad_request, conflict
from src.claims_api.schemas import (
    APIMessage,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    User,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


def new_profile_metadata() -> Dict[str, Any]:
    return {"registered_at": datetime.now(timezone.utc).isoformat(), "status": "active"}


# PUBLIC_INTERFACE
def ensure_email_available(email: str) -> None:
    """Raise 409 when a user with this email exists."""
    if db.fetch_one("SELECT id FROM users WHERE email=%s", [email.lower()]):
        raise conflict("User already exists")


# PUBLIC_INTERFACE
def create_account(
    cur,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: str = "user",
    profile_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Insert a user and its profile with the given transaction cursor; returns the user row."""
    cur.execute(
        f"""
        INSERT INTO users (email, password_hash, first_name, last_name, role, is_active)
        VALUES (%s, %s, %s, %s, %s, TRUE)
        RETURNING {USER_COLUMNS}
        """,
        [email.lower(), hash_password(password), first_name, last_name, role],
    )
    user = dict(cur.fetchone())
    data = {"name": f"{first_name} {last_name}", **(profile_data or {})}
    cur.execute(
        "INSERT INTO user_profiles (user_id, data, metadata) VALUES (%s, %s, %s)",
        [user["id"], db.as_json(data), db.as_json(new_profile_metadata())],
    )
    return user


def _token_response(user: Dict[str, Any]) -> TokenResponse:
    token = create_user_access_token(int(user["id"]), user["role"], user["email"])
    return TokenResponse(
        access_token=token,
        user_id=user["id"],
        email=user["email"],
        role=user["role"],
        first_name=user["first_name"],
        last_name=user["last_name"],
    )


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED, summary="Register")
def register(payload: RegisterRequest) -> TokenResponse:
    """Create a new user account (with an empty profile) and return an access token."""
    ensure_email_available(payload.email)
    with db.transaction() as cur:
        user = create_account(cur, payload.email, payload.password, payload.first_name, payload.last_name)
    logger.info("Registered user %s", user["id"])
    return _token_response(user)


@router.post("/login", response_model=TokenResponse, summary="Login")
def login(payload: LoginRequest) -> TokenResponse:
    """Authenticate user and return an access token."""
    user = db.fetch_one(
        "SELECT id, email, first_name, last_name, role, is_active, password_hash FROM users WHERE email=%s",
        [payload.email.lower()],
    )
    if not user or not user.get("is_active"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not verify_password(payload.password, user["password_hash"]):
        logger.warning("Failed login for user %s", user["id"])
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    db.execute("UPDATE users SET last_login_at=NOW() WHERE id=%s", [user["id"]])
    return _token_response(user)


@router.get("/me", response_model=User, summary="Get current user")
def me(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Return the current authenticated user."""
    return user


@router.post("/logout", response_model=APIMessage, summary="Logout")
def logout(_: Dict[str, Any] = Depends(get_current_user)) -> APIMessage:
    """Tokens are stateless; the client discards its token."""
    return APIMessage(message="Logged out successfully")


@router.put("/change-password", response_model=APIMessage, summary="Change password")
def change_password(payload: ChangePasswordRequest, user: Dict[str, Any] = Depends(get_current_user)) -> APIMessage:
    """Change the current user's password after checking the current one."""
    row = db.fetch_one("SELECT password_hash FROM users WHERE id=%s", [user["id"]])
    if not row or not verify_password(payload.current_password, row["password_hash"]):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Current password is incorrect")

    db.execute(
        "UPDATE users SET password_hash=%s, password_changed_at=NOW(), updated_at=NOW() WHERE id=%s",
        [hash_password(payload.new_password), user["id"]],
    )
    logger.info("User %s changed password", user["id"])
    return APIMessage(message="Password changed successfully")


@router.post("/forgot-password", response_model=APIMessage, summary="Request a password reset")
def forgot_password(payload: ForgotPasswordRequest) -> APIMessage:
    """
    Issue a reset token for a registered email.

    The response is the same whether or not the email is known. There is no
    mail delivery; the token is written to the log for the operator.
    """
    user = db.fetch_one("SELECT id FROM users WHERE email=%s AND is_active", [payload.email.lower()])
    if user:
        token, digest, expires_at = new_reset_token()
        db.execute(
            "UPDATE users SET reset_token_hash=%s, reset_token_expires_at=%s WHERE id=%s",
            [digest, expires_at, user["id"]],
        )
        logger.info("Password reset token for user %s: %s (expires %s)", user["id"], token, expires_at.isoformat())
    return APIMessage(message="If your email is registered, you will receive a password reset link")


@router.post("/reset-password", response_model=APIMessage, summary="Reset password with a token")
def reset_password(payload: ResetPasswordRequest) -> APIMessage:
    """Set a new password using a reset token; the token is single use."""
    user = db.fetch_one(
        "SELECT id, reset_token_expires_at FROM users WHERE reset_token_hash=%s",
        [hash_reset_token(payload.token)],
    )
    if not user:
        raise bad_request("Invalid or expired token")
    expires_at = user.get("reset_token_expires_at")
    if expires_at is None or expires_at < datetime.now(timezone.utc):
        raise bad_request("Reset token has expired")

    db.execute(
        """
        UPDATE users
        SET password_hash=%s, reset_token_hash=NULL, reset_token_expires_at=NULL,
            password_changed_at=NOW(), updated_at=NOW()
        WHERE id=%s
        """,
        [hash_password(payload.new_password), user["id"]],
    )
    logger.info("User %s reset password", user["id"])
    return APIMessage(message="Password has been reset successfully")

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from src.claims_api import auth, db
from src.claims_api.auth_utils import get_current_user, require_admin
from src.claims_api.common import Page, not_found, page_params, paginated
from src.claims_api.schemas import (
    AdminUserProfileCreate,
    AdminUserProfileUpdate,
    APIMessage,
    ProfileSettings,
    ProfileSettingsResponse,
    ProfileSettingsUpdate,
    UserProfile,
    UserProfileResponse,
    UserProfileUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/user-profiles", tags=["User Profiles"], dependencies=[Depends(get_current_user)])

_SELECT = """
    SELECT p.id, p.user_id, p.data, p.metadata, p.created_at, p.updated_at,
           u.email, u.role, u.first_name, u.last_name
    FROM user_profiles p
    JOIN users u ON u.id = p.user_id
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_profile(profile_id: int) -> Dict[str, Any]:
    profile = db.fetch_one(f"{_SELECT} WHERE p.id=%s", [profile_id])
    if not profile:
        raise not_found("User profile")
    return profile


def _own_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    """The caller's profile; accounts created before profiles existed get an empty one."""
    profile = db.fetch_one(f"{_SELECT} WHERE p.user_id=%s", [user["id"]])
    if profile:
        return profile

    db.execute(
        """
        INSERT INTO user_profiles (user_id, data, metadata)
        VALUES (%s, %s, %s)
        ON CONFLICT (user_id) DO NOTHING
        """,
        [
            user["id"],
            db.as_json({"name": f"{user['first_name']} {user['last_name']}"}),
            db.as_json(auth.new_profile_metadata()),
        ],
    )
    logger.info("Created missing profile for user %s", user["id"])
    profile = db.fetch_one(f"{_SELECT} WHERE p.user_id=%s", [user["id"]])
    if not profile:
        raise not_found("User profile")
    return profile


def _settings(metadata: Optional[Dict[str, Any]]) -> ProfileSettings:
    stored = metadata or {}
    return ProfileSettings(**{k: v for k, v in stored.items() if k in ProfileSettings.model_fields})


def _save(profile_id: int, data: Dict[str, Any], metadata: Dict[str, Any]) -> None:
    db.execute(
        "UPDATE user_profiles SET data=%s, metadata=%s, updated_at=NOW() WHERE id=%s",
        [db.as_json(data), db.as_json(metadata), profile_id],
    )


# =========================
# Current user
# =========================

@router.get("/me", response_model=UserProfile, summary="Get my profile")
def get_my_profile(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Return the caller's profile joined with their account details."""
    return _own_profile(user)


@router.put("/me", response_model=UserProfileResponse, summary="Update my profile")
def update_my_profile(payload: UserProfileUpdate, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Merge `data` (and `name`) into the stored profile data."""
    profile = _own_profile(user)
    data = {**(profile.get("data") or {}), **(payload.data or {})}
    if payload.name is not None:
        data["name"] = payload.name
    metadata = {**(profile.get("metadata") or {}), "last_updated": _now()}

    _save(profile["id"], data, metadata)
    return {"message": "User profile updated successfully", "user": _load_profile(profile["id"])}


@router.delete("/me", response_model=APIMessage, summary="Delete my account")
def delete_my_account(user: Dict[str, Any] = Depends(get_current_user)) -> APIMessage:
    """Delete the caller's account; the profile goes with it."""
    if db.execute("DELETE FROM users WHERE id=%s", [user["id"]]) == 0:
        raise not_found("User")
    logger.info("User %s deleted their account", user["id"])
    return APIMessage(message="Account deleted successfully")


@router.get("/me/settings", response_model=ProfileSettings, summary="Get my settings")
def get_my_settings(user: Dict[str, Any] = Depends(get_current_user)) -> ProfileSettings:
    """Notification, theme, language and timezone settings with defaults filled in."""
    return _settings(_own_profile(user).get("metadata"))


@router.put("/me/settings", response_model=ProfileSettingsResponse, summary="Update my settings")
def update_my_settings(
    payload: ProfileSettingsUpdate,
    user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    """Only the given settings change."""
    profile = _own_profile(user)
    metadata = {
        **(profile.get("metadata") or {}),
        **payload.model_dump(exclude_none=True),
        "settings_updated_at": _now(),
    }
    _save(profile["id"], profile.get("data") or {}, metadata)
    return {"message": "Profile settings updated successfully", "settings": _settings(metadata)}


# Password management under the profile namespace shares the /auth handlers.
router.add_api_route(
    "/me/change-password", auth.change_password, methods=["POST"], response_model=APIMessage,
    summary="Change my password",
)
router.add_api_route(
    "/me/request-reset", auth.forgot_password, methods=["POST"], response_model=APIMessage,
    summary="Request a password reset",
)
router.add_api_route(
    "/me/reset-password", auth.reset_password, methods=["POST"], response_model=APIMessage,
    summary="Reset password with a token",
)


# =========================
# Admin
# =========================

@router.get("", summary="List user profiles")
def list_profiles(
    search: Optional[str] = Query(None, description="Substring of email or name"),
    page: Page = Depends(page_params),
    _: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    """Admin: list profiles, newest first."""
    where_sql = ""
    params: List[Any] = []
    if search:
        where_sql = "WHERE u.email ILIKE %s OR u.first_name ILIKE %s OR u.last_name ILIKE %s"
        params.extend([f"%{search}%"] * 3)

    profiles = db.fetch_all(
        f"{_SELECT} {where_sql} ORDER BY p.created_at DESC LIMIT %s OFFSET %s",
        params + [page.limit, page.offset],
    )
    total = db.fetch_value(
        f"SELECT COUNT(*) AS count FROM user_profiles p JOIN users u ON u.id = p.user_id {where_sql}", params
    )
    return paginated(profiles, total or 0, page)


@router.get("/{profile_id}", response_model=UserProfile, summary="Get user profile")
def get_profile(profile_id: int, _: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    """Admin: get any profile by id."""
    return _load_profile(profile_id)


@router.post("", response_model=UserProfileResponse, status_code=status.HTTP_201_CREATED, summary="Create user")
def create_profile(payload: AdminUserProfileCreate, _: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    """Admin: create an account with the given role together with its profile."""
    auth.ensure_email_available(payload.email)
    with db.transaction() as cur:
        user = auth.create_account(
            cur,
            payload.email,
            payload.password,
            payload.first_name,
            payload.last_name,
            role=payload.role.value,
            profile_data=payload.data,
        )
    logger.info("Admin created user %s", user["id"])
    profile = db.fetch_one(f"{_SELECT} WHERE p.user_id=%s", [user["id"]])
    return {"message": "User profile created successfully", "user": profile}


@router.put("/{profile_id}", response_model=UserProfileResponse, summary="Update user profile")
def update_profile(
    profile_id: int,
    payload: AdminUserProfileUpdate,
    _: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    """Admin: change the account role and merge profile data."""
    profile = _load_profile(profile_id)
    data = {**(profile.get("data") or {}), **(payload.data or {})}
    metadata = {**(profile.get("metadata") or {}), "last_updated": _now()}

    with db.transaction() as cur:
        if payload.role is not None:
            cur.execute(
                "UPDATE users SET role=%s, updated_at=NOW() WHERE id=%s",
                [payload.role.value, profile["user_id"]],
            )
        cur.execute(
            "UPDATE user_profiles SET data=%s, metadata=%s, updated_at=NOW() WHERE id=%s",
            [db.as_json(data), db.as_json(metadata), profile_id],
        )
    return {"message": "User profile updated successfully", "user": _load_profile(profile_id)}


@router.delete("/{profile_id}", response_model=APIMessage, summary="Delete user profile")
def delete_profile(profile_id: int, _: Dict[str, Any] = Depends(require_admin)) -> APIMessage:
    """Admin: delete the profile's account; the profile goes with it."""
    profile = _load_profile(profile_id)
    db.execute("DELETE FROM users WHERE id=%s", [profile["user_id"]])
    logger.info("Deleted user %s (profile %s)", profile["user_id"], profile_id)
    return APIMessage(message="User profile deleted successfully")

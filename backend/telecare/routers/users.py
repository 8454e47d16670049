from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response, status

from telecare.config import get_settings
from telecare.constants import ACCESS_COOKIE_NAME, REFRESH_COOKIE_NAME, Role
from telecare.models.user import User
from telecare.rate_limit import limiter
from telecare.responses import api_response
from telecare.schemas import (
    AvatarIn,
    ChangePasswordIn,
    CompleteProfileIn,
    DeactivateIn,
    DeleteAccountIn,
    ForgotPasswordIn,
    LoginIn,
    RefreshIn,
    RegisterIn,
    ResetPasswordIn,
    RoleUpdateIn,
    TokenOut,
    UpdateProfileIn,
    VerifyEmailIn,
    dump,
    user_out,
)
from telecare.security import get_current_user, require_roles
from telecare.services import admin_service, auth_service, profile_service
from telecare.services.token_service import TokenPair

settings = get_settings()

router = APIRouter(prefix="/users", tags=["users"])
admin_only = require_roles([Role.ADMIN])


def _set_session_cookies(response: Response, pair: TokenPair) -> None:
    max_age = auth_service.session_max_age()
    for name, value in ((ACCESS_COOKIE_NAME, pair.access_token), (REFRESH_COOKIE_NAME, pair.refresh_token)):
        response.set_cookie(
            name,
            value,
            max_age=max_age,
            httponly=True,
            secure=settings.is_production,
            samesite="strict",
        )


def _clear_session_cookies(response: Response) -> None:
    for name in (ACCESS_COOKIE_NAME, REFRESH_COOKIE_NAME):
        response.delete_cookie(name, httponly=True, secure=settings.is_production, samesite="strict")


def _tokens(pair: TokenPair) -> dict:
    return dump(TokenOut(access_token=pair.access_token, refresh_token=pair.refresh_token))


# -------------------- session --------------------


@router.post("/register", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def route_register(request: Request, payload: RegisterIn, background_tasks: BackgroundTasks):
    """Create an account. Does not log the user in."""
    user = await auth_service.register(payload, background_tasks)
    return api_response(
        {"user": dump(user_out(user)), "nextStep": "verify_email", "loginRequired": True},
        "User registered successfully. Please check your email to verify your account.",
        status.HTTP_201_CREATED,
    )


@router.post("/login")
@limiter.limit("10/minute")
async def route_login(request: Request, response: Response, payload: LoginIn):
    user, pair = await auth_service.login(payload)
    _set_session_cookies(response, pair)
    return api_response({"user": dump(user_out(user)), **_tokens(pair)}, "Login successful")


@router.post("/logout")
async def route_logout(response: Response, current_user: User = Depends(get_current_user)):
    await auth_service.logout(current_user)
    _clear_session_cookies(response)
    return api_response({}, "Logged out successfully")


@router.post("/refresh-token")
@limiter.limit("20/minute")
async def route_refresh(request: Request, response: Response, payload: Optional[RefreshIn] = None):
    presented = (payload.refresh_token if payload else None) or request.cookies.get(REFRESH_COOKIE_NAME)
    _, pair = await auth_service.refresh(presented)
    _set_session_cookies(response, pair)
    return api_response(_tokens(pair), "Token refreshed")


@router.post("/change-password")
async def route_change_password(
    response: Response,
    payload: ChangePasswordIn,
    current_user: User = Depends(get_current_user),
):
    await auth_service.change_password(current_user, payload)
    if settings.INVALIDATE_SESSIONS_ON_PASSWORD_CHANGE:
        _clear_session_cookies(response)
    return api_response({}, "Password changed successfully")


@router.post("/forgot-password")
@limiter.limit("5/minute")
async def route_forgot_password(request: Request, payload: ForgotPasswordIn, background_tasks: BackgroundTasks):
    message = await auth_service.forgot_password(payload.email, background_tasks)
    return api_response({}, message)


@router.post("/reset-password")
@limiter.limit("5/minute")
async def route_reset_password(request: Request, response: Response, payload: ResetPasswordIn):
    await auth_service.reset_password(payload)
    _clear_session_cookies(response)
    return api_response({}, "Password has been reset. Please log in with your new password.")


@router.post("/verify-email")
async def route_verify_email(payload: VerifyEmailIn):
    user = await auth_service.verify_email(payload.token)
    return api_response({"user": dump(user_out(user))}, "Email verified successfully")


@router.post("/resend-verification")
@limiter.limit("3/minute")
async def route_resend_verification(
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
):
    await auth_service.resend_verification(current_user, background_tasks)
    return api_response({}, "Verification email sent")


# -------------------- profile --------------------


@router.get("/current")
async def route_current_user(current_user: User = Depends(get_current_user)):
    return api_response({"user": dump(user_out(current_user))}, "Current user")


@router.get("/profile")
async def route_get_profile(current_user: User = Depends(get_current_user)):
    profile = await profile_service.get_profile(current_user)
    return api_response({"user": dump(profile)}, "Profile retrieved")


@router.patch("/profile")
async def route_update_profile(payload: UpdateProfileIn, current_user: User = Depends(get_current_user)):
    profile = await profile_service.update_profile(current_user, payload)
    return api_response({"user": dump(profile)}, "Profile updated")


@router.patch("/avatar")
async def route_update_avatar(payload: AvatarIn, current_user: User = Depends(get_current_user)):
    profile = await profile_service.update_avatar(current_user, payload.avatar_url)
    return api_response({"user": dump(profile)}, "Avatar updated")


@router.patch("/complete-profile")
async def route_complete_profile(payload: CompleteProfileIn, current_user: User = Depends(get_current_user)):
    profile = await profile_service.complete_profile(current_user, payload)
    return api_response({"user": dump(profile)}, "Profile completed")


@router.delete("/delete-account")
async def route_delete_account(
    response: Response,
    payload: DeleteAccountIn,
    current_user: User = Depends(get_current_user),
):
    await profile_service.delete_account(current_user, payload.password, payload.reason)
    _clear_session_cookies(response)
    return api_response({}, "Account deleted")


@router.get("/doctors")
async def route_list_doctors(
    specialization: Optional[str] = None,
    department: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
):
    items, total = await profile_service.list_doctors(
        specialization=specialization, department=department, page=page, limit=limit
    )
    return api_response(
        {"doctors": [dump(d) for d in items], "pagination": {"page": page, "limit": limit, "total": total}},
        "Doctors retrieved",
    )


@router.get("/profile/{user_id}")
async def route_public_profile(user_id: str, current_user: User = Depends(get_current_user)):
    profile = await profile_service.public_profile(user_id)
    return api_response({"user": dump(profile)}, "Profile retrieved")


# -------------------- admin --------------------


@router.get("/statistics")
async def route_user_statistics(current_user: User = Depends(admin_only)):
    return api_response(await admin_service.user_statistics(), "User statistics")


@router.patch("/{user_id}/role")
async def route_update_role(user_id: str, payload: RoleUpdateIn, current_user: User = Depends(admin_only)):
    user = await admin_service.update_role(user_id, payload.role, current_user)
    return api_response({"user": dump(user_out(user))}, "Role updated")


@router.patch("/{user_id}/deactivate")
async def route_deactivate(
    user_id: str,
    payload: Optional[DeactivateIn] = None,
    current_user: User = Depends(admin_only),
):
    user = await admin_service.deactivate_user(user_id, payload.reason if payload else None, current_user)
    return api_response({"user": dump(user_out(user))}, "User deactivated")

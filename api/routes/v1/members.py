"""
api/routes/v1/members.py -- Endpoints for the authenticated member's own account.

Routes:
  GET    /api/v1/members/me           -- profile of the token's member
  PATCH  /api/v1/members/me/nickname  -- change nickname
  PATCH  /api/v1/members/me/password  -- change password (current password required)
  DELETE /api/v1/members/me           -- withdraw (password required for local members)

Every route requires an access token via get_current_member. The member id
always comes from the token, never from the request body.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import MessageResponse, NicknameUpdate, PasswordChange, ProfileResponse, WithdrawRequest
from auth.dependencies import get_current_member
from auth.models import Member
from auth.service import AuthService

router = APIRouter()


@router.get("/members/me", response_model=ProfileResponse)
def read_me(member: Member = Depends(get_current_member)) -> ProfileResponse:
    return ProfileResponse.from_member(member)


@router.patch("/members/me/nickname", response_model=ProfileResponse)
def update_nickname(
    request: Request,
    body: NicknameUpdate,
    member: Member = Depends(get_current_member),
) -> ProfileResponse:
    """Change the nickname. same_nickname (409) if it equals the current one."""
    service: AuthService = request.app.state.auth_service
    return ProfileResponse.from_member(service.update_nickname(member.id, body.nickname))


@router.patch("/members/me/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChange,
    member: Member = Depends(get_current_member),
) -> MessageResponse:
    """Change the password.

    different_password if current_password is wrong; same_password if the new
    password equals the current one. Existing tokens stay valid.
    """
    service: AuthService = request.app.state.auth_service
    service.change_password(member.id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed.")


@router.delete("/members/me", response_model=MessageResponse)
def withdraw(
    request: Request,
    body: WithdrawRequest,
    member: Member = Depends(get_current_member),
) -> MessageResponse:
    """Delete the member. The email must be verified again before it can rejoin."""
    service: AuthService = request.app.state.auth_service
    service.withdraw(member.id, body.password)
    return MessageResponse(message="Member withdrawn.")

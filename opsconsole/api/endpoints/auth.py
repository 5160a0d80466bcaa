# opsconsole/api/endpoints/auth.py

from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.security import OAuth2PasswordRequestForm
from loguru import logger

from opsconsole.core import security
from opsconsole.core.config import settings
from opsconsole.core.logging_config import trace_id_var
from opsconsole.core.rate_limit import limiter
from opsconsole.models.auth import Token
from opsconsole.modules.users.repository import UserRepository, get_user_repository
from opsconsole.modules.users.services import UserService, get_user_service

router = APIRouter()


@router.post("/login", response_model=Token, tags=["Authentication"])
@limiter.limit(settings.RATE_LIMIT_LOGIN)
async def login_for_access_token(
    request: Request,
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    user_service: Annotated[UserService, Depends(get_user_service)],
    user_repo: Annotated[UserRepository, Depends(get_user_repository)],
):
    """
    Authenticates using username (email) & password form data.
    Returns a JWT access token on success.
    """
    username = form_data.username
    log = logger.bind(trace_id=trace_id_var.get(), api_endpoint="/auth/login", username=username)
    log.info("Login attempt received.")

    user = await user_service.authenticate(email=username, password=form_data.password, user_repo=user_repo)
    if not user:
        log.warning("Authentication failed: Incorrect email or password")
        raise security.CredentialsException

    log.success(f"Authentication successful for user: {username} (ID: {user.id})")
    access_token = security.create_access_token(
        data={"sub": user.email, "uid": str(user.id)},
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return Token(access_token=access_token, token_type="bearer")

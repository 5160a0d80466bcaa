# opsconsole/core/security.py

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from loguru import logger

from opsconsole.core.config import settings
from opsconsole.models.auth import TokenData
from opsconsole.modules.users.models import UserInDB
from opsconsole.modules.users.repository import UserRepository, get_user_repository

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login")

CredentialsException = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Could not validate credentials",
    headers={"WWW-Authenticate": "Bearer"},
)
InactiveUserException = HTTPException(
    status_code=status.HTTP_403_FORBIDDEN,
    detail="Inactive user",
)


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError) as e:
        logger.error(f"Error verifying password (hash might be invalid): {e}")
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Creates a signed JWT carrying ``sub`` plus exp/iat/nbf claims."""
    to_encode = data.copy()
    if not to_encode.get("sub"):
        raise ValueError("Missing 'sub' claim in token data for JWT creation")
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "iat": now, "nbf": now})
    encoded = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    logger.debug(f"Access token created for subject: {to_encode['sub']}")
    return encoded


async def get_current_user_from_token(token: Annotated[str, Depends(oauth2_scheme)]) -> TokenData:
    log = logger.bind(service="AuthTokenValidation")
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        log.warning("Token validation failed: signature has expired.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except JWTError as e:
        log.warning(f"Invalid JWT token: {e}")
        raise CredentialsException from e

    username = payload.get("sub")
    if not username:
        log.warning("Token validation failed: 'sub' claim missing.")
        raise CredentialsException
    return TokenData(username=username)



async def get_current_active_user(
    token_data: Annotated[TokenData, Depends(get_current_user_from_token)],
    user_repo: Annotated[UserRepository, Depends(get_user_repository)],
) -> UserInDB:
    username = token_data.username
    log = logger.bind(service="AuthUserCheck", username=username)
    user_db = await user_repo.get_by_email(username)
    if user_db is None:
        log.error(f"User '{username}' from valid token not found.")
        raise CredentialsException
    if not user_db.is_active:
        log.warning(f"User '{username}' is inactive.")
        raise InactiveUserException
    return user_db


CurrentUser = Annotated[UserInDB, Depends(get_current_active_user)]

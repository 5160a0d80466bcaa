# opsconsole/modules/users/services.py

from typing import Optional

from loguru import logger

from opsconsole.core.security import get_password_hash, verify_password
from .models import UserCreateInternal, UserInDB
from .repository import UserRepository


class UserService:
    async def authenticate(self, email: str, password: str, user_repo: UserRepository) -> Optional[UserInDB]:
        """Returns the active user matching the credentials, or None."""
        user = await user_repo.get_by_email(email)
        if user is None or not verify_password(password, user.hashed_password):
            return None
        if not user.is_active:
            logger.bind(service="UserService", email=email).warning("Login rejected: user inactive.")
            return None
        return user

    async def register(self, email: str, password: str, user_repo: UserRepository, name: str = "") -> UserInDB:
        payload = UserCreateInternal(
            email=email.strip().lower(),
            name=name,
            hashed_password=get_password_hash(password),
        )
        return await user_repo.create(payload)


def get_user_service() -> UserService:
    return UserService()

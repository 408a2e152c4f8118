import logging
from typing import Optional

from fastapi import HTTPException, status
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from cloudpanel.core.exceptions import (
    AccessDeniedException,
    ConflictException,
    UserNotFoundException,
)
from cloudpanel.users import models, schemas

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class UserService:
    def __init__(self, db: Session):
        self.db = db

    def _get_user_by_username(self, username: str) -> Optional[models.User]:
        """Retrieve user by username"""
        return self.db.query(models.User).filter(models.User.username == username).first()

    def get_user_by_id(self, user_id: int) -> Optional[models.User]:
        return self.db.query(models.User).filter(models.User.id == user_id).first()

    def _check_admin_permission(self, current_user: models.User) -> None:
        if current_user.role != models.Role.admin:
            raise AccessDeniedException("users", "approve")

    def _is_first_user(self) -> bool:
        return self.db.query(models.User).count() == 0

    def register_user(self, user_create: schemas.UserCreate) -> models.User:
        """Register a new panel user.

        The first account becomes an approved administrator; every later
        account waits for an administrator to approve it before it can sign
        in or control the game VM.
        """
        if self._get_user_by_username(user_create.username):
            raise ConflictException("Username already registered")
        if (
            self.db.query(models.User)
            .filter(models.User.email == user_create.email)
            .first()
        ):
            raise ConflictException("Email already registered")

        is_first_user = self._is_first_user()
        role = models.Role.admin if is_first_user else models.Role.user

        db_user = models.User(
            username=user_create.username,
            email=user_create.email,
            hashed_password=pwd_context.hash(user_create.password),
            role=role,
            is_approved=is_first_user,
        )

        self.db.add(db_user)
        self.db.commit()
        self.db.refresh(db_user)

        logger.info(
            f"Registered user {db_user.username} "
            f"({'approved admin' if is_first_user else 'pending approval'})"
        )
        return db_user

    def authenticate_user(self, username: str, password: str) -> Optional[models.User]:
        user = self._get_user_by_username(username)
        if not user:
            return None

        if not pwd_context.verify(password, user.hashed_password):
            return None

        if not user.is_approved:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Account pending approval. Please wait for an administrator to approve your account.",
            )

        return user

    def approve_user(self, current_user: models.User, target_user_id: int) -> models.User:
        self._check_admin_permission(current_user)

        target_user = self.get_user_by_id(target_user_id)
        if not target_user:
            raise UserNotFoundException(str(target_user_id))

        target_user.is_approved = True
        self.db.commit()
        self.db.refresh(target_user)

        logger.info(f"User {target_user.username} approved by {current_user.username}")
        return target_user

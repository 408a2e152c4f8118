from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from cloudpanel.auth.auth import verify_token
from cloudpanel.core.database import get_db
from cloudpanel.core.exceptions import validate_user_approved
from cloudpanel.users import models

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")


def _user_from_token(token: Optional[str], db: Session) -> models.User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception
    username = verify_token(token, credentials_exception)
    user = db.query(models.User).filter(models.User.username == username).first()
    if user is None:
        raise credentials_exception
    if not user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return user


def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    db: Annotated[Session, Depends(get_db)],
) -> models.User:
    return _user_from_token(token, db)


def get_approved_user(
    current_user: Annotated[models.User, Depends(get_current_user)],
) -> models.User:
    validate_user_approved(current_user)
    return current_user


def get_current_user_ws(token: Optional[str], db: Session) -> models.User:
    """Resolve the ``?token=`` query parameter of a websocket connection"""
    user = _user_from_token(token, db)
    validate_user_approved(user)
    return user

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm

from cloudpanel.auth.auth import create_access_token
from cloudpanel.services.user import UserService
from cloudpanel.types import CurrentUser, DatabaseSession
from cloudpanel.users import schemas

router = APIRouter()


@router.post("/register", response_model=schemas.User)
def register(user_create: schemas.UserCreate, db: DatabaseSession):
    service = UserService(db)
    return service.register_user(user_create)


@router.post("/token", response_model=schemas.TokenResponse)
def login(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    db: DatabaseSession,
):
    service = UserService(db)
    user = service.authenticate_user(form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = create_access_token(data={"sub": user.username})
    return schemas.TokenResponse(access_token=access_token)


@router.get("/me", response_model=schemas.User)
def get_current_user_info(current_user: CurrentUser):
    return current_user


@router.post("/users/{user_id}/approve", response_model=schemas.User)
def approve_user(user_id: int, current_user: CurrentUser, db: DatabaseSession):
    service = UserService(db)
    return service.approve_user(current_user, user_id)

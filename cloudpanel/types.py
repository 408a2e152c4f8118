from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import Session

from cloudpanel.auth.dependencies import get_approved_user, get_current_user
from cloudpanel.core.context import PanelContext, get_panel_context
from cloudpanel.core.database import get_db
from cloudpanel.users.models import User

# Common type definitions
DatabaseSession = Annotated[Session, Depends(get_db)]
CurrentUser = Annotated[User, Depends(get_current_user)]
ApprovedUser = Annotated[User, Depends(get_approved_user)]
PanelContextDep = Annotated[PanelContext, Depends(get_panel_context)]

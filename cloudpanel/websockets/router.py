from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket
from sqlalchemy.orm import Session

from cloudpanel.auth.dependencies import get_current_user_ws
from cloudpanel.core.database import get_db

router = APIRouter()


@router.websocket("/events")
async def websocket_panel_events(
    websocket: WebSocket,
    token: str = Query(..., description="JWT token for authentication"),
    db: Session = Depends(get_db),
):
    """WebSocket endpoint for live VM status, warnings and player counts"""
    try:
        user = get_current_user_ws(token, db)

        context = getattr(websocket.app.state, "panel_context", None)
        if context is None:
            await websocket.close(code=1011, reason="Game VM controller is not initialized")
            return

        await context.notifications.handle_connection(websocket, user)

    except HTTPException as e:
        await websocket.close(code=1008, reason=e.detail)
    except Exception as e:
        await websocket.close(code=1011, reason=f"Internal error: {str(e)}")

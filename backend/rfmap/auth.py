import os
from typing import Optional

from fastapi import Header, HTTPException, WebSocket, status

# Admin surfaces are open when unset (local development).
API_TOKEN = os.getenv("API_TOKEN")


def bearer_token(authorization: str) -> Optional[str]:
    if not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip()


async def require_admin_token(authorization: str = Header(default="")) -> None:
    """Bearer guard for maintenance and deletion endpoints."""
    if not API_TOKEN:
        return
    token = bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing bearer token")
    if token != API_TOKEN:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")


def websocket_authorized(websocket: WebSocket) -> bool:
    """Header or ``?token=`` query parameter, since browsers cannot set websocket headers."""
    if not API_TOKEN:
        return True
    token = bearer_token(websocket.headers.get("authorization", "")) or websocket.query_params.get("token")
    return token == API_TOKEN

"""Owner identity supplied by the upstream authentication layer."""

from fastapi import Header, HTTPException, status

MAX_OWNER_ID_LENGTH = 64


def get_owner_id(x_user_id: str | None = Header(default=None)) -> str:
    """Return the authenticated owner id forwarded in the X-User-Id header."""
    owner_id = (x_user_id or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    if len(owner_id) > MAX_OWNER_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid user id",
        )
    return owner_id

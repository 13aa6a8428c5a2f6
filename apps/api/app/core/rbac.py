from fastapi import Depends, HTTPException, status

from app.core.auth import ANONYMOUS_SUBJECT, GUEST_ROLE, AuthUser, get_current_user


async def require_authenticated_user(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if user.sub == ANONYMOUS_SUBJECT or GUEST_ROLE in user.roles:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user

from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing import List
from jose import JWTError

from busbooking.services import auth as auth_service
from busbooking.services.policy import Actor, Role


# tokens are minted by the identity service; this side only verifies them
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_actor(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> Actor:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        return auth_service.verify_access_token(credentials.credentials)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials")


def role_required(allowed: List[Role]):
    async def _dep(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return actor

    return _dep

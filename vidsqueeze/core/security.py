"""HTTP Basic authentication gating every route."""

import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

# auto_error=False so a missing header yields our own challenge response
basic_scheme = HTTPBasic(auto_error=False)


class BasicAuth:
    """Credential check dependency.

    The expected credentials are read from ``request.app.state.settings`` so
    that each application instance can carry its own.
    """

    async def __call__(
        self,
        request: Request,
        credentials: Optional[HTTPBasicCredentials] = Depends(basic_scheme),
    ) -> str:
        settings = request.app.state.settings

        if credentials is None or not self._matches(credentials, settings.login, settings.password):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    @staticmethod
    def _matches(credentials: HTTPBasicCredentials, login: str, password: str) -> bool:
        # Evaluate both comparisons to keep timing independent of which one fails
        user_ok = secrets.compare_digest(credentials.username.encode(), login.encode())
        pass_ok = secrets.compare_digest(credentials.password.encode(), password.encode())
        return user_ok and pass_ok


require_basic_auth = BasicAuth()

from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Depends, Header, HTTPException


@dataclass
class User:
    id: str
    name: str
    role: str


class TokenAuth:
    """Bearer token check backed by a token table.

    The table is looked up through `get_tokens` on every request so it can be
    swapped at runtime (tests replace it between cases).
    """

    def __init__(self, get_tokens: Callable[[], Dict[str, dict]]):
        self.get_tokens = get_tokens

    async def __call__(self, authorization: Optional[str] = Header(default=None)) -> User:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Access denied. No token provided.")

        token = authorization[len("Bearer "):].strip()
        record = self.get_tokens().get(token)
        if record is None:
            raise HTTPException(status_code=401, detail="Invalid token.")
        return User(id=record["id"], name=record["name"], role=record["role"])

    def require_role(self, *roles: str):
        async def check(user: User = Depends(self)) -> User:
            if user.role not in roles:
                raise HTTPException(
                    status_code=403,
                    detail=f"Access denied. Required role: {' or '.join(roles)}"
                )
            return user
        return check

import time
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from jose import jwt, JWTError
from passlib.context import CryptContext

import config
from errors import Unauthorized
from schemas import Identity

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        # unrecognized hash format in stored data
        return False


def create_access_token(identity: Identity, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": str(identity.id), "role": identity.role, "exp": expire}
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_access_token(token: str) -> Identity:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id = payload.get("sub")
        role = payload.get("role")
        if user_id is None or role is None:
            raise Unauthorized("Could not validate credentials")
        return Identity(id=int(user_id), role=role)
    except (JWTError, ValueError):
        raise Unauthorized("Could not validate credentials")


class RateLimiter:
    """Sliding-window request counter keyed by caller.

    Expired hits are pruned for every caller on each request and callers
    with nothing left in the window are dropped, so memory follows the
    number of recent callers.
    """

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, deque] = {}

    def __len__(self) -> int:
        return len(self._hits)

    def _prune(self, now: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def hit(self, key: str) -> bool:
        """Record a request for ``key``; False when the window is already full."""
        now = self._clock()
        self._prune(now)
        hits = self._hits.get(key)
        if hits is not None and len(hits) >= self.max_requests:
            return False
        self._hits.setdefault(key, deque()).append(now)
        return True

import asyncio
import logging
from datetime import datetime
from typing import Callable, List

from database import Repository, UnitOfWork
from errors import Conflict, NotFound, Unauthorized
from schemas import Identity, User, UserOut, UserUpdate
from security import hash_password, verify_password

logger = logging.getLogger(__name__)


async def hash_off_loop(password: str) -> str:
    # bcrypt is slow on purpose; keep it off the event loop and outside the write lock
    return await asyncio.to_thread(hash_password, password)


class IdentityStore:
    """User records, credentials and roles."""

    def __init__(self, uow: UnitOfWork, clock: Callable[[], datetime] = datetime.utcnow):
        self.uow = uow
        self.users: Repository[User] = uow.register(Repository("users", User, not_found="User not found"))
        self._clock = clock

    def find_by_email(self, email: str):
        email = email.lower()
        return next((u for u in self.users if u.email == email), None)

    def get(self, user_id: int) -> User:
        return self.users.get(user_id)

    async def register(self, name: str, email: str, password: str) -> User:
        if self.find_by_email(email):
            raise Conflict("Email already registered")
        hashed = await hash_off_loop(password)
        async with self.uow.transaction("users"):
            # the address may have been taken while hashing
            if self.find_by_email(email):
                raise Conflict("Email already registered")
            user = User(
                id=self.users.next_id(),
                name=name,
                email=email.lower(),
                password=hashed,
                role="customer",
                created_at=self._clock(),
            )
            self.users.add(user)
        logger.info("Registered user %s", user.id)
        return user

    def authenticate(self, email: str, password: str) -> Identity:
        user = self.find_by_email(email)
        if not user:
            raise NotFound("User not found")
        if not verify_password(password, user.password):
            raise Unauthorized("Invalid credentials")
        return Identity(id=user.id, role=user.role)

    async def promote(self, user_id: int) -> User:
        async with self.uow.transaction("users"):
            user = self.users.get(user_id)
            user.role = "admin"
        logger.info("User %s promoted to admin", user_id)
        return user

    async def update_credential(self, email: str, new_password: str) -> None:
        hashed = await hash_off_loop(new_password)
        async with self.uow.transaction("users"):
            user = self.find_by_email(email)
            if not user:
                raise NotFound("User not found")
            user.password = hashed
        logger.info("Credential replaced for user %s", user.id)

    def list_redacted(self) -> List[UserOut]:
        return [u.redacted() for u in self.users]

    async def admin_delete(self, user_id: int) -> None:
        async with self.uow.transaction("users"):
            self.users.remove(user_id)
        logger.info("User %s deleted", user_id)

    async def admin_update(self, user_id: int, changes: UserUpdate) -> User:
        hashed = await hash_off_loop(changes.password) if changes.password else None
        async with self.uow.transaction("users"):
            user = self.users.get(user_id)
            if changes.email:
                other = self.find_by_email(changes.email)
                if other and other.id != user.id:
                    raise Conflict("Email already registered")
                user.email = changes.email.lower()
            if changes.name:
                user.name = changes.name
            if hashed:
                user.password = hashed
            if changes.role:
                user.role = changes.role
        logger.info("User %s updated", user_id)
        return user

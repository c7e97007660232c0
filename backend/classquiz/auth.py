from __future__ import annotations

import logging
import secrets
from typing import Optional

import bcrypt
from pymongo.errors import DuplicateKeyError

from .db import InMemoryDatabase, Settings, settings as default_settings
from .errors import AuthError, PhoneTaken, UserNotFound
from .models import Role, User
from .schemas import ProfileUpdateIn, RegisterIn
from .utils import new_id, utcnow

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of a password.
BCRYPT_MAX_BYTES = 72


def _secret(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_secret(password), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_password(password: str, stored: str | None) -> bool:
    if not stored:
        return False
    try:
        return bcrypt.checkpw(_secret(password), stored.encode("ascii"))
    except ValueError:
        return False


class Accounts:
    """Users and their bearer tokens.

    The session core only ever asks two things of this: who the caller is and
    whether they are a teacher.
    """

    def __init__(self, db: InMemoryDatabase, settings: Settings = default_settings):
        self.db = db
        self.settings = settings

    async def register(self, payload: RegisterIn) -> User:
        user = User(
            first_name=payload.first_name,
            last_name=payload.last_name,
            phone_number=payload.phone_number,
            password_hash=hash_password(payload.password, self.settings.BCRYPT_ROUNDS),
            role=Role.TEACHER,
            telegram_id=payload.telegram_id,
        )
        try:
            await self.db.users.insert_one(user.model_dump())
        except DuplicateKeyError as exc:
            raise PhoneTaken() from exc
        logger.info("teacher %s registered", user.id)
        return user

    async def login(self, phone_number: str, password: str) -> User:
        doc = await self.db.users.find_one({"phone_number": phone_number})
        if not doc or not verify_password(password, doc.get("password_hash")):
            raise AuthError()
        return User(**doc)

    async def issue_token(self, user: User) -> str:
        token = secrets.token_urlsafe(self.settings.TOKEN_BYTES)
        await self.db.tokens.insert_one({"token": token, "user_id": user.id, "created_at": utcnow()})
        return token

    async def resolve(self, token: str | None) -> Optional[User]:
        if not token:
            return None
        doc = await self.db.tokens.find_one({"token": token})
        if not doc:
            return None
        return await self.find_user(doc["user_id"])

    async def find_user(self, user_id: str) -> Optional[User]:
        doc = await self.db.users.find_one({"id": user_id})
        return User(**doc) if doc else None

    async def get_user(self, user_id: str) -> User:
        user = await self.find_user(user_id)
        if not user:
            raise UserNotFound()
        return user

    async def update_profile(self, user_id: str, payload: ProfileUpdateIn) -> User:
        user = await self.get_user(user_id)
        user = user.model_copy(update=payload.model_dump(exclude_unset=True, exclude_none=True))
        await self.db.users.update_one({"id": user.id}, {"$set": user.model_dump()})
        return user

    async def guest(self, name: str, phone_number: str | None = None) -> User:
        """Find a student by phone number, or create an unregistered guest."""
        if phone_number:
            doc = await self.db.users.find_one({"phone_number": phone_number})
            if doc:
                return User(**doc)

        user = User(first_name=name, phone_number=phone_number or f"guest_{new_id()}", role=Role.STUDENT)
        try:
            await self.db.users.insert_one(user.model_dump())
        except DuplicateKeyError:
            # Lost a race with another join using the same phone number.
            return User(**await self.db.users.find_one({"phone_number": phone_number}))
        return user

"""Accounts: signup, login, bearer tokens and profile updates."""
import hashlib
import logging
import secrets
from typing import Any, Dict, Optional, Tuple

from database import DocumentStore, create_document
from errors import AuthError, NotFoundError, ValidationError
from schemas import USERS, User, UserRole

_LOGGER = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


# Very light password hashing (demo purposes only)
def hash_password(password: str, salt: Optional[str] = None) -> Dict[str, str]:
    salt = salt or secrets.token_hex(8)
    hashed = hashlib.sha256((salt + password).encode()).hexdigest()
    return {"salt": salt, "hash": hashed}


def verify_password(password: str, salt: str, hash_val: str) -> bool:
    return secrets.compare_digest(hashlib.sha256((salt + password).encode()).hexdigest(), hash_val)


def new_token() -> str:
    return secrets.token_hex(24)


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthError("Missing Authorization header")
    if not authorization.lower().startswith("bearer "):
        raise AuthError("Invalid auth scheme")
    return authorization.split(" ", 1)[1].strip()


class AccountService:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def signup(self, email: str, password: str, name: Optional[str] = None) -> Tuple[User, str]:
        email = email.lower()
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if await self.store.query(USERS, {"email": email}, limit=1):
            raise ValidationError("Email already registered")
        user = User(email=email, name=name or "User", roles=[UserRole.DRIVER], green_credits=0)
        token = new_token()
        doc = user.to_document()
        doc["password"] = hash_password(password)
        doc["tokens"] = [token]
        user.id = await create_document(self.store, USERS, doc)
        _LOGGER.info("New account %s", user.id)
        return user, token

    async def login(self, email: str, password: str) -> Tuple[User, str]:
        found = await self.store.query(USERS, {"email": email.lower()}, limit=1)
        if not found:
            raise AuthError("Invalid credentials")
        user_id, data = found[0]
        pwd = data.get("password") or {}
        if not pwd or not verify_password(password, pwd.get("salt", ""), pwd.get("hash", "")):
            raise AuthError("Invalid credentials")
        token = new_token()
        await self.store.append_to_field(USERS, user_id, "tokens", token)
        return User.from_document(user_id, data), token

    async def user_id_for_token(self, token: Optional[str]) -> str:
        if not token:
            raise AuthError("Missing token")
        found = await self.store.query(USERS, {"tokens": token}, limit=1)
        if not found:
            raise AuthError("Invalid or expired token")
        return found[0][0]

    async def get_user(self, user_id: str) -> User:
        data = await self.store.get_document(USERS, user_id)
        if data is None:
            raise NotFoundError("User not found")
        return User.from_document(user_id, data)

    async def add_host_role(self, user_id: str) -> User:
        user = await self.get_user(user_id)
        if not user.is_host:
            roles = [r.value for r in user.roles] + [UserRole.HOST.value]
            await self.store.update_document(USERS, user_id, {"roles": roles})
            user = user.model_copy(update={"roles": user.roles + [UserRole.HOST]})
        return user

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> User:
        allowed = {k: v for k, v in fields.items()
                   if k in ("name", "profile_image_url", "phone_number") and v is not None}
        if allowed:
            await self.store.update_document(USERS, user_id, allowed)
        return await self.get_user(user_id)

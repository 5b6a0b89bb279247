"""
rbac/service.py -- User registration as one atomic unit of work.

create_user() runs three steps inside a single transaction:

    1. insert the user row
    2. look up the default role by name
    3. insert the user -> default-role assignment

If any step fails the whole transaction rolls back, so there is never a user
without a role. Repository errors are re-raised with a generic internal
marker appended after the precise cause; the precise cause stays first and
keeps deciding the HTTP status (e.g. 409 for a taken email).

Input validation (email shape, non-empty username, bcrypt's 72-byte password
limit) happens before any database or hashing work.
"""

from __future__ import annotations

import logging
import re

from auth.tokens import hash_password
from core.errors import AppError, ErrorKind, bad_request, not_found
from rbac.models import User, UserRole
from rbac.store import RoleRepository, UserRepository, UserRoleRepository
from rbac.transactions import Transaction, TxManager

logger = logging.getLogger("gatekeeper.rbac")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MAX_PASSWORD_BYTES = 72
_MAX_USERNAME_LENGTH = 255


def validate_email(email: str) -> None:
    if not _EMAIL_RE.match(email or ""):
        raise bad_request("Invalid email format")


class UserService:
    """Usage:
    service = UserService(tx_manager, users, roles, user_roles, default_role="user")
    user = service.create_user("alice", "a@x.com", "secret123")
    """

    def __init__(
        self,
        tx_manager: TxManager,
        users: UserRepository,
        roles: RoleRepository,
        user_roles: UserRoleRepository,
        default_role: str = "user",
        bcrypt_rounds: int = 12,
    ) -> None:
        self._tx = tx_manager
        self._users = users
        self._roles = roles
        self._user_roles = user_roles
        self._default_role = default_role
        self._rounds = bcrypt_rounds

    def create_user(self, username: str, email: str, password: str) -> User:
        """Create a user holding the default role. Returns the user without its hash."""
        username = (username or "").strip()
        if not username:
            raise bad_request("Username is required")
        if len(username) > _MAX_USERNAME_LENGTH:
            raise bad_request(f"Username must be at most {_MAX_USERNAME_LENGTH} characters")
        validate_email(email)
        if not password:
            raise bad_request("Password is required")
        if len(password.encode("utf-8")) > _MAX_PASSWORD_BYTES:
            raise bad_request(f"Password must be at most {_MAX_PASSWORD_BYTES} bytes")

        # Hash before opening the transaction: bcrypt is slow and must not
        # hold a database connection.
        hashed = hash_password(password, self._rounds)

        def register(tx: Transaction) -> User:
            try:
                user = self._users.create(User(username=username, email=email, hashed_password=hashed), tx=tx)
            except AppError as exc:
                raise exc.with_internal("Something went wrong with UserRepository.create") from exc

            try:
                role = self._roles.get_by_name(self._default_role, tx=tx)
            except AppError as exc:
                if exc.kind is ErrorKind.NOT_FOUND:
                    raise not_found("Default role not found") from exc
                raise exc.with_internal("Something went wrong with RoleRepository.get_by_name") from exc

            try:
                self._user_roles.create(UserRole(user_id=user.id, role_id=role.id), tx=tx)
            except AppError as exc:
                raise exc.with_internal("Something went wrong with UserRoleRepository.create") from exc
            return user

        user = self._tx.with_transaction(register)
        logger.info("Registered user id=%s username=%s", user.id, user.username)
        return user

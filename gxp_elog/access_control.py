"""
Access control module for the GxP e-log.

Provides the identity store (users, salted password hashes, roles and
active status), the acting-user value passed into every core operation, and
role checks.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Union

from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import ELogConfig, get_config
from .exceptions import AuthorizationError, ValidationError
from .logbook.entities import UserDB

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """User roles, in increasing order of authority."""

    OPERATOR = "Operator"
    SUPERVISOR = "Supervisor"
    QA = "QA"
    ADMIN = "Admin"


@dataclass(frozen=True)
class ActingUser:
    """The authenticated user on whose behalf an operation runs.

    Passed explicitly into every service operation instead of being read
    from ambient session state.
    """

    id: str
    username: str
    role: str
    full_name: str

    @classmethod
    def from_entity(cls, user: UserDB) -> "ActingUser":
        return cls(
            id=user.id,
            username=user.username,
            role=user.role,
            full_name=user.full_name,
        )

    def has_role(self, roles: Iterable[Union[str, Role]]) -> bool:
        """Check if the user holds any of ``roles``."""
        return self.role in {Role(r).value for r in roles}


class PasswordHasher:
    """Salted password hashing backed by passlib."""

    def __init__(self, scheme: Optional[str] = None):
        """
        Initialize the hasher.

        Args:
            scheme: passlib scheme name. Defaults to the configured
                ``password_scheme``.
        """
        self.scheme = scheme or get_config().password_scheme
        self._context = CryptContext(schemes=[self.scheme], deprecated="auto")

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        """
        Compare a password with a stored hash.

        Returns:
            True if the password matches. A malformed or unknown hash
            never matches.
        """
        if not password or not password_hash:
            return False
        try:
            return bool(self._context.verify(password, password_hash))
        except (ValueError, TypeError):
            logger.warning("Stored password hash could not be identified")
            return False


class IdentityStore:
    """Users, credentials and roles, read and written through one session."""

    def __init__(
        self,
        session: Session,
        hasher: Optional[PasswordHasher] = None,
        config: Optional[ELogConfig] = None,
    ):
        self.session = session
        self.config = config or get_config()
        self.hasher = hasher or PasswordHasher(self.config.password_scheme)

    def find_by_username(self, username: str) -> Optional[UserDB]:
        """Look up a user by exact, case-sensitive username."""
        return (
            self.session.query(UserDB).filter(UserDB.username == username).one_or_none()
        )

    def find_by_id(self, user_id: str) -> Optional[UserDB]:
        return self.session.get(UserDB, user_id)

    def list_users(self) -> List[UserDB]:
        return self.session.query(UserDB).order_by(UserDB.username).all()

    def create(
        self,
        username: str,
        password: str,
        full_name: str,
        role: Union[str, Role],
        department: Optional[str] = None,
        is_active: bool = True,
    ) -> UserDB:
        """
        Create a user with a hashed password.

        Raises:
            ValidationError: If the username is already taken
        """
        if self.find_by_username(username) is not None:
            raise ValidationError(
                f"Username {username} already exists", field="username"
            )

        user = UserDB(
            username=username,
            password_hash=self.hasher.hash(password),
            full_name=full_name,
            role=Role(role).value,
            department=department,
            is_active=is_active,
        )
        self.session.add(user)
        self.session.flush()
        logger.info(f"Created user {username} with role {user.role}")
        return user

    def update(self, user_id: str, **fields: Any) -> Optional[UserDB]:
        """
        Apply a partial update to a user.

        A ``password`` field is re-hashed; ``password_hash`` cannot be set
        directly.

        Returns:
            The updated user, or None if it does not exist
        """
        user = self.find_by_id(user_id)
        if user is None:
            return None

        password = fields.pop("password", None)
        fields.pop("password_hash", None)

        if "username" in fields and fields["username"] != user.username:
            if self.find_by_username(fields["username"]) is not None:
                raise ValidationError(
                    f"Username {fields['username']} already exists", field="username"
                )
        if "role" in fields and fields["role"] is not None:
            fields["role"] = Role(fields["role"]).value

        for name, value in fields.items():
            if not hasattr(UserDB, name) or name in ("id", "created_at"):
                raise ValidationError(f"Field {name} cannot be updated", field=name)
            setattr(user, name, value)

        if password:
            user.password_hash = self.hasher.hash(password)

        self.session.flush()
        return user

    def authenticate(self, username: str, password: str) -> Optional[UserDB]:
        """
        Check a username and password.

        Returns:
            The user if the password matches, regardless of active status;
            None otherwise
        """
        user = self.find_by_username(username)
        if user is None:
            return None
        if not self.hasher.verify(password, user.password_hash):
            return None
        return user


def require_role(
    actor: ActingUser, roles: Iterable[Union[str, Role]], operation: str
) -> None:
    """
    Ensure ``actor`` holds one of ``roles``.

    Raises:
        AuthorizationError: If the actor's role is not allowed
    """
    allowed = [Role(r).value for r in roles]
    if not actor.has_role(allowed):
        logger.warning(
            f"User {actor.username} ({actor.role}) denied {operation}; "
            f"requires one of {', '.join(allowed)}"
        )
        raise AuthorizationError(
            f"Role {actor.role} is not allowed to {operation}",
            required_roles=allowed,
        )

"""
UserRepository for database operations on User model
"""

from dataclasses import dataclass
from typing import Optional, Union
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from database_models import User
from services.errors import StaleEntitlementWrite


# Columns that only the ReconciliationService may change
ENTITLEMENT_FIELDS = frozenset({
    "subscription_tier",
    "subscription_status",
    "subscription_current_period_end",
    "trial_start_date",
    "trial_end_date",
    "has_used_trial",
    "trial_count",
    "external_customer_id",
    "external_subscription_id",
})


@dataclass(frozen=True)
class Found:
    user: User


@dataclass(frozen=True)
class NotFound:
    lookup_key: str


LookupResult = Union[Found, NotFound]


class UserRepository:
    """
    Repository class for User database operations.
    Encapsulates all database logic for the User model.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_user_by_external_auth_id(self, external_auth_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.external_auth_id == external_auth_id)
        )
        return result.scalar_one_or_none()

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Retrieve a user by email address.

        Args:
            email: User's email address (case-insensitive search)

        Returns:
            User object if found, None otherwise
        """
        result = await self.db.execute(
            select(User).where(User.email == email.lower())
        )
        return result.scalar_one_or_none()

    async def get_user_by_external_subscription_id(self, subscription_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.external_subscription_id == subscription_id)
        )
        return result.scalars().first()

    async def get_user_by_external_customer_id(self, customer_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.external_customer_id == customer_id)
        )
        return result.scalars().first()

    async def find_user(self, lookup_key) -> LookupResult:
        """
        Resolve a client-supplied lookup key to a user.

        The key is tried as an external auth id first, then as the numeric
        internal id. This is the only place that fallback is implemented.

        Returns:
            Found(user) or NotFound(lookup_key)
        """
        key = str(lookup_key).strip()
        if not key:
            return NotFound(key)

        user = await self.get_user_by_external_auth_id(key)
        if user is None and key.isdigit():
            user = await self.get_user_by_id(int(key))

        if user is None:
            return NotFound(key)
        return Found(user)

    async def get_or_create_user(self, external_auth_id: str, email: str, username: Optional[str] = None):
        """
        Idempotent registration.

        Returns the existing record when the external auth id (or email) is
        already known; entitlement fields of an existing user are never touched.

        Returns:
            Tuple of (User, created)
        """
        existing = await self.get_user_by_external_auth_id(external_auth_id)
        if existing is None:
            existing = await self.get_user_by_email(email)
        if existing is not None:
            return existing, False

        username = username or await self._free_username(external_auth_id)
        user = User(
            external_auth_id=external_auth_id,
            email=email.lower(),
            username=username,
            subscription_tier="free",
            subscription_status="none",
            has_used_trial=False,
            trial_count=0,
        )
        self.db.add(user)
        await self.db.flush()  # Flush to get the ID without committing
        await self.db.refresh(user)  # Refresh to get the generated ID
        return user, True

    async def _free_username(self, external_auth_id: str) -> str:
        candidate = f"user_{external_auth_id[:8]}"
        result = await self.db.execute(select(User.id).where(User.username == candidate))
        if result.scalar_one_or_none() is None:
            return candidate
        return f"user_{external_auth_id}"

    async def apply_entitlement_changes(self, user: User, changes: dict) -> User:
        """
        Write entitlement fields for a user.

        The flush issues ``UPDATE ... WHERE id = ? AND version = ?``; if another
        writer got there first no row matches and StaleEntitlementWrite is raised.

        Args:
            user: User object to update
            changes: Mapping of entitlement column name to new value

        Returns:
            Updated User object
        """
        unknown = set(changes) - ENTITLEMENT_FIELDS
        if unknown:
            raise ValueError(f"Not entitlement fields: {', '.join(sorted(unknown))}")

        for key, value in changes.items():
            setattr(user, key, value)

        try:
            await self.db.flush()
        except StaleDataError as e:
            raise StaleEntitlementWrite(user.id) from e

        await self.db.refresh(user)
        return user

    async def reload(self, user: User) -> User:
        """Re-read a user row, discarding any in-session state."""
        await self.db.refresh(user)
        return user

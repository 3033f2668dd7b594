"""User lookups with Redis caching."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.redis_client import CacheManager
from app.models.users import users


class UserService:
    """Service for user and clinician lookups."""

    # Cache TTL in seconds (30 minutes for user profiles)
    USER_CACHE_TTL = 1800
    # Clinician directory changes rarely but should not lag long
    CLINICIANS_CACHE_TTL = 300
    CLINICIANS_CACHE_KEY = "clinicians:list"

    def __init__(self, cache_manager: CacheManager | None = None):
        """Initialize service with optional cache manager."""
        self.cache = cache_manager

    @staticmethod
    def _get_user_cache_key(user_id: int) -> str:
        """Generate cache key for user."""
        return f"user:{user_id}"

    async def get_user_by_id(self, db: AsyncSession, user_id: int) -> dict | None:
        """Get user by ID with caching."""
        # Try cache first
        if self.cache:
            cached_user = self.cache.get_json(self._get_user_cache_key(user_id))
            if cached_user:
                return cached_user

        result = await db.execute(select(users).where(users.c.id == user_id))
        user = result.mappings().first()

        if not user:
            return None

        user_dict = dict(user)

        if self.cache:
            self.cache.set_json(
                self._get_user_cache_key(user_id), user_dict, ttl=self.USER_CACHE_TTL
            )

        return user_dict

    async def get_user_for_update(self, db: AsyncSession, user_id: int) -> dict | None:
        """
        Load a user row and lock it until the transaction ends.

        Booking locks the clinician row so concurrent bookings for the same
        clinician serialize between the conflict check and the insert.
        """
        result = await db.execute(select(users).where(users.c.id == user_id).with_for_update())
        user = result.mappings().first()
        return dict(user) if user else None

    async def list_clinicians(self, db: AsyncSession) -> list[dict]:
        """List active clinicians for the booking directory."""
        if self.cache:
            cached = self.cache.get_json(self.CLINICIANS_CACHE_KEY)
            if cached is not None:
                return cached

        stmt = (
            select(
                users.c.id,
                users.c.full_name,
                users.c.email,
                users.c.specialization,
                users.c.ahpra_number,
            )
            .where(users.c.role == "clinician", users.c.is_active.is_(True))
            .order_by(users.c.full_name)
        )
        result = await db.execute(stmt)
        clinicians = [dict(row) for row in result.mappings().all()]

        if self.cache:
            self.cache.set_json(
                self.CLINICIANS_CACHE_KEY, clinicians, ttl=self.CLINICIANS_CACHE_TTL
            )

        return clinicians

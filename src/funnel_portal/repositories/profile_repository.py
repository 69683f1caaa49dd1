"""
Profile Repository for member profile operations.

Handles lookups by email, provisioning upserts from registration and
purchases, admin discovery, activity stamps and member search.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..schemas.database_models import Profile, ProfileUpsert
from ..utils.database import SupabaseClient
from .base_repository import BaseRepository


class ProfileRepository(BaseRepository[Profile]):
    """Repository for the ``profiles`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(Profile, "profiles", db_client)

    async def get_by_email(self, email: str) -> Optional[Profile]:
        """Case-insensitive email lookup."""
        query = "SELECT * FROM profiles WHERE lower(email) = lower($1) LIMIT 1"
        row = await self._execute_query(query, email.strip(), fetch_one=True)
        return self._row_to_model(row)

    async def upsert(self, profile: ProfileUpsert) -> Profile:
        """
        Insert or update a profile row keyed by the auth user id.

        Name columns are only overwritten with non-null values and an
        existing Stripe customer id is never replaced.
        """
        query = """
            INSERT INTO profiles (id, email, full_name, first_name, last_name, stripe_customer_id)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE SET
                email = EXCLUDED.email,
                full_name = COALESCE(EXCLUDED.full_name, profiles.full_name),
                first_name = COALESCE(EXCLUDED.first_name, profiles.first_name),
                last_name = COALESCE(EXCLUDED.last_name, profiles.last_name),
                stripe_customer_id = COALESCE(profiles.stripe_customer_id, EXCLUDED.stripe_customer_id),
                updated_at = NOW()
            RETURNING *
        """
        row = await self._execute_query(
            query,
            profile.id,
            profile.email,
            profile.full_name,
            profile.first_name,
            profile.last_name,
            profile.stripe_customer_id,
            fetch_one=True,
        )
        self._logger.info(f"Upserted profile {profile.id}")
        return self._row_to_model(row)

    async def set_stripe_customer_id(self, user_id: str, customer_id: str) -> None:
        """Attach a Stripe customer to a profile that has none yet."""
        query = """
            UPDATE profiles SET stripe_customer_id = $2, updated_at = NOW()
            WHERE id = $1 AND stripe_customer_id IS NULL
        """
        await self._execute_query(query, user_id, customer_id, fetch_all=False)

    async def get_first_admin(self) -> Optional[Profile]:
        query = "SELECT * FROM profiles WHERE is_admin = TRUE ORDER BY created_at LIMIT 1"
        row = await self._execute_query(query, fetch_one=True)
        return self._row_to_model(row)

    async def touch_last_active(self, user_id: str) -> None:
        query = "UPDATE profiles SET last_active_at = NOW() WHERE id = $1"
        await self._execute_query(query, user_id, fetch_all=False)

    async def search(self, term: str, exclude_id: Optional[str], limit: int) -> List[Profile]:
        """Match full name, first name or email, excluding one user."""
        pattern = f"%{term}%"
        query = """
            SELECT * FROM profiles
            WHERE (full_name ILIKE $1 OR first_name ILIKE $1 OR email ILIKE $1)
              AND ($2::uuid IS NULL OR id <> $2::uuid)
            ORDER BY full_name NULLS LAST
            LIMIT $3
        """
        rows = await self._execute_query(query, pattern, exclude_id, limit, fetch_all=True)
        return self._rows_to_models(rows)

    async def list_members(self, search: Optional[str] = None) -> List[Profile]:
        """All non-admin members, optionally filtered by email or name."""
        if search:
            query = """
                SELECT * FROM profiles
                WHERE is_admin = FALSE AND (email ILIKE $1 OR full_name ILIKE $1)
                ORDER BY created_at DESC
            """
            rows = await self._execute_query(query, f"%{search}%", fetch_all=True)
        else:
            query = "SELECT * FROM profiles WHERE is_admin = FALSE ORDER BY created_at DESC"
            rows = await self._execute_query(query, fetch_all=True)
        return self._rows_to_models(rows)

    async def list_inactive_since(self, cutoff: datetime) -> List[Profile]:
        """Members whose last activity (or signup) is at or before the cutoff."""
        query = """
            SELECT * FROM profiles
            WHERE is_admin = FALSE AND COALESCE(last_active_at, created_at) <= $1
        """
        rows = await self._execute_query(query, cutoff, fetch_all=True)
        return self._rows_to_models(rows)


    async def activity_counts(
        self, start: datetime, end: datetime, now: datetime
    ) -> Dict[str, int]:
        """
        Member totals for the admin metrics.

        Activity buckets use ``last_active_at``: active within 7 and 30 days,
        at risk when last seen 30 to 60 days ago, dormant beyond 60 days.
        """
        query = """
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE created_at >= $1 AND created_at <= $2) AS new_in_period,
                   COUNT(*) FILTER (WHERE last_active_at >= $3) AS active_7_days,
                   COUNT(*) FILTER (WHERE last_active_at >= $4) AS active_30_days,
                   COUNT(*) FILTER (WHERE last_active_at < $4 AND last_active_at >= $5) AS at_risk,
                   COUNT(*) FILTER (WHERE last_active_at < $5) AS dormant
            FROM profiles
        """
        row = await self._execute_query(
            query,
            start,
            end,
            now - timedelta(days=7),
            now - timedelta(days=30),
            now - timedelta(days=60),
            fetch_one=True,
        )
        return {key: int(value or 0) for key, value in dict(row or {}).items()}

    async def list_ids_last_active_before(self, cutoff: datetime) -> List[str]:
        """Ids of profiles last seen before the cutoff; never-seen profiles are excluded."""
        query = "SELECT id FROM profiles WHERE last_active_at < $1"
        rows = await self._execute_query(query, cutoff, fetch_all=True)
        return [str(row["id"]) for row in rows or []]

    async def list_recent(self, limit: int) -> List[Profile]:
        query = "SELECT * FROM profiles ORDER BY created_at DESC LIMIT $1"
        rows = await self._execute_query(query, limit, fetch_all=True)
        return self._rows_to_models(rows)
    async def list_joined_between(self, start: datetime, end: datetime) -> List[Profile]:
        query = """
            SELECT * FROM profiles
            WHERE is_admin = FALSE AND created_at > $1 AND created_at <= $2
        """
        rows = await self._execute_query(query, start, end, fetch_all=True)
        return self._rows_to_models(rows)

    async def find_by_handles(self, handles: List[str]) -> List[Profile]:
        """
        Resolve ``@handle`` mentions.

        A handle matches a first name or a full name with spaces removed,
        case-insensitively.
        """
        if not handles:
            return []
        query = """
            SELECT * FROM profiles
            WHERE lower(first_name) = ANY($1::text[])
               OR lower(replace(full_name, ' ', '')) = ANY($1::text[])
        """
        rows = await self._execute_query(query, [handle.lower() for handle in handles], fetch_all=True)
        return self._rows_to_models(rows)

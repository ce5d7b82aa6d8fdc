from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from amala_api.core.config import get_settings
from amala_api.schemas.locations import LocationFilter

LOCATION_COLUMNS = {"id", "status", "created_at", "updated_at"}
REVIEW_SELECT = """
  id::text as id,
  location_id::text as location_id,
  author,
  rating,
  text,
  author_photo,
  publish_time_description,
  source,
  status,
  photos,
  user_id,
  moderated_at,
  moderated_by,
  moderation_reason,
  date_posted
"""
EVENT_SELECT = """
  id,
  location_id::text as location_id,
  review_id::text as review_id,
  action,
  from_status,
  to_status,
  actor_id,
  reason,
  notes,
  created_at
"""


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a compare-and-set on record state fails."""


class RepositoryWriteError(RepositoryError):
    """Raised when a write is rejected after the database was reached."""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def list_all_locations(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, status, document, created_at, updated_at
            from locations
            order by created_at asc, id asc
            """
        )
        return [self._location_row_to_dict(row) for row in rows]

    async def list_locations(self, filters: LocationFilter) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        status = filters.effective_status()
        if status:
            conditions.append(f"status = {bind(status)}")

        if filters.search:
            token = bind(f"%{filters.search.strip()}%")
            conditions.append(
                f"(document->>'name' ilike {token} or document->>'address' ilike {token} "
                f"or coalesce(document->>'description', '') ilike {token})"
            )
        if filters.open_now is not None:
            conditions.append(f"coalesce((document->>'is_open_now')::boolean, false) = {bind(filters.open_now)}")
        if filters.service_type and filters.service_type != "all":
            conditions.append(f"document->>'service_type' = {bind(filters.service_type)}")
        if filters.price_range:
            conditions.append(f"document->>'price_range' = any({bind(list(filters.price_range))}::text[])")
        if filters.cuisine:
            cuisines = [item.strip().lower() for item in filters.cuisine if item.strip()]
            conditions.append(f"document->'cuisine' ?| {bind(cuisines)}::text[]")
        if filters.has_bounds:
            lat_sql = "(document->'coordinates'->>'lat')::float8"
            lng_sql = "(document->'coordinates'->>'lng')::float8"
            conditions.append(f"{lat_sql} between {bind(filters.south)} and {bind(filters.north)}")
            west, east = bind(filters.west), bind(filters.east)
            if filters.west is not None and filters.east is not None and filters.west > filters.east:
                conditions.append(f"({lng_sql} >= {west} or {lng_sql} <= {east})")
            else:
                conditions.append(f"{lng_sql} between {west} and {east}")

        where_sql = " and ".join(conditions) if conditions else "true"
        order_sql = {
            "name_asc": "lower(document->>'name') asc, id asc",
            "name_desc": "lower(document->>'name') desc, id asc",
        }.get(filters.sort_by, "created_at desc, id asc")
        limit_token = bind(filters.limit)
        offset_token = bind(filters.offset)

        rows = await pool.fetch(
            f"""
            select id::text as id, status, document, created_at, updated_at
            from locations
            where {where_sql}
            order by {order_sql}
            limit {limit_token}
            offset {offset_token}
            """,
            *params,
        )
        return [self._location_row_to_dict(row) for row in rows]

    async def list_locations_by_status(self, status: str, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, status, document, created_at, updated_at
            from locations
            where status = $1
            order by created_at asc, id asc
            limit $2
            offset $3
            """,
            status,
            limit,
            offset,
        )
        return [self._location_row_to_dict(row) for row in rows]

    async def get_location(self, location_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select id::text as id, status, document, created_at, updated_at
                from locations
                where id = $1::uuid
                """,
                location_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("location not found") from exc
        if not row:
            raise RepositoryNotFoundError("location not found")
        return self._location_row_to_dict(row)

    async def create_location(self, document: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        body = _strip_columns(document)
        status = document.get("status") or "pending"
        try:
            row = await pool.fetchrow(
                """
                insert into locations (status, document)
                values ($1, $2::jsonb)
                returning id::text as id, status, document, created_at, updated_at
                """,
                status,
                json.dumps(body),
            )
        except (pg_exc.IntegrityConstraintViolationError, asyncpg.DataError) as exc:
            raise RepositoryWriteError("location could not be stored") from exc
        return self._location_row_to_dict(row)

    async def update_location(self, location_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                update locations
                set document = document || $2::jsonb,
                    updated_at = now()
                where id = $1::uuid
                returning id::text as id, status, document, created_at, updated_at
                """,
                location_id,
                json.dumps(_strip_columns(changes)),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("location not found") from exc
        except pg_exc.IntegrityConstraintViolationError as exc:
            raise RepositoryWriteError("location could not be updated") from exc
        if not row:
            raise RepositoryNotFoundError("location not found")
        return self._location_row_to_dict(row)

    async def apply_status_change(
        self,
        *,
        location_id: str,
        expected_status: str,
        changes: dict[str, Any],
        event: dict[str, Any],
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        new_status = changes["status"]
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        """
                        select status
                        from locations
                        where id = $1::uuid
                        for update
                        """,
                        location_id,
                    )
                    if not existing:
                        raise RepositoryNotFoundError("location not found")
                    if existing["status"] != expected_status:
                        raise RepositoryConflictError(
                            f"location status is {existing['status']}, expected {expected_status}"
                        )

                    row = await conn.fetchrow(
                        """
                        update locations
                        set status = $2,
                            document = document || $3::jsonb,
                            updated_at = now()
                        where id = $1::uuid
                        returning id::text as id, status, document, created_at, updated_at
                        """,
                        location_id,
                        new_status,
                        json.dumps(_strip_columns(changes)),
                    )
                    await conn.execute(
                        """
                        insert into moderation_events (
                          location_id,
                          action,
                          from_status,
                          to_status,
                          actor_id,
                          reason,
                          notes,
                          created_at
                        )
                        values ($1::uuid, $2, $3, $4, $5, $6, $7, coalesce($8, now()))
                        """,
                        location_id,
                        event["action"],
                        expected_status,
                        new_status,
                        event.get("actor_id"),
                        event.get("reason"),
                        event.get("notes"),
                        _parse_timestamp(event.get("created_at")),
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("location not found") from exc
        except pg_exc.IntegrityConstraintViolationError as exc:
            raise RepositoryWriteError("moderation change could not be stored") from exc
        return self._location_row_to_dict(row)

    async def list_moderation_events(self, location_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {EVENT_SELECT}
                from moderation_events
                where location_id = $1::uuid
                order by created_at asc, id asc
                """,
                location_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("location not found") from exc
        return [self._event_row_to_dict(row) for row in rows]

    async def replace_reviews_by_source(self, location_id: str, source: str, reviews: list[dict[str, Any]]) -> int:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "delete from location_reviews where location_id = $1::uuid and source = $2",
                        location_id,
                        source,
                    )
                    for review in reviews:
                        await conn.execute(
                            """
                            insert into location_reviews (
                              location_id,
                              author,
                              rating,
                              text,
                              author_photo,
                              publish_time_description,
                              source,
                              status,
                              date_posted
                            )
                            values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9)
                            """,
                            location_id,
                            review["author"],
                            review["rating"],
                            review.get("text"),
                            review.get("author_photo"),
                            review.get("publish_time_description"),
                            source,
                            review.get("status", "approved"),
                            _parse_timestamp(review.get("date_posted")),
                        )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("location not found") from exc
        except (pg_exc.IntegrityConstraintViolationError, asyncpg.DataError) as exc:
            raise RepositoryWriteError("reviews could not be stored") from exc
        return len(reviews)

    async def list_reviews(self, location_id: str, *, status: str = "approved") -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {REVIEW_SELECT}
                from location_reviews
                where location_id = $1::uuid
                  and status = $2
                order by date_posted desc nulls last, id asc
                """,
                location_id,
                status,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("location not found") from exc
        return [self._review_row_to_dict(row) for row in rows]

    async def create_review(self, location_id: str, review: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into location_reviews (
                  location_id,
                  author,
                  rating,
                  text,
                  photos,
                  source,
                  status,
                  user_id,
                  date_posted
                )
                values ($1::uuid, $2, $3, $4, $5::jsonb, $6, $7, $8, coalesce($9, now()))
                returning {REVIEW_SELECT}
                """,
                location_id,
                review["author"],
                review["rating"],
                review.get("text"),
                json.dumps(review.get("photos") or []),
                review["source"],
                review.get("status", "pending"),
                review.get("user_id"),
                _parse_timestamp(review.get("date_posted")),
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError) as exc:
            raise RepositoryNotFoundError("location not found") from exc
        except (pg_exc.IntegrityConstraintViolationError, asyncpg.DataError) as exc:
            raise RepositoryWriteError("review could not be stored") from exc
        return self._review_row_to_dict(row)

    async def get_review(self, review_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {REVIEW_SELECT} from location_reviews where id = $1::uuid",
                review_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("review not found") from exc
        if not row:
            raise RepositoryNotFoundError("review not found")
        return self._review_row_to_dict(row)

    async def update_review_status(
        self,
        *,
        review_id: str,
        expected_status: str,
        changes: dict[str, Any],
        event: dict[str, Any],
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        new_status = changes["status"]
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        """
                        select status, location_id
                        from location_reviews
                        where id = $1::uuid
                        for update
                        """,
                        review_id,
                    )
                    if not existing:
                        raise RepositoryNotFoundError("review not found")
                    if existing["status"] != expected_status:
                        raise RepositoryConflictError(
                            f"review status is {existing['status']}, expected {expected_status}"
                        )

                    row = await conn.fetchrow(
                        f"""
                        update location_reviews
                        set status = $2,
                            moderated_at = coalesce($3, now()),
                            moderated_by = $4,
                            moderation_reason = $5
                        where id = $1::uuid
                        returning {REVIEW_SELECT}
                        """,
                        review_id,
                        new_status,
                        _parse_timestamp(changes.get("moderated_at")),
                        changes.get("moderated_by"),
                        changes.get("moderation_reason"),
                    )
                    await conn.execute(
                        """
                        insert into moderation_events (
                          location_id,
                          review_id,
                          action,
                          from_status,
                          to_status,
                          actor_id,
                          reason,
                          notes,
                          created_at
                        )
                        values ($1, $2::uuid, $3, $4, $5, $6, $7, $8, coalesce($9, now()))
                        """,
                        existing["location_id"],
                        review_id,
                        event["action"],
                        expected_status,
                        new_status,
                        event.get("actor_id"),
                        event.get("reason"),
                        event.get("notes"),
                        _parse_timestamp(event.get("created_at")),
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("review not found") from exc
        except pg_exc.IntegrityConstraintViolationError as exc:
            raise RepositoryWriteError("review moderation could not be stored") from exc
        return self._review_row_to_dict(row)

    async def list_moderation_history(
        self,
        *,
        actor_id: str | None = None,
        since: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        pool = await self._get_pool()
        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if actor_id:
            conditions.append(f"actor_id = {bind(actor_id)}")
        if since is not None:
            conditions.append(f"created_at >= {bind(since)}")
        where_sql = " and ".join(conditions) if conditions else "true"

        total = await pool.fetchval(f"select count(*) from moderation_events where {where_sql}", *params)
        limit_token = bind(limit)
        offset_token = bind(offset)
        rows = await pool.fetch(
            f"""
            select {EVENT_SELECT}
            from moderation_events
            where {where_sql}
            order by created_at desc, id desc
            limit {limit_token}
            offset {offset_token}
            """,
            *params,
        )
        return [self._event_row_to_dict(row) for row in rows], int(total or 0)

    async def count_locations_by_status(self, *, since: datetime | None = None) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select status, count(*) as total
            from locations
            where $1::timestamptz is null or created_at >= $1::timestamptz
            group by status
            """,
            since,
        )
        return {row["status"]: int(row["total"]) for row in rows}

    async def count_reviews_by_status(self, *, since: datetime | None = None) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select status, count(*) as total
            from location_reviews
            where $1::timestamptz is null or created_at >= $1::timestamptz
            group by status
            """,
            since,
        )
        return {row["status"]: int(row["total"]) for row in rows}

    async def count_moderation_events(self, *, since: datetime | None = None) -> int:
        pool = await self._get_pool()
        total = await pool.fetchval(
            """
            select count(*)
            from moderation_events
            where $1::timestamptz is null or created_at >= $1::timestamptz
            """,
            since,
        )
        return int(total or 0)

    async def increment_rate_counter(self, key: str, window_millis: int) -> int:
        pool = await self._get_pool()
        count = await pool.fetchval(
            """
            insert into rate_limit_counters (key, count, window_expires_at)
            values ($1, 1, now() + make_interval(secs => $2::float8 / 1000.0))
            on conflict (key) do update
            set
              count = case
                when rate_limit_counters.window_expires_at <= now() then 1
                else rate_limit_counters.count + 1
              end,
              window_expires_at = case
                when rate_limit_counters.window_expires_at <= now() then excluded.window_expires_at
                else rate_limit_counters.window_expires_at
              end
            returning count
            """,
            key,
            window_millis,
        )
        return int(count)

    async def rate_counter_reset_after_millis(self, key: str) -> int:
        pool = await self._get_pool()
        remaining = await pool.fetchval(
            """
            select greatest(0, ceil(extract(epoch from (window_expires_at - now())) * 1000))::bigint
            from rate_limit_counters
            where key = $1
            """,
            key,
        )
        return int(remaining or 0)

    async def record_analytics_event(self, event_type: str, payload: dict[str, Any]) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "insert into analytics_events (event_type, payload) values ($1, $2::jsonb)",
            event_type,
            json.dumps(payload),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("AMALA_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _location_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        document = row["document"]
        if isinstance(document, str):
            try:
                document = json.loads(document)
            except json.JSONDecodeError:
                document = {}
        if not isinstance(document, dict):
            document = {}
        return {
            **document,
            "id": row["id"],
            "status": row["status"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _review_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        review = dict(row)
        photos = review.get("photos")
        if isinstance(photos, str):
            try:
                photos = json.loads(photos)
            except json.JSONDecodeError:
                photos = []
        review["photos"] = photos if isinstance(photos, list) else []
        return review

    @staticmethod
    def _event_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {**dict(row), "id": str(row["id"])}


def _strip_columns(document: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in document.items() if key not in LOCATION_COLUMNS}


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


@lru_cache
def get_repository():
    settings = get_settings()
    if settings.repository_backend == "memory":
        from amala_api.services.store import InMemoryLocationRepository

        return InMemoryLocationRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )

"""SQLite storage for listings, version links and manual links."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator, Iterator, Sequence
from pathlib import Path
from typing import Any, Final, TypeVar

import aiosqlite

from immo_watch.db.link_repo import ManualLinkRepository
from immo_watch.db.row_mappers import EXTENDED_COLUMNS, build_insert_values, row_to_listing
from immo_watch.errors import MigrationPendingError
from immo_watch.logging import get_logger
from immo_watch.models import (
    Coordinates,
    EdgeKind,
    Listing,
    StoredListing,
    VersionEdge,
    now_ms,
)

logger = get_logger(__name__)

# SQLite's default limit is 999 host parameters per statement
_CHUNK_SIZE: Final = 500

T = TypeVar("T")


@contextlib.contextmanager
def _migration_guard() -> Iterator[None]:
    """Translate "no such column/table" errors into MigrationPendingError."""
    try:
        yield
    except aiosqlite.OperationalError as e:
        message = str(e).lower()
        if "no such column" in message or "no such table" in message:
            raise MigrationPendingError(str(e)) from e
        raise


def _chunks(items: Sequence[T], size: int = _CHUNK_SIZE) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class ListingStorage:
    """SQLite-based storage for listings.

    All writes go through one connection and are serialized with a lock, so
    concurrent pipeline runs never interleave a read-then-write on the same
    rows. ``transaction()`` groups several writes into one commit.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory.
        """
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._transaction_task: asyncio.Task[Any] | None = None
        self._extended: bool | None = None
        self._ensure_directory()
        self.links = ManualLinkRepository(self._reading, self._writing)

    def _ensure_directory(self) -> None:
        """Ensure the directory for the database exists."""
        if self.db_path != ":memory:":
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
        return self._conn

    @contextlib.asynccontextmanager
    async def _reading(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self._get_connection()
        with _migration_guard():
            yield conn

    @contextlib.asynccontextmanager
    async def _writing(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the connection for writes, committing afterwards.

        Inside ``transaction()`` the surrounding transaction is joined and the
        commit is left to it.
        """
        conn = await self._get_connection()
        if self._transaction_task is not None and self._transaction_task is asyncio.current_task():
            with _migration_guard():
                yield conn
            return

        async with self._write_lock:
            try:
                with _migration_guard():
                    yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Group writes made by the current task into a single commit.

        Rolls back everything when the block raises.
        """
        async with self._writing() as conn:
            self._transaction_task = asyncio.current_task()
            try:
                yield
            except BaseException:
                await conn.rollback()
                raise
            finally:
                self._transaction_task = None

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def initialize(self, *, apply_migrations: bool = True) -> None:
        """Create the schema.

        Args:
            apply_migrations: Add the identity/version columns and the manual
                link table. Without them the store still accepts listings,
                and versioning reports MigrationPendingError.
        """
        conn = await self._get_connection()
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS listings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL,
                job_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                provider_listing_id TEXT,
                title TEXT,
                address TEXT,
                price REAL,
                size REAL,
                link TEXT,
                image_url TEXT,
                description TEXT,
                latitude REAL,
                longitude REAL,
                created_at INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                deactivated_at INTEGER,
                distance_to_destination REAL,
                UNIQUE (job_id, hash)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_listings_job_provider
            ON listings(job_id, provider)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_listings_address
            ON listings(address)
        """)

        if apply_migrations:
            await self._migrate(conn)

        await conn.commit()
        self._extended = None

    async def _migrate(self, conn: aiosqlite.Connection) -> None:
        # Migrate: add identity, version and enrichment columns
        for column, col_type, default in EXTENDED_COLUMNS:
            try:
                default_clause = f" DEFAULT {default}" if default is not None else ""
                await conn.execute(
                    f"ALTER TABLE listings ADD COLUMN {column} {col_type}{default_clause}"
                )
            except aiosqlite.OperationalError as e:
                if "duplicate column" not in str(e).lower():
                    raise

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_listings_property_identity
            ON listings(job_id, property_identity)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_listings_fuzzy_identity
            ON listings(job_id, fuzzy_identity)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_listings_previous_version
            ON listings(previous_version_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS manual_property_links (
                id TEXT PRIMARY KEY,
                listing_id_low INTEGER NOT NULL,
                listing_id_high INTEGER NOT NULL,
                created_by TEXT,
                created_at INTEGER NOT NULL,
                UNIQUE (listing_id_low, listing_id_high)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_manual_links_high
            ON manual_property_links(listing_id_high)
        """)

    async def has_extended_columns(self) -> bool:
        """Whether the identity/version migration has been applied."""
        if self._extended is None:
            conn = await self._get_connection()
            cursor = await conn.execute("PRAGMA table_info(listings)")
            columns = {row["name"] for row in await cursor.fetchall()}
            self._extended = all(name in columns for name, _, _ in EXTENDED_COLUMNS)
        return self._extended

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def get_known_hashes(self, job_id: str, provider: str) -> set[str]:
        """Hashes already stored for a job and provider, including deleted ones."""
        async with self._reading() as conn:
            cursor = await conn.execute(
                "SELECT hash FROM listings WHERE job_id = ? AND provider = ?",
                (job_id, provider),
            )
            rows = await cursor.fetchall()
        return {row["hash"] for row in rows}

    async def persist(self, job_id: str, listings: Sequence[Listing]) -> int:
        """Insert listings in one transaction; existing (job, hash) pairs are skipped.

        Returns:
            Number of rows actually inserted.
        """
        if not listings:
            return 0

        extended = await self.has_extended_columns()
        if not extended:
            logger.debug("migration_pending", operation="persist", job_id=job_id)

        created_at = now_ms()
        inserted = 0
        async with self._writing() as conn:
            for listing in listings:
                columns, values = build_insert_values(
                    job_id, listing, created_at, extended=extended
                )
                placeholders = ", ".join("?" for _ in columns)
                cursor = await conn.execute(
                    f"""
                    INSERT INTO listings ({", ".join(columns)})
                    VALUES ({placeholders})
                    ON CONFLICT(job_id, hash) DO NOTHING
                    """,
                    values,
                )
                inserted += cursor.rowcount
        logger.info(
            "listings_persisted",
            job_id=job_id,
            count=inserted,
            skipped=len(listings) - inserted,
        )
        return inserted

    async def get_ids_for_hashes(self, job_id: str, hashes: Sequence[str]) -> dict[str, int]:
        """Map listing hashes of a job to their surrogate ids, in batched reads."""
        result: dict[str, int] = {}
        unique = list(dict.fromkeys(hashes))
        async with self._reading() as conn:
            for chunk in _chunks(unique):
                placeholders = ",".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"SELECT id, hash FROM listings WHERE job_id = ? AND hash IN ({placeholders})",
                    [job_id, *chunk],
                )
                for row in await cursor.fetchall():
                    result[row["hash"]] = row["id"]
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_listing(self, listing_id: int) -> StoredListing | None:
        async with self._reading() as conn:
            cursor = await conn.execute("SELECT * FROM listings WHERE id = ?", (listing_id,))
            row = await cursor.fetchone()
        return row_to_listing(row) if row else None

    async def get_listings(self, listing_ids: Sequence[int]) -> dict[int, StoredListing]:
        """Fetch several listings by id; unknown ids are left out."""
        result: dict[int, StoredListing] = {}
        async with self._reading() as conn:
            for chunk in _chunks(list(dict.fromkeys(listing_ids))):
                placeholders = ",".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"SELECT * FROM listings WHERE id IN ({placeholders})", list(chunk)
                )
                for row in await cursor.fetchall():
                    listing = row_to_listing(row)
                    result[listing.id] = listing
        return result

    async def find_by_property_identity(
        self, job_id: str, identity: str, *, exclude_hash: str | None = None
    ) -> StoredListing | None:
        """Newest non-deleted listing of a job with the given strict identity."""
        async with self._reading() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM listings
                WHERE job_id = ? AND property_identity = ? AND hash != ?
                  AND manually_deleted = 0
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (job_id, identity, exclude_hash or ""),
            )
            row = await cursor.fetchone()
        return row_to_listing(row) if row else None

    async def find_by_fuzzy_identities(
        self, job_id: str, identities: Sequence[str]
    ) -> dict[str, StoredListing]:
        """Newest non-deleted listing per fuzzy identity, in batched reads."""
        result: dict[str, StoredListing] = {}
        unique = list(dict.fromkeys(identities))
        async with self._reading() as conn:
            for chunk in _chunks(unique):
                placeholders = ",".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"""
                    SELECT * FROM (
                        SELECT *, ROW_NUMBER() OVER (
                            PARTITION BY fuzzy_identity ORDER BY created_at DESC, id DESC
                        ) AS rn
                        FROM listings
                        WHERE job_id = ? AND fuzzy_identity IN ({placeholders})
                          AND manually_deleted = 0
                    ) WHERE rn = 1
                    """,
                    [job_id, *chunk],
                )
                for row in await cursor.fetchall():
                    data = dict(row)
                    data.pop("rn", None)
                    listing = row_to_listing(data)
                    if listing.fuzzy_identity:
                        result[listing.fuzzy_identity] = listing
        return result

    async def get_coordinates_by_address(self, address: str) -> Coordinates | None:
        """Coordinates previously stored for the exact same address text."""
        async with self._reading() as conn:
            cursor = await conn.execute(
                """
                SELECT latitude, longitude FROM listings
                WHERE address = ? AND latitude IS NOT NULL AND longitude IS NOT NULL
                  AND NOT (latitude = 0 AND longitude = 0)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (address,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return Coordinates(lat=row["latitude"], lng=row["longitude"])

    async def get_similarity_candidates(
        self, *, job_id: str | None = None, include_superseded: bool = False
    ) -> list[StoredListing]:
        """Non-deleted listings to compare against, optionally limited to one job."""
        clauses = ["manually_deleted = 0"]
        params: list[Any] = []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if not include_superseded:
            clauses.append("is_superseded = 0")
        async with self._reading() as conn:
            cursor = await conn.execute(
                f"SELECT * FROM listings WHERE {' AND '.join(clauses)} ORDER BY created_at DESC",
                params,
            )
            rows = await cursor.fetchall()
        return [row_to_listing(row) for row in rows]

    async def get_version_edges(self, listing_ids: Sequence[int]) -> list[VersionEdge]:
        """Version and manual-link edges touching any of the given listings."""
        edges: list[VersionEdge] = []
        ids = list(dict.fromkeys(listing_ids))
        async with self._reading() as conn:
            for chunk in _chunks(ids, _CHUNK_SIZE // 2):
                placeholders = ",".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"""
                    SELECT id, previous_version_id FROM listings
                    WHERE previous_version_id IS NOT NULL
                      AND (id IN ({placeholders}) OR previous_version_id IN ({placeholders}))
                    """,
                    [*chunk, *chunk],
                )
                edges.extend(
                    VersionEdge(
                        source=row["id"], target=row["previous_version_id"], kind=EdgeKind.VERSION
                    )
                    for row in await cursor.fetchall()
                )
        edges.extend(
            [
                VersionEdge(
                    source=link.listing_id_low, target=link.listing_id_high, kind=EdgeKind.MANUAL
                )
                async for link in self.links.iter_links_for_many(ids)
            ]
        )
        return edges

    # ------------------------------------------------------------------
    # Version bookkeeping
    # ------------------------------------------------------------------

    async def mark_superseded(self, listing_id: int) -> None:
        await self.set_superseded([listing_id], superseded=True)

    async def set_superseded(self, listing_ids: Sequence[int], *, superseded: bool) -> int:
        """Set or clear the superseded flag on several listings."""
        if not listing_ids:
            return 0
        updated = 0
        async with self._writing() as conn:
            for chunk in _chunks(list(listing_ids)):
                placeholders = ",".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"UPDATE listings SET is_superseded = ? WHERE id IN ({placeholders})",
                    [int(superseded), *chunk],
                )
                updated += cursor.rowcount
        return updated

    async def mark_superseded_by_hashes(self, job_id: str, hashes: Sequence[str]) -> int:
        """Mark listings of a job superseded by hash."""
        if not hashes:
            return 0
        updated = 0
        async with self._writing() as conn:
            for chunk in _chunks(list(hashes)):
                placeholders = ",".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"""
                    UPDATE listings SET is_superseded = 1
                    WHERE job_id = ? AND hash IN ({placeholders})
                    """,
                    [job_id, *chunk],
                )
                updated += cursor.rowcount
        return updated

    async def set_previous_version(self, listing_id: int, previous_id: int | None) -> None:
        async with self._writing() as conn:
            await conn.execute(
                "UPDATE listings SET previous_version_id = ? WHERE id = ?",
                (previous_id, listing_id),
            )

    async def apply_version_links(self, links: Sequence[tuple[int, int]]) -> int:
        """Set ``previous_version_id`` and supersede the predecessor for each pair.

        Args:
            links: (listing id, previous listing id) pairs.

        Returns:
            Number of listings updated.
        """
        if not links:
            return 0
        async with self._writing() as conn:
            await conn.executemany(
                "UPDATE listings SET previous_version_id = ? WHERE id = ?",
                [(previous_id, listing_id) for listing_id, previous_id in links],
            )
            await conn.executemany(
                "UPDATE listings SET is_superseded = 1 WHERE id = ?",
                [(previous_id,) for _, previous_id in links],
            )
        return len(links)

    async def update_change_set(self, listing_id: int, change_set: dict[str, Any]) -> None:
        async with self._writing() as conn:
            await conn.execute(
                "UPDATE listings SET change_set = ? WHERE id = ?",
                (json.dumps(change_set), listing_id),
            )

    async def update_distance(self, listing_id: int, meters: float) -> None:
        async with self._writing() as conn:
            await conn.execute(
                "UPDATE listings SET distance_to_destination = ? WHERE id = ?",
                (meters, listing_id),
            )

    # ------------------------------------------------------------------
    # Tombstones
    # ------------------------------------------------------------------

    async def soft_delete_listings(self, listing_ids: Sequence[int]) -> int:
        """Hide listings from identity and similarity queries. Reversible."""
        return await self._set_deleted(listing_ids, deleted=True)

    async def restore_listings(self, listing_ids: Sequence[int]) -> int:
        return await self._set_deleted(listing_ids, deleted=False)

    async def _set_deleted(self, listing_ids: Sequence[int], *, deleted: bool) -> int:
        if not listing_ids:
            return 0
        updated = 0
        async with self._writing() as conn:
            for chunk in _chunks(list(listing_ids)):
                placeholders = ",".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"UPDATE listings SET manually_deleted = ? WHERE id IN ({placeholders})",
                    [int(deleted), *chunk],
                )
                updated += cursor.rowcount
        return updated

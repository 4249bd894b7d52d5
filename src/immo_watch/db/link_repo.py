"""Manual link repository: user-created edges between listings."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager

import aiosqlite

from immo_watch.db.row_mappers import row_to_manual_link
from immo_watch.models import ManualLink


def canonical_pair(listing_id1: int, listing_id2: int) -> tuple[int, int]:
    """Order a pair so (a, b) and (b, a) map to the same row."""
    return (listing_id1, listing_id2) if listing_id1 < listing_id2 else (listing_id2, listing_id1)


class ManualLinkRepository:
    """Database operations on ``manual_property_links``."""

    def __init__(
        self,
        get_connection: Callable[[], AbstractAsyncContextManager[aiosqlite.Connection]],
        writing: Callable[[], AbstractAsyncContextManager[aiosqlite.Connection]],
    ) -> None:
        self._reading = get_connection
        self._writing = writing

    async def get_link(self, listing_id1: int, listing_id2: int) -> ManualLink | None:
        """Return the link between two listings in either order, if any."""
        low, high = canonical_pair(listing_id1, listing_id2)
        async with self._reading() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM manual_property_links
                WHERE listing_id_low = ? AND listing_id_high = ?
                """,
                (low, high),
            )
            row = await cursor.fetchone()
        return row_to_manual_link(row) if row else None

    async def insert_link(self, link: ManualLink) -> bool:
        """Insert a link; returns False when the pair is already linked."""
        async with self._writing() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO manual_property_links
                    (id, listing_id_low, listing_id_high, created_by, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(listing_id_low, listing_id_high) DO NOTHING
                """,
                (
                    link.id,
                    link.listing_id_low,
                    link.listing_id_high,
                    link.created_by,
                    link.created_at,
                ),
            )
            return cursor.rowcount > 0

    async def delete_link(self, listing_id1: int, listing_id2: int) -> bool:
        """Delete the link between two listings; returns whether one existed."""
        low, high = canonical_pair(listing_id1, listing_id2)
        async with self._writing() as conn:
            cursor = await conn.execute(
                """
                DELETE FROM manual_property_links
                WHERE listing_id_low = ? AND listing_id_high = ?
                """,
                (low, high),
            )
            return cursor.rowcount > 0

    async def delete_link_by_id(self, link_id: str) -> ManualLink | None:
        """Delete a link by its id, returning the removed link."""
        async with self._writing() as conn:
            cursor = await conn.execute(
                "SELECT * FROM manual_property_links WHERE id = ?", (link_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            await conn.execute("DELETE FROM manual_property_links WHERE id = ?", (link_id,))
        return row_to_manual_link(row)

    async def get_links_for(self, listing_id: int) -> list[ManualLink]:
        """All links touching a listing, oldest first."""
        async with self._reading() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM manual_property_links
                WHERE listing_id_low = ? OR listing_id_high = ?
                ORDER BY created_at, id
                """,
                (listing_id, listing_id),
            )
            rows = await cursor.fetchall()
        return [row_to_manual_link(row) for row in rows]

    async def iter_links_for_many(self, listing_ids: list[int]) -> AsyncIterator[ManualLink]:
        """Links touching any of the given listings, fetched in chunks."""
        chunk_size = 400
        async with self._reading() as conn:
            for i in range(0, len(listing_ids), chunk_size):
                chunk = listing_ids[i : i + chunk_size]
                placeholders = ",".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"""
                    SELECT * FROM manual_property_links
                    WHERE listing_id_low IN ({placeholders})
                       OR listing_id_high IN ({placeholders})
                    """,
                    [*chunk, *chunk],
                )
                for row in await cursor.fetchall():
                    yield row_to_manual_link(row)

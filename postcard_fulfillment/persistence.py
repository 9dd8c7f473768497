"""SQLite backed document store used by the fulfillment pipeline.

Every record is kept as a JSON document in a ``payload`` column next to the
few scalar columns that are queried directly (status, provider id). The API
mirrors the three operations the pipeline needs from its storage
collaborator: read one by id, read a collection with a filter, and
write/merge one by id.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite


class Persistence:
    """Helper class responsible for reading and writing pipeline state."""

    def __init__(self, db_path: str = "/data/fulfillment.db"):
        """Persist data to the given database path."""
        self.db_path = db_path or "/data/fulfillment.db"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS campaigns (
                    id TEXT PRIMARY KEY,
                    status TEXT,
                    payload TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_campaigns_status ON campaigns(status)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS brands (
                    owner_uid TEXT NOT NULL,
                    id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (owner_uid, id)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS designs (
                    owner_uid TEXT NOT NULL,
                    id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (owner_uid, id)
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS leads (
                    campaign_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (campaign_id, id)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS lead_chunks (
                    campaign_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (campaign_id, chunk_index)
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS mailpieces (
                    campaign_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    provider_id TEXT,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (campaign_id, lead_id)
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_mailpieces_provider ON mailpieces(provider_id)")
            await db.commit()

    @staticmethod
    def _decode(payload: Optional[str]) -> Optional[Dict[str, Any]]:
        if payload is None:
            return None
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            return {"raw_payload": payload}

    # Campaigns ----------------------------------------------------------------
    async def put_campaign(self, campaign: Dict[str, Any]) -> None:
        """Insert or overwrite a campaign document."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO campaigns (id, status, payload) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    payload = excluded.payload,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (campaign["id"], campaign.get("status"), json.dumps(campaign, default=str)),
            )
            await db.commit()

    async def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single campaign document, ``None`` if it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT payload FROM campaigns WHERE id=?", (campaign_id,)) as cur:
                row = await cur.fetchone()
        return self._decode(row[0]) if row else None

    async def update_campaign(self, campaign_id: str, fields: Dict[str, Any]) -> bool:
        """Merge ``fields`` into a stored campaign. Returns ``False`` if it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT payload FROM campaigns WHERE id=?", (campaign_id,)) as cur:
                row = await cur.fetchone()
            if not row:
                return False
            document = self._decode(row[0]) or {}
            document.update(fields)
            await db.execute(
                "UPDATE campaigns SET status=?, payload=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                (document.get("status"), json.dumps(document, default=str), campaign_id),
            )
            await db.commit()
        return True

    async def transition_campaign(
        self, campaign_id: str, from_statuses: Iterable[str], fields: Dict[str, Any]
    ) -> bool:
        """Merge ``fields`` into a campaign whose status is one of ``from_statuses``.

        The update is conditioned on the exact payload read in the same call,
        so of two concurrent transitions of one campaign at most one returns
        ``True``. Returns ``False`` when the campaign is missing, has another
        status, or was changed in between.
        """
        allowed = set(from_statuses)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT status, payload FROM campaigns WHERE id=?", (campaign_id,)) as cur:
                row = await cur.fetchone()
            if not row or row[0] not in allowed:
                return False
            status, payload = row
            document = self._decode(payload) or {}
            document.update(fields)
            cursor = await db.execute(
                """
                UPDATE campaigns SET status=?, payload=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status=? AND payload=?
                """,
                (document.get("status"), json.dumps(document, default=str), campaign_id, status, payload),
            )
            await db.commit()
        return cursor.rowcount == 1

    async def list_campaigns(self, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return campaign documents, optionally filtered by status."""
        query = "SELECT payload FROM campaigns"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status=?"
            params = (status,)
        query += " ORDER BY created_at ASC, id ASC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [self._decode(row[0]) for row in rows]

    # Brands and designs -------------------------------------------------------
    async def put_brand(self, owner_uid: str, brand: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO brands (owner_uid, id, payload) VALUES (?, ?, ?)",
                (owner_uid, brand["id"], json.dumps(brand, default=str)),
            )
            await db.commit()

    async def get_brand(self, owner_uid: str, brand_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT payload FROM brands WHERE owner_uid=? AND id=?", (owner_uid, brand_id)
            ) as cur:
                row = await cur.fetchone()
        return self._decode(row[0]) if row else None

    async def put_design(self, owner_uid: str, design: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO designs (owner_uid, id, payload) VALUES (?, ?, ?)",
                (owner_uid, design["id"], json.dumps(design, default=str)),
            )
            await db.commit()

    async def get_design(self, owner_uid: str, design_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT payload FROM designs WHERE owner_uid=? AND id=?", (owner_uid, design_id)
            ) as cur:
                row = await cur.fetchone()
        return self._decode(row[0]) if row else None

    # Leads --------------------------------------------------------------------
    async def insert_leads(self, campaign_id: str, leads: Sequence[Dict[str, Any]]) -> int:
        """Store leads in the flat per-campaign collection."""
        if not leads:
            return 0
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(
                "INSERT OR REPLACE INTO leads (campaign_id, id, payload) VALUES (?, ?, ?)",
                [(campaign_id, str(lead["id"]), json.dumps(lead, default=str)) for lead in leads],
            )
            await db.commit()
        return len(leads)

    async def put_lead_chunk(self, campaign_id: str, chunk_index: int, leads: Sequence[Dict[str, Any]]) -> None:
        """Store one page of a chunked lead list."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO lead_chunks (campaign_id, chunk_index, payload) VALUES (?, ?, ?)",
                (campaign_id, int(chunk_index), json.dumps(list(leads), default=str)),
            )
            await db.commit()

    async def list_leads(self, campaign_id: str) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, payload FROM leads WHERE campaign_id=? ORDER BY rowid ASC", (campaign_id,)
            ) as cur:
                rows = await cur.fetchall()
        result = []
        for lead_id, payload in rows:
            lead = self._decode(payload) or {}
            lead.setdefault("id", lead_id)
            result.append(lead)
        return result

    async def list_lead_chunks(self, campaign_id: str) -> List[List[Dict[str, Any]]]:
        """Return the stored lead pages in chunk order."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT payload FROM lead_chunks WHERE campaign_id=? ORDER BY chunk_index ASC", (campaign_id,)
            ) as cur:
                rows = await cur.fetchall()
        chunks = []
        for (payload,) in rows:
            leads = self._decode(payload)
            chunks.append(leads if isinstance(leads, list) else [])
        return chunks

    # Mailpieces ---------------------------------------------------------------
    async def save_mailpiece(self, record: Dict[str, Any]) -> None:
        """Insert or overwrite the tracking document of one lead."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO mailpieces (campaign_id, lead_id, provider_id, status, payload)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(campaign_id, lead_id) DO UPDATE SET
                    provider_id = excluded.provider_id,
                    status = excluded.status,
                    payload = excluded.payload,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    record["campaign_id"],
                    record["lead_id"],
                    record.get("provider_id"),
                    record["status"],
                    json.dumps(record, default=str),
                ),
            )
            await db.commit()

    async def get_mailpiece(self, campaign_id: str, lead_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT payload FROM mailpieces WHERE campaign_id=? AND lead_id=?", (campaign_id, lead_id)
            ) as cur:
                row = await cur.fetchone()
        return self._decode(row[0]) if row else None

    async def find_mailpiece_by_provider_id(self, provider_id: str) -> Optional[Dict[str, Any]]:
        """Locate a tracking document through the provider id index."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT payload FROM mailpieces WHERE provider_id=? ORDER BY updated_at DESC LIMIT 1",
                (provider_id,),
            ) as cur:
                row = await cur.fetchone()
        return self._decode(row[0]) if row else None

    async def list_mailpieces(self, campaign_id: str, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT payload FROM mailpieces WHERE campaign_id=?"
        params: Tuple[Any, ...] = (campaign_id,)
        if status is not None:
            query += " AND status=?"
            params += (status,)
        query += " ORDER BY created_at ASC, lead_id ASC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [self._decode(row[0]) for row in rows]

    async def tracked_lead_ids(self, campaign_id: str, *, exclude_status: Iterable[str] = ()) -> set[str]:
        """Return lead ids with a tracking document, skipping the given statuses."""
        excluded = list(exclude_status)
        query = "SELECT lead_id FROM mailpieces WHERE campaign_id=?"
        params: List[Any] = [campaign_id]
        if excluded:
            query += f" AND status NOT IN ({','.join('?' for _ in excluded)})"
            params.extend(excluded)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return {row[0] for row in rows}

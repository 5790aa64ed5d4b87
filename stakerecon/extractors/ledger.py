import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

import psycopg2

from stakerecon.config import ActiveNodeRule, LedgerConfig
from stakerecon.models import EntityKey, Observation, dedupe_highest, normalize_delegator_key

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    pass


NODE_SERIES_SQL = (
    "SELECT block_number, stake FROM node_stake_updated "
    "WHERE identity_id = %s AND block_number >= %s ORDER BY block_number DESC"
)

DELEGATOR_SERIES_SQL = (
    "SELECT block_number, stake_base FROM delegator_base_stake_updated "
    "WHERE identity_id = %s AND lower(delegator_key) = %s AND block_number >= %s "
    "ORDER BY block_number DESC"
)

LATEST_NODE_STAKES_SQL = """
    SELECT DISTINCT ON (n.identity_id) n.identity_id, n.stake
    FROM node_stake_updated n
    ORDER BY n.identity_id, n.block_number DESC, n.stake DESC
"""

REGISTERED_FILTER_SQL = """
    WHERE latest.identity_id IN (SELECT identity_id FROM node_object_created)
    AND latest.identity_id NOT IN (SELECT identity_id FROM node_object_deleted)
"""

ACTIVE_DELEGATORS_SQL = """
    SELECT latest.identity_id, latest.delegator_key
    FROM (
        SELECT DISTINCT ON (d.identity_id, d.delegator_key)
            d.identity_id, d.delegator_key, d.stake_base
        FROM delegator_base_stake_updated d
        WHERE d.identity_id = ANY(%s)
        ORDER BY d.identity_id, d.delegator_key, d.block_number DESC, d.stake_base DESC
    ) latest
    WHERE latest.stake_base > 0
    ORDER BY latest.identity_id, latest.delegator_key
"""

OLDEST_BLOCK_SQL = """
    SELECT LEAST(
        (SELECT MIN(block_number) FROM node_stake_updated),
        (SELECT MIN(block_number) FROM delegator_base_stake_updated)
    )
"""

KNOWLEDGE_COLLECTION_SQL = "SELECT COUNT(*), MAX(block_number) FROM knowledge_collection_created"


def active_nodes_sql(rule: ActiveNodeRule) -> Tuple[str, List[Any]]:
    sql = f"SELECT latest.identity_id, latest.stake FROM ({LATEST_NODE_STAKES_SQL}) latest"
    if rule.require_registered:
        sql += REGISTERED_FILTER_SQL + " AND latest.stake >= %s"
    else:
        sql += " WHERE latest.stake >= %s"
    params: List[Any] = [rule.min_stake]
    sql += " ORDER BY latest.stake DESC, latest.identity_id"
    if rule.limit is not None:
        sql += " LIMIT %s"
        params.append(rule.limit)
    return sql, params


class LedgerSource:
    """Read-only access to one network's indexer database.

    Errors are wrapped in LedgerError and never retried here; the ledger is
    expected to be reachable and a failure usually means bad configuration.
    """

    def __init__(
        self,
        config: LedgerConfig,
        database: str,
        connect: Callable[..., Any] = psycopg2.connect,
    ) -> None:
        self.config = config
        self.database = database
        self._connect = connect

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        conn = None
        try:
            conn = self._connect(**self.config.dsn_kwargs(self.database))
            cursor = conn.cursor()
            try:
                yield cursor
            finally:
                cursor.close()
        except psycopg2.Error as exc:
            raise LedgerError(f"{self.database}: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Tuple[Any, ...]]:
        with self._cursor() as cursor:
            cursor.execute(sql, tuple(params))
            return cursor.fetchall()

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Tuple[Any, ...]]:
        return await asyncio.to_thread(self._fetchall, sql, params)

    async def node_series(self, node_id: int, from_block: Optional[int] = None) -> List[Observation]:
        rows = await self.query(NODE_SERIES_SQL, (node_id, from_block or 0))
        return dedupe_highest(Observation(int(b), int(v)) for b, v in rows)

    async def delegator_series(
        self, node_id: int, delegator_key: str, from_block: Optional[int] = None
    ) -> List[Observation]:
        rows = await self.query(DELEGATOR_SERIES_SQL, (node_id, delegator_key, from_block or 0))
        return dedupe_highest(Observation(int(b), int(v)) for b, v in rows)

    async def series(self, key: EntityKey, from_block: Optional[int] = None) -> List[Observation]:
        if key.delegator_key is None:
            return await self.node_series(key.node_id, from_block)
        return await self.delegator_series(key.node_id, key.delegator_key, from_block)

    async def active_nodes(self, rule: ActiveNodeRule) -> List[EntityKey]:
        sql, params = active_nodes_sql(rule)
        rows = await self.query(sql, params)
        return [EntityKey(int(node_id)) for node_id, _ in rows]

    async def active_delegators(self, node_ids: List[int]) -> List[EntityKey]:
        if not node_ids:
            return []
        rows = await self.query(ACTIVE_DELEGATORS_SQL, (list(node_ids),))
        return [EntityKey(int(node_id), normalize_delegator_key(str(key))) for node_id, key in rows]

    async def oldest_block(self) -> Optional[int]:
        rows = await self.query(OLDEST_BLOCK_SQL)
        if not rows or rows[0][0] is None:
            return None
        return int(rows[0][0])

    async def knowledge_collection_count(self) -> Tuple[int, Optional[int]]:
        rows = await self.query(KNOWLEDGE_COLLECTION_SQL)
        count, latest_block = rows[0]
        return int(count), int(latest_block) if latest_block is not None else None

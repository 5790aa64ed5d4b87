"""Tests for LedgerSource using a fake psycopg2 connection."""

import psycopg2
import pytest

from stakerecon.config import ActiveNodeRule, LedgerConfig
from stakerecon.extractors.ledger import (
    DELEGATOR_SERIES_SQL,
    NODE_SERIES_SQL,
    LedgerError,
    LedgerSource,
    active_nodes_sql,
)
from stakerecon.models import EntityKey, Observation


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rows = []
        self.closed = False

    def execute(self, sql, params=()):
        self.conn.executed.append((sql, params))
        if self.conn.error is not None:
            raise self.conn.error
        self.rows = self.conn.responder(sql, params)

    def fetchall(self):
        return self.rows

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, responder, error=None):
        self.responder = responder
        self.error = error
        self.executed = []
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True


def make_source(responder, error=None):
    connections = []

    def connect(**kwargs):
        conn = FakeConnection(responder, error)
        conn.kwargs = kwargs
        connections.append(conn)
        return conn

    source = LedgerSource(LedgerConfig(host="db.local", password="pw"), "gnosis-mainnet-db", connect=connect)
    return source, connections


@pytest.mark.asyncio
async def test_node_series_deduplicates():
    source, connections = make_source(lambda sql, params: [(10, 5), (10, "7"), (4, 1)])
    series = await source.node_series(9)

    assert series == [Observation(10, 7), Observation(4, 1)]
    sql, params = connections[0].executed[0]
    assert sql == NODE_SERIES_SQL
    assert params == (9, 0)
    assert connections[0].kwargs["dbname"] == "gnosis-mainnet-db"
    assert connections[0].closed


@pytest.mark.asyncio
async def test_series_dispatches_on_key():
    source, connections = make_source(lambda sql, params: [(3, 30)])
    key = EntityKey(2, "0x" + "ab" * 32)
    assert await source.series(key, from_block=100) == [Observation(3, 30)]
    sql, params = connections[0].executed[0]
    assert sql == DELEGATOR_SERIES_SQL
    assert params == (2, key.delegator_key, 100)


@pytest.mark.asyncio
async def test_active_delegators_normalises_keys():
    source, _ = make_source(lambda sql, params: [(1, "0xAB")])
    keys = await source.active_delegators([1])
    assert keys == [EntityKey(1, "0x" + "0" * 62 + "ab")]


@pytest.mark.asyncio
async def test_active_delegators_without_nodes_skips_query():
    source, connections = make_source(lambda sql, params: [])
    assert await source.active_delegators([]) == []
    assert connections == []


@pytest.mark.asyncio
async def test_oldest_block_of_empty_ledger():
    source, _ = make_source(lambda sql, params: [(None,)])
    assert await source.oldest_block() is None


@pytest.mark.asyncio
async def test_knowledge_collection_count():
    source, _ = make_source(lambda sql, params: [(1500, 987654)])
    assert await source.knowledge_collection_count() == (1500, 987654)


@pytest.mark.asyncio
async def test_database_errors_are_wrapped():
    source, connections = make_source(lambda sql, params: [], error=psycopg2.OperationalError("server closed"))
    with pytest.raises(LedgerError, match="gnosis-mainnet-db"):
        await source.node_series(1)
    assert connections[0].closed


class TestActiveNodesSql:
    def test_registered_nodes(self):
        sql, params = active_nodes_sql(ActiveNodeRule(min_stake=50))
        assert "node_object_created" in sql
        assert "LIMIT" not in sql
        assert params == [50]

    def test_unregistered_with_limit(self):
        sql, params = active_nodes_sql(ActiveNodeRule(min_stake=50, require_registered=False, limit=24))
        assert "node_object_created" not in sql
        assert sql.rstrip().endswith("LIMIT %s")
        assert params == [50, 24]


def test_dsn_kwargs():
    kwargs = LedgerConfig(host="h", sslmode="require").dsn_kwargs("nw-mainnet-db")
    assert kwargs["dbname"] == "nw-mainnet-db"
    assert kwargs["sslmode"] == "require"
    assert "sslmode" not in LedgerConfig(host="h").dsn_kwargs("x")

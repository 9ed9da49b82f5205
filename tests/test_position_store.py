from unittest.mock import MagicMock

import pytest
from pyiceberg.exceptions import NoSuchTableError

from scaling_service.iceberg_position_store import IcebergPositionStore
from scaling_service.position import BinlogPosition
from scaling_service.position_store import RedisPositionStore


class FakeRedis:
    def __init__(self):
        self.hashes = {}

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def hset(self, key, field=None, value=None, mapping=None):
        values = self.hashes.setdefault(key, {})
        if field is not None:
            values[field] = str(value)
        for k, v in (mapping or {}).items():
            values[k] = str(v)


def test_position_ordering():
    earlier = BinlogPosition(log_file="mysql-bin.000009", log_pos=900)
    later = BinlogPosition(log_file="mysql-bin.000010", log_pos=4)

    assert later.is_after(earlier)
    assert not earlier.is_after(later)
    assert not later.is_after(later)
    assert later.is_after(BinlogPosition())


def test_position_ordering_follows_file_sequence_number():
    earlier = BinlogPosition(log_file="mysql-bin.999999", log_pos=9000)
    later = BinlogPosition(log_file="mysql-bin.1000000", log_pos=4)

    assert later.is_after(earlier)
    assert not earlier.is_after(later)


def test_position_only_advances():
    position = BinlogPosition(log_file="mysql-bin.000010", log_pos=500)

    assert not position.advance("mysql-bin.000010", 400)
    assert position.advance("mysql-bin.000011", 4)
    assert str(position) == "mysql-bin.000011:4"


def test_redis_store_round_trips_position():
    store = RedisPositionStore(client=FakeRedis())

    assert store.get_position("job") is None
    assert store.set_position("job", BinlogPosition(log_file="mysql-bin.000002", log_pos=120, server_id="3"))

    position = store.get_position("job")
    assert (position.log_file, position.log_pos, position.server_id) == ("mysql-bin.000002", 120, "3")


def test_redis_store_never_moves_back():
    client = FakeRedis()
    store = RedisPositionStore(client=client)
    store.set_position("job", BinlogPosition(log_file="mysql-bin.000002", log_pos=120))

    assert not store.set_position("job", BinlogPosition(log_file="mysql-bin.000001", log_pos=9999))
    assert not store.set_position("job", BinlogPosition())
    assert client.hashes["scaling:job"]["log_file"] == "mysql-bin.000002"


def test_redis_store_full_sync_flag():
    store = RedisPositionStore(client=FakeRedis())

    assert not store.is_full_sync_complete("job")
    store.mark_full_sync_complete("job")
    assert store.is_full_sync_complete("job")


class FakeIcebergTable:
    def __init__(self):
        self.rows = {}
        self.upserts = []

    def scan(self, row_filter):
        job_id = row_filter.literal.value
        scan = MagicMock()
        scan.to_arrow.return_value.to_pylist.return_value = (
            [dict(self.rows[job_id])] if job_id in self.rows else []
        )
        return scan

    def upsert(self, arrow_table):
        self.upserts.append(arrow_table)
        for row in arrow_table.to_pylist():
            self.rows[row["job_id"]] = row
        return MagicMock(rows_updated=0, rows_inserted=1)


@pytest.fixture
def iceberg_table():
    return FakeIcebergTable()


@pytest.fixture
def iceberg_store(iceberg_table):
    catalog = MagicMock()
    catalog.load_table.return_value = iceberg_table
    return IcebergPositionStore(catalog=catalog)


def test_iceberg_store_creates_missing_table():
    catalog = MagicMock()
    catalog.load_table.side_effect = NoSuchTableError("missing")

    IcebergPositionStore(catalog=catalog)

    kwargs = catalog.create_table.call_args.kwargs
    assert kwargs["identifier"] == "scaling_metadata.positions"
    assert kwargs["schema"].find_field("job_id").required


def test_iceberg_store_upserts_position(iceberg_store, iceberg_table):
    assert iceberg_store.get_position("job") is None
    assert iceberg_store.set_position("job", BinlogPosition(log_file="mysql-bin.000004", log_pos=77))

    position = iceberg_store.get_position("job")
    assert str(position) == "mysql-bin.000004:77"
    assert not iceberg_store.set_position("job", BinlogPosition(log_file="mysql-bin.000004", log_pos=10))
    assert len(iceberg_table.upserts) == 1


def test_iceberg_store_full_sync_flag_keeps_position(iceberg_store):
    iceberg_store.set_position("job", BinlogPosition(log_file="mysql-bin.000004", log_pos=77))
    iceberg_store.mark_full_sync_complete("job")

    assert iceberg_store.is_full_sync_complete("job")
    assert str(iceberg_store.get_position("job")) == "mysql-bin.000004:77"

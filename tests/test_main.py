import pytest

from scaling_service import iceberg_position_store, main
from scaling_service.config import JobSettings
from scaling_service.errors import SyncFailedError
from scaling_service.position_store import RedisPositionStore
from scaling_service.scheduler import SyncSummary


@pytest.fixture
def settings(source_config, target_config):
    return JobSettings(job_id="shop-move", source=source_config, target=target_config)


@pytest.fixture
def job_env(monkeypatch):
    monkeypatch.setenv("JOB_ID", "shop-move")
    monkeypatch.setenv("SOURCE_URL", "jdbc:mysql://source-db:3306/shop")
    monkeypatch.setenv("TARGET_URL", "mysql://target-db:3307/shop")
    monkeypatch.setenv("SYNC_MODE", "full")
    monkeypatch.setattr(main.signal, "signal", lambda signum, handler: None)
    monkeypatch.setattr(main, "build_position_store", lambda settings: object())


def test_redis_store_is_the_default(settings):
    store = main.build_position_store(settings)

    assert isinstance(store, RedisPositionStore)


def test_iceberg_store_is_selectable(settings, monkeypatch):
    class StubStore:
        pass

    monkeypatch.setattr(iceberg_position_store, "IcebergPositionStore", StubStore)

    store = main.build_position_store(settings.model_copy(update={"position_store": "iceberg"}))

    assert isinstance(store, StubStore)


def test_unknown_store_is_rejected(settings):
    with pytest.raises(RuntimeError):
        main.build_position_store(settings.model_copy(update={"position_store": "zookeeper"}))


def test_main_returns_zero_when_job_finishes(job_env, monkeypatch):
    class FinishedJob:
        def __init__(self, settings, position_store):
            self.settings = settings

        def run(self):
            return SyncSummary(total=1, finished=["orders#0"])

    monkeypatch.setattr(main, "ScalingJob", FinishedJob)

    assert main.main() == 0


def test_main_returns_one_when_full_sync_fails(job_env, monkeypatch):
    class FailedJob:
        def __init__(self, settings, position_store):
            pass

        def run(self):
            summary = SyncSummary(total=2, finished=["orders#0"], failed={"orders#1": "boom"})
            raise SyncFailedError("Full sync failed", summary)

    monkeypatch.setattr(main, "ScalingJob", FailedJob)

    assert main.main() == 1

# Connection descriptors and sync job configuration

import os
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MYSQL_PORT = 3306


def get_env_var(name, default=None, required=False):
    """
    Get an environment variable with validation.

    Args:
        name: Name of the environment variable
        default: Default value if not set
        required: Whether the variable is required

    Returns:
        The value of the environment variable, or the default

    Raises:
        RuntimeError: If the variable is required but not set
    """
    value = os.environ.get(name, default)
    if required and value is None:
        raise RuntimeError(f"Required environment variable {name} is not set")
    return value


def get_env_int(name, default=None, required=False):
    """Get an environment variable as an integer."""
    value = get_env_var(name, default, required)
    if value is not None:
        return int(value)
    return None


def _parse_url(url):
    if url.startswith("jdbc:"):
        url = url[len("jdbc:"):]
    return urlparse(url)


class SyncType(str, Enum):
    TABLE_SLICE = "table_slice"
    INCREMENTAL = "incremental"


class RdbmsConfiguration(BaseModel):
    """
    Connection descriptor for one side of a sync.

    Instances are frozen; use clone() to derive a descriptor bound to a
    table or key range. Clones never share state with the original.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    username: str
    password: str = ""
    table_name: Optional[str] = None
    primary_key: Optional[str] = None
    range_start: Optional[Any] = None
    range_end: Optional[Any] = None

    def clone(self, **changes) -> "RdbmsConfiguration":
        return self.model_copy(update=changes, deep=True)

    @property
    def host(self) -> str:
        return _parse_url(self.url).hostname or "localhost"

    @property
    def port(self) -> int:
        return _parse_url(self.url).port or DEFAULT_MYSQL_PORT

    @property
    def database(self) -> str:
        return _parse_url(self.url).path.lstrip("/").split("/")[0]

    @property
    def has_range(self) -> bool:
        return self.range_start is not None and self.range_end is not None

    def connection_settings(self) -> dict:
        """Settings in the form BinLogStreamReader expects."""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.username,
            "passwd": self.password,
        }


class SyncConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True)

    sync_type: SyncType
    concurrency: int = Field(default=1, ge=1)
    reader_configuration: RdbmsConfiguration
    writer_configuration: RdbmsConfiguration
    slice_id: str = ""
    channel_capacity: int = Field(default=10000, ge=1)
    batch_size: int = Field(default=1000, ge=1)


class JobSettings(BaseModel):
    """Settings of one scaling job, usually read from the environment."""

    job_id: str
    mode: str = "all"
    source: RdbmsConfiguration
    target: RdbmsConfiguration
    concurrency: int = 4
    channel_capacity: int = 10000
    batch_size: int = 1000
    server_id: int = 1001
    position_store: str = "redis"
    redis_host: str = "localhost"
    redis_port: int = 6379

    @classmethod
    def from_env(cls) -> "JobSettings":
        return cls(
            job_id=get_env_var("JOB_ID", required=True),
            mode=get_env_var("SYNC_MODE", "all").lower(),
            source=RdbmsConfiguration(
                url=get_env_var("SOURCE_URL", required=True),
                username=get_env_var("SOURCE_USER", "root"),
                password=get_env_var("SOURCE_PASSWD", ""),
            ),
            target=RdbmsConfiguration(
                url=get_env_var("TARGET_URL", required=True),
                username=get_env_var("TARGET_USER", "root"),
                password=get_env_var("TARGET_PASSWD", ""),
            ),
            concurrency=get_env_int("CONCURRENCY", 4),
            channel_capacity=get_env_int("CHANNEL_CAPACITY", 10000),
            batch_size=get_env_int("BATCH_SIZE", 1000),
            server_id=get_env_int("CDC_SERVER_ID", 1001),
            position_store=get_env_var("POSITION_STORE", "redis").lower(),
            redis_host=get_env_var("REDIS_HOST", "localhost"),
            redis_port=get_env_int("REDIS_PORT", 6379),
        )

    def sync_configuration(self) -> SyncConfiguration:
        """The job-level configuration the splitter starts from."""
        return SyncConfiguration(
            sync_type=SyncType.TABLE_SLICE,
            concurrency=self.concurrency,
            reader_configuration=self.source,
            writer_configuration=self.target,
            channel_capacity=self.channel_capacity,
            batch_size=self.batch_size,
        )

# Normalized row change records passed from readers to writers

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict


class RecordType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class Column(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    value: Any = None
    changed: bool = True
    # value before the change, set on updates only
    old_value: Any = None


class DataRecord(BaseModel):
    """One captured row change, consumed once by the paired writer."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    full_table_name: str
    type: RecordType
    columns: List[Column]
    # binlog position to resume from once this record is applied,
    # unset for full-sync rows
    log_file: Optional[str] = None
    log_pos: Optional[int] = None

    @property
    def table_name(self) -> str:
        return self.full_table_name.split(".", 1)[-1]

    @property
    def values(self) -> List[Any]:
        return [column.value for column in self.columns]

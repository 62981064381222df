import logging
from enum import Enum
from typing import Dict

logger = logging.getLogger(__name__)

class ColumnSupport(str, Enum):
    UNKNOWN = "unknown"
    PRESENT = "present"
    ABSENT = "absent"

class SchemaCapabilities:
    """
    Remembers, for the lifetime of the process, which optional columns the
    backing table actually has. Learned from the first successful or failed
    write that carried the column.
    """

    def __init__(self):
        self._columns: Dict[str, ColumnSupport] = {}

    def get(self, column: str) -> ColumnSupport:
        return self._columns.get(column, ColumnSupport.UNKNOWN)

    def should_send(self, column: str) -> bool:
        return self.get(column) != ColumnSupport.ABSENT

    def mark_present(self, column: str):
        if self.get(column) == ColumnSupport.UNKNOWN:
            self._columns[column] = ColumnSupport.PRESENT

    def mark_absent(self, column: str):
        if self.get(column) != ColumnSupport.ABSENT:
            logger.warning(f"Column '{column}' not available in store schema; skipping it from now on")
        self._columns[column] = ColumnSupport.ABSENT

    def reset(self):
        self._columns.clear()

schema_capabilities = SchemaCapabilities()

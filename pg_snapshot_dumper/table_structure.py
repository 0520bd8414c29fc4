from dataclasses import dataclass, field
from typing import Any


@dataclass
class TableStructure:
    table_name: str = ''
    columns: list[str] = field(default_factory=list)
    key_column: str = ''


@dataclass
class TableStats:
    table_name: str = ''
    key_column: str = ''
    row_estimate: int = 0
    min_key: Any = None
    max_key: Any = None
    sample_keys: list = field(default_factory=list)

    @property
    def is_empty(self):
        return self.row_estimate <= 0 or self.min_key is None


@dataclass(frozen=True)
class Range:
    """Half-open key interval [low, high). None means unbounded on that side."""

    index: int
    low: Any = None
    high: Any = None
    estimated_rows: int = field(default=0, compare=False)

    @classmethod
    def full(cls):
        return cls(index=0)

    @property
    def is_empty(self):
        return self.low is not None and self.high is not None and not self.low < self.high

    def contains(self, key):
        if self.low is not None and key < self.low:
            return False
        if self.high is not None and not key < self.high:
            return False
        return True

    def to_dict(self):
        return {
            'index': self.index,
            'low': self.low,
            'high': self.high,
            'estimated_rows': self.estimated_rows,
        }

    def __str__(self):
        low = '-inf' if self.low is None else repr(self.low)
        high = '+inf' if self.high is None else repr(self.high)
        return f'#{self.index}[{low}, {high})'

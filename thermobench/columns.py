from typing import Any, Dict, List, NamedTuple, Optional

from thermobench.errors import ConfigError


class Column(NamedTuple):
    name: str
    order: int


class ColumnRegistry:
    """
    Append-only list of trace columns.

    A column's order is its index in the list, assigned the first time its
    name is referenced. Once the header has been written the registry is
    frozen: existing columns can still be looked up, new ones are refused,
    so every data row has the header's width.
    """

    def __init__(self):
        self._columns: List[Column] = []
        self._by_name: Dict[str, Column] = {}
        self._frozen = False

    def column_for(self, name: str) -> Column:
        column = self._by_name.get(name)
        if column is not None:
            return column
        if self._frozen:
            raise ConfigError(f"column '{name}' must be declared before sampling starts")
        column = Column(name, len(self._columns))
        self._columns.append(column)
        self._by_name[name] = column
        return column

    def add(self, name: str, owner: str) -> Column:
        """Register a column that belongs to ``owner`` alone."""
        if name in self._by_name:
            raise ConfigError(f"column '{name}' of {owner} is already used by another column source")
        return self.column_for(name)

    def get(self, name: str) -> Optional[Column]:
        return self._by_name.get(name)

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def names(self) -> List[str]:
        return [c.name for c in self._columns]

    def __len__(self) -> int:
        return len(self._columns)

    def __iter__(self):
        return iter(self._columns)


class Row:
    """Cells of one tick. The first value set for a column wins."""

    def __init__(self, registry: ColumnRegistry):
        self._registry = registry
        self._cells: Dict[int, Any] = {}

    def set(self, column: Column, value: Any) -> bool:
        if value is None or column.order in self._cells:
            return False
        self._cells[column.order] = value
        return True

    def get(self, column: Column) -> Any:
        return self._cells.get(column.order)

    def values(self) -> List[Any]:
        """One entry per registered column, ``None`` where missing."""
        return [self._cells.get(i) for i in range(len(self._registry))]

    def __len__(self) -> int:
        return len(self._registry)

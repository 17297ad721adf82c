"""
Windowed read path.

Returns only the purchased cells of a half-open index range. Missing
indices mean "never bought": purchase count 0 and the default color.
"""

from typing import Dict, Tuple

from .config import GRID_HEIGHT, GRID_WIDTH, MAX_WINDOW
from .errors import InvalidRange
from .store import PixelStore

WireCell = Tuple[str, int, int]


def validate_range(start, end, max_window: int = MAX_WINDOW) -> None:
    for value in (start, end):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidRange(f"Invalid range (max {max_window})")
    if start < 0 or end <= start or end - start > max_window:
        raise InvalidRange(f"Invalid range (max {max_window})")


def encode_window(cells: Dict[int, WireCell]) -> Dict[str, list]:
    """Compact wire form: {"<index>": [color, intensity, purchaseCount]}."""
    return {str(index): list(cell) for index, cell in cells.items()}


class WindowQuery:

    def __init__(self, store: PixelStore, max_window: int = MAX_WINDOW,
                 grid_size: int = GRID_WIDTH * GRID_HEIGHT):
        self.store = store
        self.max_window = max_window
        self.grid_size = grid_size

    def window(self, start: int, end: int) -> Dict[int, WireCell]:
        validate_range(start, end, self.max_window)
        # Nothing is stored past the grid, and SQLite integers stop at 2**63
        if start >= self.grid_size:
            return {}
        end = min(end, self.grid_size)
        return {
            index: cell.as_wire()
            for index, cell in self.store.get_range(start, end).items()
        }

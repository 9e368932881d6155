"""tui_layout.py

Column widths for the TUI, computed from the terminal width.

  >= 160   4 columns: notes | detail | stats | help      (30, *, *, 30)
  90-159   3 columns: notes | detail | stats             (30, *, *)
  80-89    2 columns: notes | detail                     (30, *)
  < 80     mini-player, single column

Borders between columns take one cell each. When the middle space does not split
evenly, the odd cell goes to the right-hand column in 4-column mode and to the
left-hand one in 3-column mode.
"""

from __future__ import annotations

from dataclasses import dataclass

SIDE_WIDTH = 30
FOUR_COLUMN_MIN = 160
THREE_COLUMN_MIN = 90
TWO_COLUMN_MIN = 80


@dataclass(frozen=True)
class ColumnLayout:
    columns: int
    widths: tuple[int, int, int, int]
    term_width: int

    @property
    def mini(self) -> bool:
        return self.columns == 1


def compute_column_widths(term_width: int) -> ColumnLayout:
    w = max(0, int(term_width))
    if w >= FOUR_COLUMN_MIN:
        usable = w - SIDE_WIDTH * 2 - 3
        col2 = usable // 2
        return ColumnLayout(4, (SIDE_WIDTH, col2, usable - col2, SIDE_WIDTH), w)
    if w >= THREE_COLUMN_MIN:
        usable = w - SIDE_WIDTH - 2
        col3 = usable // 2
        return ColumnLayout(3, (SIDE_WIDTH, usable - col3, col3, 0), w)
    if w >= TWO_COLUMN_MIN:
        return ColumnLayout(2, (SIDE_WIDTH, w - SIDE_WIDTH - 1, 0, 0), w)
    return ColumnLayout(1, (w, 0, 0, 0), w)

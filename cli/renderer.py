"""
TodoDB Result Renderer
======================
Formats todo lists as aligned ASCII tables.

Features:
  - Auto-column-width with configurable max
  - Row count footer
  - Modes: table, raw
  - Errors prefixed with their ErrorKind
"""

import sys
from typing import Any, Dict, Iterable, List, Optional, TextIO

from engine.errors import TodoStoreError
from records.todo import Todo

COLUMNS = ["id", "done", "created_at", "title"]


class Renderer:

    def __init__(self, output: TextIO = None):
        self.output = output or sys.stdout
        self.mode: str = "table"        # table, raw
        self.show_headers: bool = True
        self.max_col_width: int = 50

    # ─── Public API ─────────────────────────────────────────────────

    def render_todos(self, todos: Iterable[Todo]) -> int:
        """Render records; returns how many were printed."""
        rows = [self._todo_values(t) for t in todos]
        if self.mode == "raw":
            self._render_raw(rows)
        else:
            self._render_table(rows)
        self._print(f"\n{len(rows)} todo(s)")
        return len(rows)

    def render_message(self, message: str):
        if message:
            self._print(message)

    def render_error(self, error: Exception):
        """Render an error with its kind as prefix."""
        if isinstance(error, TodoStoreError):
            prefix = error.kind.value
        else:
            prefix = f"Error[{type(error).__name__}]"
        self._print(f"{prefix}: {error}")

    # ─── Table Mode ─────────────────────────────────────────────────

    def _render_table(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        widths = self._calculate_widths(COLUMNS, rows)
        if self.show_headers:
            self._print_table_separator(widths)
            self._print_table_row(widths, {h: h for h in COLUMNS})
            self._print_table_separator(widths)
        for vals in rows:
            self._print_table_row(widths, vals)
        if self.show_headers:
            self._print_table_separator(widths)

    def _calculate_widths(self, headers: List[str], rows: List[Dict]) -> Dict[str, int]:
        widths = {h: min(len(h), self.max_col_width) for h in headers}
        for row in rows:
            for h in headers:
                val = self._format_value(row.get(h))
                widths[h] = max(widths[h], min(len(val), self.max_col_width))
        return widths

    def _print_table_separator(self, widths: Dict[str, int]):
        """Print +----+------+ separator line."""
        self._print("+" + "".join("-" * (widths[h] + 2) + "+" for h in COLUMNS))

    def _print_table_row(self, widths: Dict[str, int], vals: Dict):
        """Print | col1 | col2 | row."""
        parts = ["|"]
        for h in COLUMNS:
            raw_val = vals.get(h)
            val_str = self._format_value(raw_val)
            if len(val_str) > self.max_col_width:
                val_str = val_str[:self.max_col_width - 3] + "..."
            w = widths[h]
            # right-align ids, left-align everything else
            if isinstance(raw_val, int) and not isinstance(raw_val, bool):
                parts.append(f" {val_str:>{w}} |")
            else:
                parts.append(f" {val_str:<{w}} |")
        self._print("".join(parts))

    # ─── Raw Mode ───────────────────────────────────────────────────

    def _render_raw(self, rows: List[Dict[str, Any]]) -> None:
        """Values separated by pipes, no formatting."""
        if self.show_headers:
            self._print("|".join(COLUMNS))
        for vals in rows:
            self._print("|".join(self._format_value(vals.get(h)) for h in COLUMNS))

    # ─── Helpers ────────────────────────────────────────────────────

    @staticmethod
    def _todo_values(todo: Todo) -> Dict[str, Any]:
        return {
            "id": todo.id,
            "done": todo.completed,
            "created_at": todo.created_at.isoformat(timespec="seconds")
            if todo.created_at else None,
            "title": todo.title,
        }

    def _format_value(self, value: Optional[Any]) -> str:
        if value is None:
            return "-"
        if isinstance(value, bool):
            return "x" if value else " "
        return str(value)

    def _print(self, text: str):
        print(text, file=self.output)

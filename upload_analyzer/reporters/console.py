from __future__ import annotations

from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table

console = Console()


def _cell(value: Any) -> str:
    if isinstance(value, list):
        if value and isinstance(value[0], dict):
            return "\n".join(
                f"{s.get('name', '')}  va=0x{s.get('virtual_address', 0):X} vsize=0x{s.get('virtual_size', 0):X}"
                for s in value
            )
        return "\n".join(str(v) for v in value)
    return str(value)


def render_console(result: Dict[str, Any], source: str, out: Optional[Console] = None) -> None:
    out = out or console
    is_error = "error" in result
    t = Table(title=f"Upload Analyzer - {result.get('Format', 'unclassified')}", caption=source)
    t.add_column("Field")
    t.add_column("Value", overflow="fold")
    for key, value in result.items():
        t.add_row(key, _cell(value))
    out.print(t)
    if is_error:
        out.print(f"[red]{result['error']}[/red]")

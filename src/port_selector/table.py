"""Table rendering and path display utilities."""

import os

import click

MAX_DIRECTORY_WIDTH = 40
MAX_PROCESS_NAME_WIDTH = 15


def draw_table(rows: list[dict[str, str]], columns: list[str]) -> None:
    """Render a table with dynamic column widths.

    Args:
        rows: List of dictionaries, each representing a row.
        columns: List of column names to display (in order).
    """
    if not rows:
        return

    widths: dict[str, int] = {}
    for col in columns:
        widths[col] = len(col)
        for row in rows:
            widths[col] = max(widths[col], len(row.get(col, "")))

    # 2-space padding between columns, no trailing padding on the last one
    def render(values: list[str]) -> str:
        return "  ".join(f"{value:<{widths[col]}}" for col, value in zip(columns, values)).rstrip()

    total_width = sum(widths.values()) + 2 * (len(columns) - 1)

    click.echo(render(columns))
    click.echo("-" * total_width)
    for row in rows:
        click.echo(render([row.get(col, "") for col in columns]))


def shorten_home_path(path: str, home: str | None = None) -> str:
    """Replace the user's home directory prefix with ``~``."""
    if home is None:
        home = os.path.expanduser("~")
    home = home.rstrip("/")
    if not home or home == "~":
        return path
    if path == home:
        return "~"
    if path.startswith(home + "/"):
        return "~" + path[len(home):]
    return path


def truncate_process_name(name: str) -> str:
    if len(name) > MAX_PROCESS_NAME_WIDTH:
        return name[:12] + "..."
    return name


def truncate_directory_path(path: str, max_len: int = MAX_DIRECTORY_WIDTH) -> str:
    """Shorten a path to at most ``max_len`` characters.

    The tail of the path is kept where possible, e.g.
    ``~/code/worktrees/feature/103-reply`` becomes ``~/.../feature/103-reply``.
    Otherwise the middle of the path is replaced with ``...``.
    """
    if len(path) <= max_len:
        return path
    if max_len <= 3:
        return "..."[:max_len]

    prefix = "~/" if path.startswith("~/") else ""
    parts = path[len(prefix):].split("/")
    available = max_len - len(prefix) - len(".../")

    if len(parts) > 2:
        tail = "/".join(parts[-2:])
        if len(tail) <= available:
            return prefix + ".../" + tail
        if len(parts[-1]) <= available:
            return prefix + ".../" + parts[-1]

    keep = max_len - 3
    head = keep // 2
    return path[:head] + "..." + path[len(path) - (keep - head):]

"""Human-readable memory files.

Layout under the workspace root::

    MEMORY.md                 long-term facts (append / replace)
    memory/YYYY-MM-DD.md      daily logs (append only)

Writes are best-effort: failures are logged and reported as ``False``.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable

from loguru import logger

from .models import utcnow

LONG_TERM_FILENAME = "MEMORY.md"
DAILY_DIRNAME = "memory"


def format_entry(content: str, timestamp: datetime) -> str:
    return f"\n\n---\n\n[{timestamp.isoformat()}]\n\n{content}\n"


class MemoryLog:
    """Reads and appends the long-term file and dated daily logs."""

    def __init__(self, root_dir: str | Path, clock: Callable[[], datetime] = utcnow):
        self.root_dir = Path(root_dir)
        self._clock = clock

    @property
    def long_term_path(self) -> Path:
        return self.root_dir / LONG_TERM_FILENAME

    @property
    def daily_dir(self) -> Path:
        return self.root_dir / DAILY_DIRNAME

    def daily_path(self, day: date | None = None) -> Path:
        day = day or self._clock().date()
        return self.daily_dir / f"{day.isoformat()}.md"

    def _append(self, path: Path, content: str) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(format_entry(content, self._clock()))
            return True
        except OSError as e:
            logger.warning(f"Failed to append to {path}: {e}")
            return False

    def append_daily(self, content: str) -> bool:
        return self._append(self.daily_path(), content)

    def append_long_term(self, content: str) -> bool:
        return self._append(self.long_term_path, content)

    def replace_long_term(self, content: str) -> bool:
        path = self.long_term_path
        tmp = path.with_suffix(".md.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)
            return True
        except OSError as e:
            logger.warning(f"Failed to replace {path}: {e}")
            tmp.unlink(missing_ok=True)
            return False

    def _read(self, path: Path) -> str | None:
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read {path}: {e}")
            return None

    def load_for_session(self) -> tuple[dict[str, str], str]:
        """Today's and yesterday's daily logs plus the long-term file.

        Returns:
            ``(daily_logs, long_term)`` where ``daily_logs`` maps ISO date to
            file content.
        """
        today = self._clock().date()
        daily_logs: dict[str, str] = {}
        for day in (today, today - timedelta(days=1)):
            content = self._read(self.daily_path(day))
            if content is not None:
                daily_logs[day.isoformat()] = content
        return daily_logs, self._read(self.long_term_path) or ""


def format_for_prompt(daily_logs: dict[str, str], long_term: str) -> str:
    """Render loaded memory files as a prompt section."""
    parts: list[str] = []
    if long_term.strip():
        parts.append(f"## Long-term Memory ({LONG_TERM_FILENAME})\n\n{long_term}")
    daily_parts = [
        f"### {day}\n\n{content}" for day, content in daily_logs.items() if content.strip()
    ]
    if daily_parts:
        parts.append("## Recent Memory (Daily Logs)\n\n" + "\n\n".join(daily_parts))
    return "\n\n---\n\n".join(parts)

"""Project app map: a Markdown registry of generated artifacts.

The map is a plain Markdown file split into `## <section>` headings, each holding a bullet
list. A completed step carrying `stateUpdates.appMap = {section, entry}` appends
`- <entry>` to the end of its section. The map is never created here, and a section that
does not exist is left alone: the file is owned by the project, not by the engine.
"""

from __future__ import annotations

import re
import threading
from pathlib import Path

from .plan import AppMapUpdate

_LOCK = threading.Lock()


def append_entry(content: str, update: AppMapUpdate) -> str | None:
    """Return `content` with the entry appended to its section, or None if the section is missing."""
    heading = re.compile(rf"^## {re.escape(update.section.strip())}[ \t]*\r?$", re.MULTILINE)
    m = heading.search(content)
    if m is None:
        return None
    nxt = re.compile(r"^## ", re.MULTILINE).search(content, m.end())
    end = nxt.start() if nxt else len(content)
    section = content[:end].rstrip()
    rest = content[end:]
    line = f"- {update.entry.strip()}"
    return f"{section}\n{line}\n\n{rest}" if rest else f"{section}\n{line}\n"


def update_app_map(path: Path, update: AppMapUpdate) -> bool:
    """Append one entry to the app map at `path`. Returns False when nothing was written."""
    with _LOCK:
        if not path.is_file():
            return False
        with open(path, encoding="utf-8", newline="") as fh:
            content = fh.read()
        updated = append_entry(content, update)
        if updated is None:
            return False
        with open(path, "w", encoding="utf-8", newline="") as fh:
            fh.write(updated)
    return True

"""Local cache of stream cursors for resuming log reads.

A cursor is a plain value, so a session interrupted mid-build can continue
from its last offset in a later process run (``jenkins-trace --resume``).
"""

import json
import os
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Any

from jenkins_trace.progressive_log import BuildRef, StreamCursor


logger = logging.getLogger(__name__)


def cursor_key(build: BuildRef) -> str:
    """Cache key for a build's log stream."""
    return f"{build.host}|{build.job}|{build.build}|{build.mode.value}"


class CursorCache:
    """Local cache of per-build cursors.

    Cursors are stored in a JSON file with the structure:
    {
        "https://ci.example.com|demo|42|progressiveText": {
            "offset": 1024,
            "done": false,
            "annotator": null,
            "updated_at": "2025-01-15T10:35:00"
        },
        ...
    }
    """

    def __init__(self, cache_path: Optional[str] = None):
        """Initialize cursor cache.

        Args:
            cache_path: Path to cache file. Defaults to ~/.jenkins-trace/cursors.json
        """
        if cache_path:
            self.cache_path = Path(os.path.expanduser(cache_path))
        else:
            self.cache_path = Path.home() / ".jenkins-trace" / "cursors.json"

    def _load(self) -> Dict[str, Dict[str, Any]]:
        """Load cache from file."""
        if not self.cache_path.exists():
            return {}

        try:
            with open(self.cache_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError):
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, entries: Dict[str, Dict[str, Any]]) -> None:
        """Save cache to file."""
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_path, "w", encoding="utf-8") as f:
                json.dump(entries, f, indent=2, ensure_ascii=False)
        except IOError as e:
            # Log but don't fail - cache is optional
            logger.warning("Failed to write cursor cache at %s: %s", self.cache_path, e)

    def get_cursor(self, build: BuildRef) -> StreamCursor:
        """Get the stored cursor for a build, or a fresh one."""
        entry = self._load().get(cursor_key(build))
        if not entry:
            return StreamCursor.start()
        try:
            if not isinstance(entry, dict):
                raise TypeError(f"expected an object, got {type(entry).__name__}")
            return StreamCursor.from_dict(entry)
        except (ValueError, TypeError):
            logger.warning("Ignoring corrupt cursor entry for %s", build)
            return StreamCursor.start()

    def set_cursor(self, build: BuildRef, cursor: StreamCursor) -> None:
        """Store the cursor reached for a build."""
        entries = self._load()
        entries[cursor_key(build)] = {
            **cursor.to_dict(),
            "updated_at": datetime.now().isoformat(),
        }
        self._save(entries)

    def reset_cursor(self, build: BuildRef) -> bool:
        """Forget a build's cursor (used with --refresh).

        Returns:
            True if an entry was removed
        """
        entries = self._load()
        if entries.pop(cursor_key(build), None) is None:
            return False
        self._save(entries)
        return True

    def clear(self) -> None:
        """Clear all cursors from cache."""
        self._save({})

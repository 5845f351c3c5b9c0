#!/usr/bin/env python3
"""
Seen-state persistence.

The seen-set is the only state that survives between runs: a flat JSON object
mapping article identities to ``true``. It is loaded once at the start of a run,
grown in memory as deliveries succeed, and written back as a whole snapshot at
the end of the run, whatever way the run ends.

Loading never fails: a missing, unreadable or malformed file is an empty set.
Saving never raises: a failed write is logged, and the worst outcome is that
the next run re-sends what this run delivered.
"""

from contextlib import contextmanager
from json import dumps, loads, JSONDecodeError
from os import chmod, path, replace, makedirs, unlink
from tempfile import NamedTemporaryFile
from typing import Dict, Iterator

from config import get_logger

logger = get_logger("state")

STATE_FILE_MODE = 0o644


class SeenSet:
    """Set of delivered article identities. Entries are never removed."""

    def __init__(self, identities=None) -> None:
        self._entries: Dict[str, bool] = {}
        for identity in identities or ():
            self.add(identity)

    def add(self, identity: str) -> None:
        self._entries[identity] = True

    def __contains__(self, identity: object) -> bool:
        return self._entries.get(identity, False)  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def snapshot(self) -> Dict[str, bool]:
        """Copy of the mapping in its persisted shape."""
        return dict(self._entries)


class SeenStore:
    """Loads and saves a SeenSet as a single JSON file."""

    def __init__(self, file_path: str) -> None:
        self.file_path = file_path

    def load(self) -> SeenSet:
        """Read the persisted snapshot, or return an empty set."""
        if not path.exists(self.file_path):
            logger.info(f"No state file at {self.file_path}; starting with an empty seen-set")
            return SeenSet()
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = loads(f.read())
        except (OSError, UnicodeDecodeError, JSONDecodeError, RecursionError) as e:
            logger.warning(f"Could not read state file {self.file_path} ({e}); starting with an empty seen-set")
            return SeenSet()

        if not isinstance(data, dict):
            logger.warning(f"State file {self.file_path} is not a JSON object; starting with an empty seen-set")
            return SeenSet()

        seen = SeenSet(key for key, value in data.items() if isinstance(key, str) and value is True)
        logger.info(f"Loaded {len(seen)} seen identities from {self.file_path}")
        return seen

    def save(self, seen: SeenSet) -> bool:
        """Atomically overwrite the state file with the full set.

        Returns True on success. Failures are logged and reported as False.
        """
        directory = path.dirname(path.abspath(self.file_path))
        tmp_name = None
        try:
            makedirs(directory, exist_ok=True)
            with NamedTemporaryFile("w", encoding="utf-8", dir=directory, prefix=".state-",
                                    suffix=".tmp", delete=False) as tmp:
                tmp_name = tmp.name
                tmp.write(dumps(seen.snapshot(), indent=2, sort_keys=True))
                tmp.write("\n")
            # NamedTemporaryFile is created 0600; keep the state file's usual mode
            chmod(tmp_name, STATE_FILE_MODE)
            replace(tmp_name, self.file_path)
            logger.info(f"💾 Saved {len(seen)} seen identities to {self.file_path}")
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save state file {self.file_path}: {e}")
            if tmp_name and path.exists(tmp_name):
                try:
                    unlink(tmp_name)
                except OSError:
                    pass
            return False

    @contextmanager
    def session(self) -> Iterator[SeenSet]:
        """Load the seen-set and persist it on every exit path."""
        seen = self.load()
        try:
            yield seen
        finally:
            self.save(seen)

"""Key-value persistence for preferences, song progress, practice statistics and recent files."""

import copy
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import DEFAULT_PREFERENCES, RECENT_FILES_LIMIT, STORAGE_PREFIX
from errors import BackupImportError, PersistenceError

logger = logging.getLogger(__name__)

PREFERENCES = 'preferences'
SONG_PROGRESS = 'songProgress'
PRACTICE_STATS = 'practiceStats'
RECENT_FILES = 'recentFiles'
NAMESPACES = (PREFERENCES, SONG_PROGRESS, PRACTICE_STATS, RECENT_FILES)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def empty_practice_stats() -> Dict[str, Any]:
    return {
        'daily': {},
        'total': {'minutesPracticed': 0, 'sectionsCompleted': 0, 'sessionsCompleted': 0},
        'lastSessionTimestamp': None,
    }


class MemoryStore:
    """In-process store; values are deep-copied in and out like a serialising store would."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = copy.deepcopy(data) if data else {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self.data:
            return default
        return copy.deepcopy(self.data[key])

    def set(self, key: str, value: Any) -> bool:
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Value for {key} is not serialisable: {e}") from e
        self.data[key] = copy.deepcopy(value)
        return True

    def remove(self, key: str) -> bool:
        self.data.pop(key, None)
        return True


class JsonFileStore:
    """All keys live in one JSON document on disk, rewritten on every set/remove."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Could not read {self.path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        try:
            payload = json.dumps(data, indent=4)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Value is not serialisable: {e}") from e
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(payload, encoding='utf-8')
            tmp.replace(self.path)
        except OSError as e:
            raise PersistenceError(f"Could not write {self.path}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> bool:
        data = self._read()
        data[key] = value
        self._write(data)
        return True

    def remove(self, key: str) -> bool:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)
        return True


class PracticeStorage:
    """Namespaced documents on top of a PersistenceStore. Failures are logged and reported as False."""

    def __init__(self, store, prefix: str = STORAGE_PREFIX):
        self.store = store
        self.prefix = prefix

    def _key(self, namespace: str) -> str:
        return f"{self.prefix}{namespace}"

    def get_item(self, namespace: str, default: Any = None) -> Any:
        try:
            return self.store.get(self._key(namespace), default)
        except PersistenceError as e:
            logger.warning("Error reading %s: %s", namespace, e)
            return default

    def set_item(self, namespace: str, value: Any) -> bool:
        try:
            return bool(self.store.set(self._key(namespace), value))
        except PersistenceError as e:
            logger.warning("Error saving %s: %s", namespace, e)
            return False

    def remove_item(self, namespace: str) -> bool:
        try:
            return bool(self.store.remove(self._key(namespace)))
        except PersistenceError as e:
            logger.warning("Error removing %s: %s", namespace, e)
            return False

    def is_available(self) -> bool:
        test_key = '__storage_test__'
        try:
            self.store.set(test_key, 'test')
            self.store.remove(test_key)
            return True
        except PersistenceError:
            return False

    # --- Preferences ---
    def get_preferences(self) -> Dict[str, Any]:
        prefs = dict(DEFAULT_PREFERENCES)
        stored = self.get_item(PREFERENCES, {})
        if isinstance(stored, dict):
            prefs.update(stored)
        return prefs

    def save_preferences(self, updates: Dict[str, Any]) -> bool:
        prefs = self.get_preferences()
        prefs.update(updates)
        prefs['lastUpdated'] = _now_ms()
        return self.set_item(PREFERENCES, prefs)

    # --- Song progress ---
    def get_song_progress(self, song_key: Optional[str] = None):
        all_progress = self.get_item(SONG_PROGRESS, {}) or {}
        if song_key is None:
            return all_progress
        return all_progress.get(song_key)

    def save_song_progress(self, song_key: str, record: Dict[str, Any]) -> bool:
        all_progress = self.get_song_progress()
        all_progress[song_key] = dict(record)
        return self.set_item(SONG_PROGRESS, all_progress)

    # --- Practice statistics ---
    def get_practice_stats(self) -> Dict[str, Any]:
        stats = self.get_item(PRACTICE_STATS, None)
        if not isinstance(stats, dict):
            return empty_practice_stats()
        return stats

    def update_practice_stats(self, session: Dict[str, Any], today: Optional[str] = None) -> bool:
        stats = self.get_practice_stats()
        day_key = today or _today()
        day = stats['daily'].setdefault(day_key, {'minutesPracticed': 0, 'sectionsCompleted': 0, 'notesPlayed': 0})
        minutes = session.get('durationMinutes', 0) or 0
        sections = session.get('sectionsCompletedThisSession', 0) or 0
        notes = session.get('notesPlayed', 0) or 0

        day['minutesPracticed'] += minutes
        day['sectionsCompleted'] += sections
        day['notesPlayed'] += notes
        stats['total']['minutesPracticed'] += minutes
        stats['total']['sectionsCompleted'] += sections
        stats['total']['sessionsCompleted'] += 1
        stats['lastSessionTimestamp'] = _now_ms()
        return self.set_item(PRACTICE_STATS, stats)

    # --- Recent files ---
    def get_recent_files(self) -> List[Dict[str, Any]]:
        files = self.get_item(RECENT_FILES, [])
        return files if isinstance(files, list) else []

    def add_recent_file(self, file_info: Dict[str, Any]) -> bool:
        recent = [f for f in self.get_recent_files() if f.get('name') != file_info.get('name')]
        entry = dict(file_info)
        entry['lastOpened'] = _now_ms()
        recent.insert(0, entry)
        return self.set_item(RECENT_FILES, recent[:RECENT_FILES_LIMIT])

    def clear_all(self) -> None:
        for namespace in NAMESPACES:
            self.remove_item(namespace)

    # --- Backup ---
    def export_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {namespace: self.get_item(namespace) for namespace in NAMESPACES}
        data['exportedAt'] = _now_ms()
        return data

    def export_json(self) -> str:
        return json.dumps(self.export_data(), indent=2)

    def import_json(self, text: str) -> List[str]:
        try:
            data = json.loads(text)
        except ValueError as e:
            raise BackupImportError(f"Backup is not valid JSON: {e}") from e
        return self.import_data(data)

    def import_data(self, data: Any) -> List[str]:
        """Validates every namespace present, then writes them all or none.

        Namespaces missing from the backup are left untouched. The running
        app keeps its loaded state until restarted.
        """
        if not isinstance(data, dict):
            raise BackupImportError("Backup must be a JSON object")
        present = [ns for ns in NAMESPACES if data.get(ns) is not None]
        if not present:
            raise BackupImportError("Backup contains no known data")
        for namespace in present:
            _validate_namespace(namespace, data[namespace])

        previous = {}
        try:
            for namespace in present:
                previous[namespace] = self.store.get(self._key(namespace))
            written = []
            for namespace in present:
                self.store.set(self._key(namespace), data[namespace])
                written.append(namespace)
        except PersistenceError as e:
            logger.error("Import failed, restoring previous data: %s", e)
            self._restore(previous)
            raise BackupImportError(f"Could not write backup: {e}") from e
        logger.info("Imported %s", ", ".join(present))
        return present

    def _restore(self, previous: Dict[str, Any]) -> None:
        for namespace, value in previous.items():
            if value is None:
                self.remove_item(namespace)
            else:
                self.set_item(namespace, value)


def _validate_namespace(namespace: str, value: Any) -> None:
    if namespace == RECENT_FILES:
        if not isinstance(value, list) or not all(isinstance(f, dict) and 'name' in f for f in value):
            raise BackupImportError("recentFiles must be a list of file entries")
        return
    if not isinstance(value, dict):
        raise BackupImportError(f"{namespace} must be an object")
    if namespace == SONG_PROGRESS:
        for key, record in value.items():
            if not isinstance(record, dict) or not isinstance(record.get('completedSections', {}), dict):
                raise BackupImportError(f"songProgress entry {key!r} is malformed")
    elif namespace == PRACTICE_STATS:
        if not isinstance(value.get('daily'), dict) or not isinstance(value.get('total'), dict):
            raise BackupImportError("practiceStats needs 'daily' and 'total' objects")

"""
Subject Store - pet catalog persistence

The whole catalog lives under one fixed key in a key-value store, the same
way a browser keeps it in localStorage. Unreadable data loads as an empty
catalog instead of failing.

Usage:
    from petwatch.store import SubjectStore

    store = SubjectStore.from_env()
    rex = store.create("Rex", category="Dog")
    store.append(rex.id, "Rex is chewing a toy.", ObservationOrigin.LIVE_INTERPRETATION)
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Protocol, Union

import pydantic

from .config import config
from .exceptions import StorageError
from .models import Observation, ObservationOrigin, Subject

logger = logging.getLogger(__name__)

SUBJECTS_KEY = "petwatch_subjects"

_catalog = pydantic.TypeAdapter(List[Subject])


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryKeyValueStore:
    """Dict-backed store, mainly for tests."""

    def __init__(self, data: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(data or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class JsonFileKeyValueStore:
    """Key-value pairs kept in a single JSON file, written atomically."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Store file {self.path} is unreadable, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Store file {self.path} has unexpected layout, starting empty")
            return {}
        return data

    def get(self, key: str) -> Optional[str]:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class SubjectStore:
    """CRUD over subjects plus append-only observation history."""

    def __init__(self, backend: KeyValueStore, key: str = SUBJECTS_KEY):
        self.backend = backend
        self.key = key
        self._lock = Lock()

    @classmethod
    def from_env(cls) -> "SubjectStore":
        """Store backed by the file at ``PW_STORE_PATH``."""
        return cls(JsonFileKeyValueStore(config.get("PW_STORE_PATH", "~/.petwatch/store.json")))

    def _load(self) -> List[Subject]:
        try:
            raw = self.backend.get(self.key)
        except OSError as e:
            logger.warning(f"Could not read subjects: {e}")
            return []
        if not raw:
            return []
        try:
            return _catalog.validate_json(raw)
        except (pydantic.ValidationError, ValueError) as e:
            logger.warning(f"Stored subjects are corrupt, starting empty: {e}")
            return []

    def _save(self, subjects: List[Subject]):
        try:
            self.backend.set(self.key, _catalog.dump_json(subjects).decode())
        except OSError as e:
            raise StorageError(f"Could not save subjects: {e}") from e

    def list(self) -> List[Subject]:
        with self._lock:
            return self._load()

    def get(self, subject_id: str) -> Optional[Subject]:
        with self._lock:
            return next((s for s in self._load() if s.id == subject_id), None)

    def create(
        self,
        name: str,
        category: Optional[str] = None,
        sub_category: Optional[str] = None,
        thumbnail: Optional[str] = None,
    ) -> Subject:
        subject = Subject(
            name=name, category=category, sub_category=sub_category, thumbnail=thumbnail
        )
        with self._lock:
            subjects = self._load()
            subjects.append(subject)
            self._save(subjects)
        logger.info(f"Created subject {subject.label} [{subject.id}]")
        return subject

    def append(
        self,
        subject_id: str,
        text: str,
        origin: ObservationOrigin,
        source_file: Optional[str] = None,
    ) -> Optional[Subject]:
        """Add an observation. Returns None if the subject no longer exists."""
        observation = Observation(text=text, origin=origin, source_file=source_file)
        with self._lock:
            subjects = self._load()
            subject = next((s for s in subjects if s.id == subject_id), None)
            if subject is None:
                return None
            subject.observations.insert(0, observation)
            subject.observations.sort(key=lambda o: o.created_at, reverse=True)
            self._save(subjects)
        return subject

    def update(self, subject_id: str, **changes) -> Optional[Subject]:
        """Change name, category, sub_category or thumbnail."""
        allowed = {"name", "category", "sub_category", "thumbnail"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with self._lock:
            subjects = self._load()
            for i, subject in enumerate(subjects):
                if subject.id == subject_id:
                    subjects[i] = subject.model_copy(update=changes)
                    self._save(subjects)
                    return subjects[i]
        return None

    def delete(self, subject_id: str) -> bool:
        with self._lock:
            subjects = self._load()
            remaining = [s for s in subjects if s.id != subject_id]
            if len(remaining) == len(subjects):
                return False
            self._save(remaining)
        logger.info(f"Deleted subject {subject_id}")
        return True

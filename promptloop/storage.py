import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from promptloop.errors import ExternalServiceError

logger = logging.getLogger('promptloop.storage')


class RecordStore:
    """
    Repository class responsible for the persistence and retrieval of keyed
    records (sessions, optimization history, policies, applied optimizations).

    Each collection lives in its own JSON file under ``persistence_path``.
    No transactional guarantee is made across collections.
    """

    def __init__(self, persistence_path: Path | str):
        self.path = Path(persistence_path)
        self._lock = threading.RLock()
        try:
            if not self.path.exists():
                self.path.mkdir(parents=True, exist_ok=True)
        except (OSError, PermissionError) as e:
            logger.error(f'Critical error: Could not create storage directory {self.path}: {e}')
            raise ExternalServiceError(f'Could not create storage directory {self.path}: {e}', service='store') from e

    def _collection_file(self, collection: str) -> Path:
        return self.path / f'{collection}.json'

    def _load(self, collection: str) -> Dict[str, Any]:
        collection_file = self._collection_file(collection)
        if not collection_file.exists():
            return {}
        try:
            with open(collection_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f'Failed to load collection {collection}: {e}')
            raise ExternalServiceError(f'Collection {collection} is unreadable: {e}', service='store') from e

    def _atomic_write(self, collection: str, records: Dict[str, Any]) -> None:
        """Writes the collection to a temp file, then atomically renames it."""
        collection_file = self._collection_file(collection)
        temp_path = collection_file.with_suffix('.tmp')
        try:
            with open(temp_path, 'w') as f:
                json.dump(records, f, indent=2, default=str)
            temp_path.replace(collection_file)
        except (OSError, TypeError) as e:
            logger.error(f'Failed to save collection {collection} safely: {e}')
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            raise ExternalServiceError(f'Could not persist collection {collection}: {e}', service='store') from e

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._load(collection).get(key)

    def put(self, collection: str, key: str, record: Dict[str, Any]) -> None:
        with self._lock:
            records = self._load(collection)
            records[key] = record
            self._atomic_write(collection, records)

    def update(self, collection: str, key: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Merges ``changes`` into an existing record and returns the result."""
        with self._lock:
            records = self._load(collection)
            if key not in records:
                raise KeyError(f'{collection}/{key} does not exist')
            records[key] = {**records[key], **changes}
            self._atomic_write(collection, records)
            return records[key]

    def all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load(collection).values())

    def query(self, collection: str, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        return [r for r in self.all(collection) if predicate(r)]

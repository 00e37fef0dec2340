"""Durable key-value blob store backed by a single JSON file."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from exceptions import PersistenceReadError, PersistenceWriteError


class JsonFileBlobStore:
    """
    Named string records kept in one JSON object on disk.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace``, so readers see either the old or the new file.
    """

    def __init__(self, path: Path, logger: Optional[logging.Logger] = None):
        self.path = Path(path)
        self.logger = logger or logging.getLogger("prompt_runner.blob_store")

    def _read_records(self) -> Dict[str, object]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as exc:
            raise PersistenceReadError(f"Failed to read blob file: {exc}", path=str(self.path)) from exc

        try:
            records = json.loads(raw)
        except ValueError as exc:
            raise PersistenceReadError(f"Blob file is not valid JSON: {exc}", path=str(self.path)) from exc
        if not isinstance(records, dict):
            raise PersistenceReadError("Blob file must contain a JSON object", path=str(self.path))
        return records

    def get(self, key: str) -> Optional[str]:
        """Return the blob stored under ``key`` or None when absent."""
        value = self._read_records().get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise PersistenceReadError(
                f"Record holds {type(value).__name__}, expected string",
                key=key,
                path=str(self.path),
            )
        return value

    def set(self, key: str, value: str) -> None:
        records = self._load_for_update()
        records[key] = value
        self._write(key, records)

    def remove(self, key: str) -> None:
        records = self._load_for_update()
        if key not in records:
            return
        del records[key]
        self._write(key, records)

    def _load_for_update(self) -> Dict[str, object]:
        try:
            return self._read_records()
        except PersistenceReadError as exc:
            self.logger.warning(f"Replacing unreadable blob file: {exc}")
            return {}

    def _write(self, key: str, records: Dict[str, object]) -> None:
        try:
            self._write_atomic(json.dumps(records, indent=2, ensure_ascii=False))
        except OSError as exc:
            raise PersistenceWriteError(
                f"Failed to write blob file: {exc}", key=key, path=str(self.path)
            ) from exc

    @retry(
        retry=retry_if_exception_type(OSError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
        reraise=True,
    )
    def _write_atomic(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

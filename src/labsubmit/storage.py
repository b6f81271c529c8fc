"""Record store backends for subjects, assignments and submissions.

Records are plain JSON objects addressed by ``(kind, record_id)``.  Every
backend supports an atomic read-modify-write through :meth:`RecordStore.update`:
the callback sees the current record and either returns the replacement or
raises, in which case nothing is written.  Authorization and lifecycle checks
run inside that callback so they are always evaluated against the state that
is actually being replaced.

Two concrete backends are provided:

* ``LocalRecordStore`` – one JSON file per record under a base directory.
  Writers on the same record are serialised with a per-record lock, so it is
  safe for a single worker process with many threads.

* ``GCSRecordStore`` – one object per record in Google Cloud Storage.
  Updates are optimistic: the write is conditioned on the generation that was
  read and the whole read-modify-write is retried when another writer got
  there first.  Safe across instances.
"""

from __future__ import annotations

import json
import os
import re
import threading
import uuid
import weakref
from pathlib import Path
from typing import Any, Callable, Dict, List

from .errors import MalformedRequest, RecordExists, RecordNotFound, StateConflictError

try:
    from google.api_core import exceptions as gcs_exceptions  # type: ignore
    from google.cloud import storage  # type: ignore
except ImportError:
    gcs_exceptions = None  # type: ignore
    storage = None  # type: ignore


Record = Dict[str, Any]
Mutator = Callable[[Record], Record]

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def _check_key(kind: str, record_id: str) -> None:
    for part in (kind, record_id):
        if not isinstance(part, str) or not _ID_PATTERN.match(part) or ".." in part:
            raise MalformedRequest(f"Invalid record key: {kind}/{record_id}")


class RecordStore:
    """Protocol for record store backends."""

    def get(self, kind: str, record_id: str) -> Record:
        raise NotImplementedError

    def create(self, kind: str, record_id: str, record: Record) -> Record:
        raise NotImplementedError

    def put(self, kind: str, record_id: str, record: Record) -> Record:
        raise NotImplementedError

    def update(self, kind: str, record_id: str, fn: Mutator) -> Record:
        raise NotImplementedError

    def list(self, kind: str) -> List[Record]:
        raise NotImplementedError


class LocalRecordStore(RecordStore):
    """Store records as JSON files on a local filesystem."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        # Locks live only while some thread holds or waits on them
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    def _path(self, kind: str, record_id: str) -> Path:
        _check_key(kind, record_id)
        return self.base_dir / kind / f"{record_id}.json"

    def _lock(self, kind: str, record_id: str) -> threading.Lock:
        key = f"{kind}/{record_id}"
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _read(self, kind: str, record_id: str) -> Record:
        path = self._path(kind, record_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise RecordNotFound(kind, record_id)

    def _write(self, kind: str, record_id: str, record: Record) -> None:
        path = self._path(kind, record_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so readers never observe a half written record
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}")
        tmp.write_text(json.dumps(record), encoding="utf-8")
        os.replace(tmp, path)

    def get(self, kind: str, record_id: str) -> Record:
        return self._read(kind, record_id)

    def create(self, kind: str, record_id: str, record: Record) -> Record:
        with self._lock(kind, record_id):
            if self._path(kind, record_id).exists():
                raise RecordExists(f"{kind} {record_id} already exists")
            self._write(kind, record_id, record)
        return record

    def put(self, kind: str, record_id: str, record: Record) -> Record:
        with self._lock(kind, record_id):
            self._write(kind, record_id, record)
        return record

    def update(self, kind: str, record_id: str, fn: Mutator) -> Record:
        with self._lock(kind, record_id):
            current = self._read(kind, record_id)
            new = fn(current)
            self._write(kind, record_id, new)
        return new

    def list(self, kind: str) -> List[Record]:
        _check_key(kind, "index")
        kind_dir = self.base_dir / kind
        if not kind_dir.exists():
            return []
        records = []
        for path in sorted(kind_dir.glob("*.json")):
            if path.name.startswith("."):
                continue
            try:
                records.append(json.loads(path.read_text(encoding="utf-8")))
            except FileNotFoundError:
                continue
        return records


class GCSRecordStore(RecordStore):
    """Store records in Google Cloud Storage.

    Records are stored as ``<kind>/<record_id>.json``.  This backend requires
    ``google-cloud-storage`` to be installed and appropriate service
    credentials to be available (Cloud Run automatically provides credentials
    via its service account).
    """

    def __init__(self, bucket_name: str, bucket=None, max_attempts: int = 5) -> None:
        if bucket is None:
            if storage is None:
                raise RuntimeError(
                    "google-cloud-storage is not installed; cannot use GCSRecordStore"
                )
            client = storage.Client()
            bucket = client.bucket(bucket_name)
        self.bucket = bucket
        self.max_attempts = max_attempts

    @staticmethod
    def _blob_name(kind: str, record_id: str) -> str:
        _check_key(kind, record_id)
        return f"{kind}/{record_id}.json"

    def _upload(self, blob, record: Record, **preconditions) -> None:
        blob.upload_from_string(
            json.dumps(record), content_type="application/json", **preconditions
        )

    def get(self, kind: str, record_id: str) -> Record:
        blob = self.bucket.get_blob(self._blob_name(kind, record_id))
        if blob is None:
            raise RecordNotFound(kind, record_id)
        return json.loads(blob.download_as_bytes())

    def create(self, kind: str, record_id: str, record: Record) -> Record:
        blob = self.bucket.blob(self._blob_name(kind, record_id))
        try:
            # Generation 0 means "only if the object does not exist yet"
            self._upload(blob, record, if_generation_match=0)
        except gcs_exceptions.PreconditionFailed:
            raise RecordExists(f"{kind} {record_id} already exists")
        return record

    def put(self, kind: str, record_id: str, record: Record) -> Record:
        self._upload(self.bucket.blob(self._blob_name(kind, record_id)), record)
        return record

    def update(self, kind: str, record_id: str, fn: Mutator) -> Record:
        name = self._blob_name(kind, record_id)
        for _ in range(self.max_attempts):
            blob = self.bucket.get_blob(name)
            if blob is None:
                raise RecordNotFound(kind, record_id)
            generation = blob.generation
            try:
                current = json.loads(blob.download_as_bytes(if_generation_match=generation))
            except gcs_exceptions.PreconditionFailed:
                continue
            new = fn(current)
            try:
                self._upload(blob, new, if_generation_match=generation)
            except gcs_exceptions.PreconditionFailed:
                continue
            return new
        raise StateConflictError(f"{kind} {record_id} is being modified concurrently; try again")

    def list(self, kind: str) -> List[Record]:
        _check_key(kind, "index")
        records = []
        for blob in self.bucket.list_blobs(prefix=f"{kind}/"):
            if blob.name.endswith(".json"):
                records.append(json.loads(blob.download_as_bytes()))
        return records

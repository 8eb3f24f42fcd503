"""Record persistence: JSON blobs on local disk or in a GCS bucket.

Every entity is one JSON document under a fixed key prefix
(``diligence/{id}.json``, ``thesis-fit-feedback/{id}.json``). Document files
live under ``folders/{folder_id}/`` and move to ``archive/`` or ``trash/``
when their record is deleted.

There is no locking: ``update`` is load-merge-save, so two concurrent writers
to the same record race and the last write wins.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Protocol

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage as gcs
from pydantic import ValidationError

from dealdesk.config import Settings
from dealdesk.errors import ConfigurationMissing, NotFound
from dealdesk.schemas import DiligenceRecord
from dealdesk.utils import new_id, now_iso

log = logging.getLogger(__name__)

RECORD_PREFIX = "diligence/"
FOLDER_PREFIX = "folders/"
ARCHIVE_PREFIX = "archive/"
TRASH_PREFIX = "trash/"
_FOLDER_MARKER = ".folder.json"


# ---------------------------------------------------------------------------
# Blob backends
# ---------------------------------------------------------------------------


class BlobBackend(Protocol):
    def save(self, key: str, data: bytes, content_type: str = "application/json") -> None: ...
    def load(self, key: str) -> bytes | None: ...
    def list(self, prefix: str) -> list[str]: ...
    def delete(self, key: str) -> bool: ...
    def move(self, src: str, dst: str) -> None: ...


class LocalBackend:
    """Files under ``root``; keys are POSIX relative paths."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Key escapes storage root: {key!r}")
        return path

    def save(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    def load(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def list(self, prefix: str) -> list[str]:
        base = self.root / prefix
        if base.is_file():
            return [prefix]
        if not base.is_dir():
            return []
        root = self.root.resolve()
        return sorted(
            p.resolve().relative_to(root).as_posix()
            for p in base.rglob("*") if p.is_file() and not p.name.endswith(".tmp")
        )

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def move(self, src: str, dst: str) -> None:
        target = self._path(dst)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._path(src).replace(target)


class GCSBackend:
    """Objects in a Google Cloud Storage bucket."""

    def __init__(self, bucket_name: str, client: gcs.Client | None = None):
        self._client = client or gcs.Client()
        self._bucket = self._client.bucket(bucket_name)

    def save(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        self._bucket.blob(key).upload_from_string(data, content_type=content_type)

    def load(self, key: str) -> bytes | None:
        try:
            return self._bucket.blob(key).download_as_bytes()
        except gcs_exceptions.NotFound:
            return None

    def list(self, prefix: str) -> list[str]:
        return sorted(b.name for b in self._client.list_blobs(self._bucket, prefix=prefix))

    def delete(self, key: str) -> bool:
        try:
            self._bucket.blob(key).delete()
        except gcs_exceptions.NotFound:
            return False
        return True

    def move(self, src: str, dst: str) -> None:
        blob = self._bucket.blob(src)
        self._bucket.copy_blob(blob, self._bucket, dst)
        blob.delete()


def make_backend(settings: Settings) -> BlobBackend:
    if settings.storage_backend == "gcs":
        if not settings.gcs_bucket:
            raise ConfigurationMissing(
                "GCS storage selected but no bucket configured",
                hint="Set GCS_BUCKET or STORAGE_BACKEND=local", status_code=503,
            )
        return GCSBackend(settings.gcs_bucket)
    if settings.storage_backend != "local":
        raise ConfigurationMissing(f"Unknown STORAGE_BACKEND {settings.storage_backend!r}", status_code=503)
    return LocalBackend(settings.data_dir)


# ---------------------------------------------------------------------------
# Diligence records
# ---------------------------------------------------------------------------


class RecordStore:
    def __init__(self, backend: BlobBackend, prefix: str = RECORD_PREFIX):
        self.backend = backend
        self.prefix = prefix

    def _key(self, record_id: str) -> str:
        if not re.match(r"^[A-Za-z0-9_-]+$", record_id):
            raise NotFound("Diligence record not found")
        return f"{self.prefix}{record_id}.json"

    @staticmethod
    def new_record_id() -> str:
        return new_id("dd")

    def create(self, **fields: Any) -> DiligenceRecord:
        now = now_iso()
        record = DiligenceRecord(
            id=self.new_record_id(), created_at=now, updated_at=now, **fields,
        )
        self.save(record)
        return record

    def save(self, record: DiligenceRecord) -> None:
        self.backend.save(self._key(record.id), record.model_dump_json(indent=2).encode("utf-8"))

    def load(self, record_id: str) -> DiligenceRecord | None:
        try:
            raw = self.backend.load(self._key(record_id))
        except NotFound:
            return None
        if raw is None:
            return None
        return DiligenceRecord.model_validate_json(raw)

    def get(self, record_id: str) -> DiligenceRecord:
        record = self.load(record_id)
        if record is None:
            raise NotFound("Diligence record not found")
        return record

    def list(self) -> list[DiligenceRecord]:
        records: list[DiligenceRecord] = []
        for key in self.backend.list(self.prefix):
            if not key.endswith(".json"):
                continue
            raw = self.backend.load(key)
            if raw is None:
                continue
            try:
                records.append(DiligenceRecord.model_validate_json(raw))
            except ValidationError as exc:
                log.warning("Skipping unreadable record %s: %s", key, exc.error_count())
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records

    def delete(self, record_id: str) -> bool:
        return self.backend.delete(self._key(record_id))

    def update(self, record_id: str, fields: dict[str, Any]) -> DiligenceRecord:
        """Merge *fields* into the stored record, keep its id, bump ``updated_at``."""
        existing = self.get(record_id)
        data = existing.model_dump()
        data.update(fields)
        data["id"] = existing.id
        data["updated_at"] = now_iso()
        record = DiligenceRecord.model_validate(data)
        self.save(record)
        return record

    def search_by_name(self, query: str) -> list[DiligenceRecord]:
        q = query.strip().lower()
        return [r for r in self.list() if q in r.company_name.lower()]

    def find_by_deal_id(self, deal_id: str) -> DiligenceRecord | None:
        return next((r for r in self.list() if r.hubspot_deal_id == deal_id), None)


# ---------------------------------------------------------------------------
# Document folders
# ---------------------------------------------------------------------------


def _safe_name(name: str) -> str:
    cleaned = Path(name.replace("\\", "/")).name.strip()
    return re.sub(r"[^\w.\- ()]+", "_", cleaned) or "file"


class FolderStore:
    """Per-record document folders on the same backend as the records."""

    def __init__(self, backend: BlobBackend):
        self.backend = backend

    def create_folder(self, name: str) -> str:
        folder_id = new_id("fld")
        marker = json.dumps({"name": name, "created_at": now_iso()}).encode("utf-8")
        self.backend.save(f"{FOLDER_PREFIX}{folder_id}/{_FOLDER_MARKER}", marker)
        return folder_id

    def upload(self, folder_id: str, name: str, data: bytes, content_type: str) -> str:
        key = f"{FOLDER_PREFIX}{folder_id}/{_safe_name(name)}"
        self.backend.save(key, data, content_type=content_type)
        return key

    def download(self, key: str) -> bytes:
        data = self.backend.load(key)
        if data is None:
            raise NotFound(f"File not found: {key}")
        return data

    def list_recursive(self, folder_id: str) -> list[str]:
        return [
            k for k in self.backend.list(f"{FOLDER_PREFIX}{folder_id}/")
            if not k.endswith(_FOLDER_MARKER)
        ]

    def _relocate(self, folder_id: str, target_prefix: str) -> int:
        source = f"{FOLDER_PREFIX}{folder_id}/"
        keys = self.backend.list(source)
        for key in keys:
            self.backend.move(key, target_prefix + key[len(FOLDER_PREFIX):])
        return len(keys)

    def trash(self, folder_id: str) -> int:
        return self._relocate(folder_id, TRASH_PREFIX)

    def move_to_archive(self, folder_id: str) -> int:
        return self._relocate(folder_id, ARCHIVE_PREFIX)

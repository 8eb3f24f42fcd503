"""OCR through Google Drive conversion.

Drive turns an uploaded PDF or image into a Google Doc (running OCR on the way
in); exporting that doc as ``text/plain`` gives the recognized text. The
temporary doc is deleted afterwards. Instances are plain callables matching
:data:`dealdesk.parser.OcrEngine`.
"""
from __future__ import annotations

import json
import logging
import time
import uuid

import httpx
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from dealdesk.config import Settings
from dealdesk.parser import mime_type_for

log = logging.getLogger(__name__)

DRIVE_API = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"
GOOGLE_DOC_MIME = "application/vnd.google-apps.document"
TOKEN_URI = "https://oauth2.googleapis.com/token"


class DriveOcr:
    """Sync OCR engine: ``DriveOcr(...)(data, ext) -> text``."""

    def __init__(
        self,
        credentials,
        folder_id: str = "",
        language: str = "en",
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.credentials = credentials
        self.folder_id = folder_id
        self.language = language
        self._http = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> DriveOcr:
        credentials = service_account.Credentials.from_service_account_info(
            {
                "type": "service_account",
                "client_email": settings.google_client_email,
                "private_key": settings.google_private_key.replace("\\n", "\n"),
                "token_uri": TOKEN_URI,
            },
            scopes=[settings.google_drive_scope],
        )
        return cls(credentials, folder_id=settings.google_drive_folder_id)

    def close(self) -> None:
        self._http.close()

    def _headers(self) -> dict[str, str]:
        if not self.credentials.valid:
            self.credentials.refresh(Request())
        return {"Authorization": f"Bearer {self.credentials.token}"}

    def __call__(self, data: bytes, ext: str) -> str:
        file_id = self._upload_as_doc(data, ext)
        try:
            resp = self._http.get(
                f"{DRIVE_API}/files/{file_id}/export",
                params={"mimeType": "text/plain"},
                headers=self._headers(),
            )
            resp.raise_for_status()
            text = resp.content.decode("utf-8", errors="replace").lstrip("\ufeff").strip()
            log.info("Drive OCR recognized %d chars from .%s", len(text), ext)
            return text
        finally:
            self._delete(file_id)

    def _upload_as_doc(self, data: bytes, ext: str) -> str:
        metadata: dict = {"name": f"ocr_{ext}_{int(time.time() * 1000)}", "mimeType": GOOGLE_DOC_MIME}
        if self.folder_id:
            metadata["parents"] = [self.folder_id]
        boundary = f"dealdesk-{uuid.uuid4().hex}"
        body = b"".join([
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode(),
            json.dumps(metadata).encode(),
            f"\r\n--{boundary}\r\nContent-Type: {mime_type_for(ext)}\r\n\r\n".encode(),
            data,
            f"\r\n--{boundary}--\r\n".encode(),
        ])
        resp = self._http.post(
            f"{DRIVE_UPLOAD_API}/files",
            params={"uploadType": "multipart", "ocrLanguage": self.language,
                    "supportsAllDrives": "true", "fields": "id"},
            headers={**self._headers(), "Content-Type": f"multipart/related; boundary={boundary}"},
            content=body,
        )
        resp.raise_for_status()
        file_id = resp.json().get("id")
        if not file_id:
            raise ValueError("Drive upload returned no file id")
        return file_id

    def _delete(self, file_id: str) -> None:
        try:
            resp = self._http.delete(
                f"{DRIVE_API}/files/{file_id}",
                params={"supportsAllDrives": "true"},
                headers=self._headers(),
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            log.warning("Could not delete temporary OCR doc %s: %s", file_id, exc)

"""Object storage for deliverable files, with time-limited signed download URLs."""

import asyncio
import re
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from jose import jwt, JWTError

from core.config import Settings
from core.database import Database
from core.errors import StoreError, StoreErrorKind, ValidationError
from core.logging import get_logger
from services import validation
from services.notifications import NotificationService

logger = get_logger(__name__)

DELIVERABLES_BUCKET = "deliverables"
SIGNED_URL_PATH = "/api/storage/download"

DEFAULT_ALLOWED_TYPES = [
    "image/*", "video/*", "audio/*", "text/*",
    "application/pdf", "application/zip",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".psd", ".ai", ".fig",
]

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class BucketStorage:
    """Buckets are directories under ``settings.storage_root``."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.root = Path(settings.storage_root).resolve()
        self._algorithm = "HS256"

    def _resolve(self, bucket: str, path: str) -> Path:
        base = (self.root / bucket).resolve()
        target = (base / path).resolve()
        if not path or target == base or base not in target.parents:
            raise ValidationError.single("path", f"Invalid storage path: {path}")
        return target

    async def upload(self, bucket: str, path: str, data: bytes) -> str:
        target = self._resolve(bucket, path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, data)
        except OSError as e:
            logger.error("Upload failed", bucket=bucket, path=path, error=str(e))
            raise StoreError(StoreErrorKind.UNKNOWN, "upload", bucket, str(e)) from e
        logger.info("Object stored", bucket=bucket, path=path, size=len(data))
        return path

    async def remove(self, bucket: str, paths: Iterable[str]) -> List[str]:
        """Delete objects; missing objects are skipped. Returns the removed paths."""
        removed = []
        for path in paths:
            target = self._resolve(bucket, path)
            try:
                await asyncio.to_thread(target.unlink)
                removed.append(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("Remove failed", bucket=bucket, path=path, error=str(e))
                raise StoreError(StoreErrorKind.UNKNOWN, "remove", bucket, str(e)) from e
        return removed

    def exists(self, bucket: str, path: str) -> bool:
        return self._resolve(bucket, path).is_file()

    async def open(self, bucket: str, path: str) -> bytes:
        target = self._resolve(bucket, path)
        if not target.is_file():
            raise StoreError(StoreErrorKind.NOT_FOUND, "download", bucket, f"{path} not found")
        return await asyncio.to_thread(target.read_bytes)

    def create_signed_url(self, bucket: str, path: str, ttl: Optional[int] = None) -> str:
        self._resolve(bucket, path)
        if ttl is None:
            ttl = self.settings.signed_url_ttl
        expire = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        token = jwt.encode(
            {"bucket": bucket, "path": path, "exp": expire},
            self.settings.signed_url_secret,
            algorithm=self._algorithm
        )
        return f"{SIGNED_URL_PATH}?token={token}"

    def verify_signed_token(self, token: str) -> Dict[str, str]:
        """Return ``{"bucket", "path"}`` for a valid token; expired or forged tokens raise."""
        try:
            payload = jwt.decode(token, self.settings.signed_url_secret, algorithms=[self._algorithm])
        except JWTError as e:
            logger.debug("Signed URL rejected", error=str(e))
            raise StoreError(StoreErrorKind.PERMISSION_DENIED, "download", "storage", "Invalid or expired link") from e
        return {"bucket": payload["bucket"], "path": payload["path"]}


class DeliverableService:
    """Deliverable rows plus their stored files."""

    def __init__(self, database: Database, storage: BucketStorage,
                 notifications: NotificationService, settings: Settings):
        self.database = database
        self.storage = storage
        self.notifications = notifications
        self.settings = settings

    async def add_file_deliverable(self, project_id: str, title: str, file_name: str,
                                   content_type: Optional[str], data: bytes,
                                   description: Optional[str] = None,
                                   created_by: Optional[str] = None,
                                   allowed_types: Optional[List[str]] = None) -> Dict[str, Any]:
        title = validation.DeliverableForm.check(title=title).title
        validation.validate_file_upload(file_name, content_type, len(data),
                                        allowed_types or DEFAULT_ALLOWED_TYPES, self.settings.max_upload_mb)
        project = await self.database.get_by_id("projects", project_id)

        path = f"{project_id}/{uuid.uuid4().hex}-{_SAFE_NAME.sub('_', file_name)}"
        await self.storage.upload(DELIVERABLES_BUCKET, path, data)
        try:
            row = await self.database.insert("deliverables", {
                "project_id": project_id,
                "title": title,
                "description": description,
                "type": "file",
                "file_path": path,
                "file_name": file_name,
                "file_size": len(data),
                "mime_type": content_type,
                "created_by": created_by,
            })
        except StoreError:
            await self.storage.remove(DELIVERABLES_BUCKET, [path])
            raise

        await self.notifications.notify_client_of_deliverable(project["user_id"], project["name"], row["title"])
        return row

    async def add_url_deliverable(self, project_id: str, title: str, url: str,
                                  description: Optional[str] = None,
                                  created_by: Optional[str] = None) -> Dict[str, Any]:
        form = validation.UrlDeliverableForm.check(title=title, url=url)
        title, url = form.title, form.url
        project = await self.database.get_by_id("projects", project_id)
        row = await self.database.insert("deliverables", {
            "project_id": project_id,
            "title": title,
            "description": description,
            "type": "url",
            "url": url,
            "created_by": created_by,
        })
        await self.notifications.notify_client_of_deliverable(project["user_id"], project["name"], row["title"])
        return row

    async def delete_deliverable(self, deliverable_id: str) -> Dict[str, Any]:
        row = await self.database.get_by_id("deliverables", deliverable_id)
        await self.database.delete("deliverables", {"id": deliverable_id})
        if row.get("file_path"):
            await self.storage.remove(DELIVERABLES_BUCKET, [row["file_path"]])
        return row

    async def download_url(self, deliverable_id: str, ttl: Optional[int] = None) -> str:
        row = await self.database.get_by_id("deliverables", deliverable_id)
        if row["type"] == "url":
            return row["url"]
        if not row.get("file_path") or not self.storage.exists(DELIVERABLES_BUCKET, row["file_path"]):
            raise StoreError(StoreErrorKind.NOT_FOUND, "download", "deliverables", "Deliverable file is missing")
        return self.storage.create_signed_url(DELIVERABLES_BUCKET, row["file_path"], ttl)

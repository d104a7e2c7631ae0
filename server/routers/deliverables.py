"""Deliverable routes and signed file downloads."""

import mimetypes
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile
from pydantic import BaseModel

from core.container import container
from middleware.auth import get_current_user, require_admin
from services.storage import BucketStorage, DeliverableService

router = APIRouter(prefix="/api/deliverables", tags=["deliverables"])
storage_router = APIRouter(prefix="/api/storage", tags=["storage"])


class UrlDeliverableRequest(BaseModel):
    project_id: str
    title: str
    url: str
    description: Optional[str] = None


def get_deliverable_service() -> DeliverableService:
    return container.deliverable_service()


def get_storage() -> BucketStorage:
    return container.storage()


@router.post("/url")
async def add_url_deliverable(
    body: UrlDeliverableRequest,
    admin: dict = Depends(require_admin),
    deliverables: DeliverableService = Depends(get_deliverable_service)
):
    row = await deliverables.add_url_deliverable(
        body.project_id, body.title, body.url,
        description=body.description, created_by=admin["id"]
    )
    return {"success": True, "deliverable": row}


@router.post("/file")
async def add_file_deliverable(
    project_id: str = Form(...),
    title: str = Form(...),
    description: Optional[str] = Form(None),
    file: UploadFile = File(...),
    admin: dict = Depends(require_admin),
    deliverables: DeliverableService = Depends(get_deliverable_service)
):
    """Store an uploaded file and attach it to the project."""
    data = await file.read()
    row = await deliverables.add_file_deliverable(
        project_id, title, file.filename or "upload", file.content_type, data,
        description=description, created_by=admin["id"]
    )
    return {"success": True, "deliverable": row}


@router.get("/{deliverable_id}/url")
async def get_download_url(
    deliverable_id: str,
    user: dict = Depends(get_current_user),
    deliverables: DeliverableService = Depends(get_deliverable_service)
):
    """External URL or a short-lived signed link to the stored file."""
    row = await deliverables.database.get_by_id("deliverables", deliverable_id)
    if not user.get("is_admin"):
        project = await deliverables.database.get_by_id("projects", row["project_id"])
        if project["user_id"] != user["id"]:
            raise HTTPException(status_code=403, detail="Not your deliverable")
    return {"url": await deliverables.download_url(deliverable_id)}


@router.delete("/{deliverable_id}")
async def delete_deliverable(
    deliverable_id: str,
    admin: dict = Depends(require_admin),
    deliverables: DeliverableService = Depends(get_deliverable_service)
):
    row = await deliverables.delete_deliverable(deliverable_id)
    return {"success": True, "deliverable": row}


@storage_router.get("/download")
async def download(token: str, storage: BucketStorage = Depends(get_storage)):
    """Serve a stored object for a valid signed token."""
    target = storage.verify_signed_token(token)
    data = await storage.open(target["bucket"], target["path"])
    media_type = mimetypes.guess_type(target["path"])[0] or "application/octet-stream"
    filename = target["path"].rsplit("/", 1)[-1]
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )

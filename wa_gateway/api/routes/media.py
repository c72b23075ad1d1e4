import base64

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from wa_gateway.core.deps_api import get_current_user_id, get_db, get_relay
from wa_gateway.core.errors import InvalidRequest, ProviderError
from wa_gateway.services.media_relay import MediaRelay, media_format
from wa_gateway.services.tenants import tenant_by_user_id

router = APIRouter(prefix="/media")


@router.post("/preview")
async def preview(
    payload: dict,
    user_id: int = Depends(get_current_user_id),
    relay: MediaRelay = Depends(get_relay),
    db: AsyncSession = Depends(get_db),
):
    media_id = str(payload.get("media_id") or "").strip()
    if not media_id:
        raise InvalidRequest("Missing required field: media_id", details={"field": "media_id"})
    ctx = await tenant_by_user_id(db, user_id)
    data, content_type = await relay.preview(media_id, ctx.config.access_token)
    return {
        "success": True,
        "media_id": media_id,
        "content_type": content_type,
        "base64": base64.b64encode(data).decode("ascii"),
    }


@router.post("/upload")
async def upload(
    files: list[UploadFile] = File(...),
    caption: str | None = Form(None),
    user_id: int = Depends(get_current_user_id),
    relay: MediaRelay = Depends(get_relay),
    db: AsyncSession = Depends(get_db),
):
    ctx = await tenant_by_user_id(db, user_id)
    media, errors = [], []
    for f in files:
        filename = f.filename or "upload"
        content_type = f.content_type or "application/octet-stream"
        if media_format(content_type) is None:
            errors.append({"filename": filename, "error": f"Unsupported media type: {content_type}"})
            continue
        data = await f.read()
        try:
            media.append(await relay.upload(
                ctx.agent.prefix, ctx.config.phone_number_id, ctx.config.access_token, data, filename, content_type
            ))
        except ProviderError as exc:
            errors.append({"filename": filename, "error": exc.message})
    return {
        "success": bool(media),
        "uploaded": len(media),
        "total": len(files),
        "caption": caption,
        "media": media,
        "errors": errors,
    }

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Body, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from .catalog import add_item, bulk_update, get_item, list_stock, upsert_items
from .deliveries import list_deliveries, upload_filename
from .errors import NotFoundError, PersistenceError, StoreError, ValidationError
from .services import Services
from .sheets import XLSX_MEDIA_TYPE, attachment_headers, deliveries_workbook, read_stock_rows, stock_workbook

LOG = logging.getLogger("storefront_bot.web")

router = APIRouter()

IdValue = Optional[Union[str, int]]


def get_services(request: Request) -> Services:
    return request.app.state.services


class ConfigPayload(BaseModel):
    """Partial configuration from the panel; omitted fields keep their value."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    main_channel_id: IdValue = Field(default=None, alias="mainChannelId")
    main_message_id: IdValue = Field(default=None, alias="mainMessageId")
    delivery_channel_id: IdValue = Field(default=None, alias="deliveryChannelId")
    client_role_id: IdValue = Field(default=None, alias="clientRoleId")
    guild_id: IdValue = Field(default=None, alias="guildId")


def _loose_int(value: Optional[str], default: int) -> int:
    try:
        return int(float(str(value).strip())) or default
    except (TypeError, ValueError, OverflowError):
        return default


# ---------- Config ----------
@router.get("/get-config")
async def get_config(svc: Services = Depends(get_services)) -> Dict[str, Any]:
    return svc.config.current.as_dict()


@router.post("/save-config")
async def save_config(payload: ConfigPayload, svc: Services = Depends(get_services)) -> Dict[str, Any]:
    await svc.config.update(**payload.model_dump(exclude_unset=True))
    LOG.info("Configuration saved: %s", svc.config.current.as_dict())
    return {"status": "success", "message": "Configuration saved."}


# ---------- Stock ----------
@router.get("/get-stock")
async def get_stock(svc: Services = Depends(get_services)) -> list:
    async with svc.session_factory() as s:
        return [item.to_dict() for item in await list_stock(s)]


@router.post("/add-fruit")
async def add_fruit(
    payload: Dict[str, Any] = Body(...), svc: Services = Depends(get_services)
) -> Dict[str, Any]:
    async with svc.session_factory() as s, s.begin():
        item = await add_item(s, payload)
        stock = [it.to_dict() for it in await list_stock(s)]
    svc.refresher.request()
    return {"status": "success", "stock": stock, "item": item.to_dict()}


@router.post("/update-stock")
async def update_stock(
    payload: Dict[str, Any] = Body(...), svc: Services = Depends(get_services)
) -> Dict[str, Any]:
    try:
        async with svc.session_factory() as s, s.begin():
            await bulk_update(s, payload)
    except SQLAlchemyError as exc:
        LOG.exception("Failed to update stock")
        raise PersistenceError("Failed to update stock.") from exc
    svc.refresher.request()
    async with svc.session_factory() as s:
        stock = [it.to_dict() for it in await list_stock(s)]
    return {"status": "success", "stock": stock}


@router.post("/import-stock")
async def import_stock(file: UploadFile = File(...), svc: Services = Depends(get_services)) -> Dict[str, Any]:
    rows = read_stock_rows(file.filename or "", await file.read())
    async with svc.session_factory() as s, s.begin():
        imported = await upsert_items(s, rows)
        stock = [it.to_dict() for it in await list_stock(s)]
    svc.refresher.request()
    LOG.info("Imported %d stock row(s) from %s", imported, file.filename)
    return {"status": "success", "imported": imported, "stock": stock}


@router.get("/export-stock")
async def export_stock(svc: Services = Depends(get_services)) -> Response:
    async with svc.session_factory() as s:
        items = await list_stock(s)
    return Response(stock_workbook(items), media_type=XLSX_MEDIA_TYPE, headers=attachment_headers("stock.xlsx"))


# ---------- Deliveries ----------
@router.post("/deliver")
async def deliver(
    request: Request,
    mention: Optional[str] = Form(None),
    item_id: Optional[str] = Form(None, alias="itemId"),
    quantity: Optional[str] = Form(None),
    note: Optional[str] = Form(None),
    photo: Optional[UploadFile] = File(None),
    svc: Services = Depends(get_services),
) -> Dict[str, Any]:
    if not svc.config.current.delivery_channel_id:
        raise ValidationError("Delivery channel is not configured in the panel.")
    if not item_id:
        raise ValidationError("itemId is required")
    async with svc.session_factory() as s:
        if await get_item(s, item_id) is None:
            raise NotFoundError("item not found")
    amount = _loose_int(quantity, 1)
    if amount < 1:
        raise ValidationError("quantity must be at least 1")

    photo_url = None
    if photo is not None and photo.filename:
        uploads: Path = svc.settings.uploads_dir
        uploads.mkdir(parents=True, exist_ok=True)
        name = upload_filename(Path(photo.filename).suffix)
        (uploads / name).write_bytes(await photo.read())
        photo_url = f"{str(request.base_url).rstrip('/')}/uploads/{name}"

    record = await svc.deliveries.create(
        item_id,
        amount,
        recipient=mention or None,
        mention=mention or None,
        note=note or None,
        photo_url=photo_url,
    )
    return {"status": "success", "delivery": record.to_dict()}


@router.get("/get-deliveries")
async def get_deliveries(svc: Services = Depends(get_services)) -> list:
    async with svc.session_factory() as s:
        return [record.to_dict() for record in await list_deliveries(s)]


@router.get("/export-deliveries")
async def export_deliveries(svc: Services = Depends(get_services)) -> Response:
    async with svc.session_factory() as s:
        records = await list_deliveries(s)
    return Response(
        deliveries_workbook(records), media_type=XLSX_MEDIA_TYPE, headers=attachment_headers("deliveries.xlsx")
    )


# ---------- App ----------
async def _store_error(request: Request, exc: StoreError) -> JSONResponse:
    LOG.warning("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"status": "error", "message": exc.message})


def create_app(services: Services) -> FastAPI:
    settings = services.settings
    app = FastAPI(title="storefront-bot admin")
    app.state.services = services
    app.add_exception_handler(StoreError, _store_error)
    app.include_router(router)

    static_dir = Path(settings.static_dir)
    uploads_dir = Path(settings.uploads_dir)
    uploads_dir.mkdir(parents=True, exist_ok=True)
    static_dir.mkdir(parents=True, exist_ok=True)

    @app.get("/", include_in_schema=False)
    async def index() -> Response:
        page = static_dir / "index.html"
        if not page.is_file():
            return JSONResponse(status_code=404, content={"status": "error", "message": "index.html not found"})
        return FileResponse(page)

    app.mount("/uploads", StaticFiles(directory=uploads_dir), name="uploads")
    app.mount("/public", StaticFiles(directory=static_dir), name="public")
    return app

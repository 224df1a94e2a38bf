import os

from fastapi import FastAPI, File, Form, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse

from heic_relay.config import RelaySettings, data_dir
from heic_relay.logger import get_logger
from heic_relay.relay import PageEvent, RelayService, TextBuffer, TransferItem
from heic_relay.relay.adapters import PyvipsConverter
from heic_relay.relay.models import to_data_uri

app = FastAPI(
    title="HEIC Relay",
    version=os.getenv("HEIC_RELAY_VERSION", "0.1.0"),
    description=(
        "Converts HEIC images pasted or dropped into a comment box to JPEG, "
        "relaying each file through an isolated converter."
    ),
)

_logger = get_logger("webapi")

# Global configuration defaults
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "50"))
DATA_DIR = data_dir()
EVENT_KINDS = {"paste", "drop"}

# Engine loaded lazily inside the converter cell; swappable for tests
ENGINE_FACTORY = PyvipsConverter

SERVICE: RelayService | None = None


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.on_event("startup")
async def _startup() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    global SERVICE
    SERVICE = RelayService(DATA_DIR, ENGINE_FACTORY, RelaySettings.from_env())
    await SERVICE.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    global SERVICE
    if SERVICE is not None:
        await SERVICE.stop()
        SERVICE = None


@app.post("/paste")
async def paste(
    files: list[UploadFile] = File(...),
    text: str = Form(""),
    cursor: int | None = Form(None),
    cursor_end: int | None = Form(None),
    event: str = Form("paste"),
) -> JSONResponse:
    """Run a paste/drop of `files` into a comment buffer holding `text`.

    HEIC files are converted to JPEG and a placeholder is shown at the cursor
    while they are in flight. The response carries the final buffer text and
    the files the page's own upload logic would receive.
    """
    kind = event.strip().lower()
    if kind not in EVENT_KINDS:
        raise HTTPException(status_code=422, detail={"code": "invalid_event", "message": f"event must be one of {sorted(EVENT_KINDS)}"})

    max_bytes = MAX_UPLOAD_MB * 1024 * 1024
    items: list[TransferItem] = []
    for upload in files:
        data = await upload.read()
        if len(data) > max_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail={"code": "payload_too_large", "message": f"{upload.filename} exceeds {MAX_UPLOAD_MB} MB"},
            )
        items.append(TransferItem(upload.filename or "upload", data, (upload.content_type or "").strip().lower()))

    buffer = TextBuffer(value=text)
    buffer.set_cursor(len(text) if cursor is None else cursor, cursor_end)

    global SERVICE
    assert SERVICE is not None
    page_event = PageEvent(kind=kind, items=items, target=buffer)
    outcome = await SERVICE.handle_event(page_event)

    if outcome.dispatched:
        delivered = outcome.dispatched[-1].items
    elif outcome.handled:
        delivered = []
    else:
        # Nothing to convert: the original event proceeds untouched
        delivered = items

    _logger.info("%s with %d file(s): %d converted, %d error(s)", kind, len(items), len(outcome.converted), len(outcome.errors))
    body = {
        "handled": outcome.handled,
        "text": buffer.value,
        "files": [
            {
                "fileName": item.name,
                "mimeType": item.mime_type or "application/octet-stream",
                "data": to_data_uri(item.data, item.mime_type or "application/octet-stream"),
            }
            for item in delivered
        ],
        "errors": outcome.errors,
    }
    return JSONResponse(content=body)


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("heic_relay.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()

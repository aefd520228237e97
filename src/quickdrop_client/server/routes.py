from typing import Annotated

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from quickdrop_client.client import DropClient
from quickdrop_client.downloads import PayloadDownload
from quickdrop_client.exceptions import InvalidInputError
from quickdrop_client.models.drop import DropCreate
from .deps import extract_client_principal, get_drop_client

QUICKDROP_FILENAME_HEADER = "X-QuickDrop-Filename"

router = APIRouter(tags=["QuickDrop"])


def _stream(download: PayloadDownload, filename_header: str | None = None) -> StreamingResponse:
    return StreamingResponse(
        download.iter_bytes(),
        status_code=200,
        headers=download.headers(filename_header),
        background=BackgroundTask(download.aclose),
    )


@router.post("/drops")
async def create_drop(
    request: Request,
    payload: Annotated[DropCreate, Body()],
    client: Annotated[DropClient, Depends(get_drop_client)],
):
    """Резервирует токен и путь для payload. 400 на кривой размер, 429 на лимит."""
    ticket = await client.create_drop(
        file_name=payload.file_name,
        size_bytes=payload.size_bytes,
        content_type=payload.content_type,
        principal=extract_client_principal(request),
    )
    return {"token": ticket.token, "uploadPath": ticket.storage_path}


@router.put("/drops/{token}/payload")
async def upload_payload(
    token: str,
    request: Request,
    client: Annotated[DropClient, Depends(get_drop_client)],
):
    declared_length = None
    raw_length = request.headers.get("content-length")
    if raw_length is not None:
        try:
            declared_length = int(raw_length)
        except ValueError:
            raise InvalidInputError("Invalid Content-Length header") from None

    received = 0

    async def _counted():
        nonlocal received
        async for chunk in request.stream():
            received += len(chunk)
            yield chunk

    drop = await client.upload_payload_stream(token, _counted(), declared_length)
    return {"token": token, "uploadPath": drop.storage_path, "sizeBytes": received}


@router.patch("/drops/{token}")
async def activate_drop(token: str, client: Annotated[DropClient, Depends(get_drop_client)]):
    result = await client.activate_drop(token)
    return {
        "token": result.token,
        "sharePath": result.share_path,
        "expiresInMs": result.expires_in_ms,
    }


@router.get("/drops/{token}")
async def get_drop_status(token: str, client: Annotated[DropClient, Depends(get_drop_client)]):
    view = await client.get_drop_status(token)
    return view.to_wire()


@router.post("/drops/{token}")
async def consume_drop(token: str, client: Annotated[DropClient, Depends(get_drop_client)]):
    download = await client.consume_drop(token)
    return _stream(download, QUICKDROP_FILENAME_HEADER)


@router.post("/files/{file_id}/auto-delete-token", tags=["Auto-delete"])
async def issue_auto_delete_token(file_id: str, client: Annotated[DropClient, Depends(get_drop_client)]):
    ticket = await client.issue_auto_delete_token(file_id)
    return {
        "token": ticket.token,
        "consumePath": f"/downloads/consume/{ticket.token}",
        "expiresAt": ticket.expires_at.isoformat(),
    }


@router.get("/downloads/consume/{token}", tags=["Auto-delete"])
async def consume_auto_delete_token(token: str, client: Annotated[DropClient, Depends(get_drop_client)]):
    download = await client.consume_auto_delete_token(token)
    return _stream(download)

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ..services.ingest import IngestionGateway
from ..shared.errors import PayloadTooLargeError, ValidationError
from .deps import get_body_limit, get_gateway

router = APIRouter()


class Accepted(BaseModel):
    status: str = "accepted"
    event_id: str


async def read_json_body(request: Request, limit: int):
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError(f"request body exceeds {limit} bytes")
    raw = await request.body()
    if len(raw) > limit:
        raise PayloadTooLargeError(f"request body exceeds {limit} bytes")
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationError("request body must be valid JSON") from e


@router.post("/event", status_code=202, response_model=Accepted, summary="Queue one event for aggregation")
async def submit_event(
    request: Request,
    gateway: IngestionGateway = Depends(get_gateway),
    body_limit: int = Depends(get_body_limit),
):
    # Body is parsed by hand so every client error shares the {"error": ...} shape
    body = await read_json_body(request, body_limit)
    event = await gateway.submit(body)
    return Accepted(event_id=event.id)

from fastapi import Request

from ..services.ingest import IngestionGateway
from ..services.reporting import ReportingService


def get_gateway(request: Request) -> IngestionGateway:
    return request.app.state.gateway


def get_reporting(request: Request) -> ReportingService:
    return request.app.state.reporting


def get_body_limit(request: Request) -> int:
    return request.app.state.max_body_bytes

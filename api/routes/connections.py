"""ERP connection management endpoints.

Handles creating, testing, rotating and deleting ERP connections.
Credentials are accepted on create/rotate and never returned.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from connectors.erp_base import Environment, ProviderKind
from connectors.errors import ConfigurationError, DecryptionError, ErpError
from core.connections import (
    ConnectionNotFoundError,
    ConnectionService,
    ConnectionStatus,
    ErpConnection,
    ErrorDetail,
)


router = APIRouter()


class CreateConnectionRequest(BaseModel):
    """Request to create a connection."""
    tenant_id: str = Field(..., min_length=1)
    provider: ProviderKind
    environment: Environment = Environment.PRODUCTION
    name: Optional[str] = Field(default=None, max_length=200)
    credentials: Dict[str, Any] = Field(
        ...,
        description="Provider credentials (NetSuite TBA keys or SAP client credentials)"
    )


class RotateCredentialsRequest(BaseModel):
    """Request to replace a connection's credentials."""
    credentials: Dict[str, Any]


class ConnectionResponse(BaseModel):
    """A connection without its credentials."""
    id: str
    tenant_id: str
    name: Optional[str] = None
    provider: ProviderKind
    environment: Environment
    status: ConnectionStatus
    last_tested_at: Optional[datetime] = None
    last_latency_ms: Optional[float] = None
    last_error: Optional[ErrorDetail] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_connection(cls, connection: ErpConnection) -> "ConnectionResponse":
        return cls(**connection.to_public_dict())


class ConnectionTestResponse(BaseModel):
    """Result of a connection test."""
    connection_id: str
    status: ConnectionStatus
    latency_ms: float
    error: Optional[ErrorDetail] = None
    tested_at: datetime
    applied: bool


def get_connection_service(request: Request) -> ConnectionService:
    service = getattr(request.app.state, "connection_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Connection service not initialized")
    return service


def _http_error(error: ErpError) -> HTTPException:
    if isinstance(error, ConnectionNotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, ConfigurationError):
        return HTTPException(status_code=422, detail=error.message)
    if isinstance(error, DecryptionError):
        return HTTPException(status_code=409, detail=error.message)
    return HTTPException(status_code=502, detail=error.to_dict())


@router.post("", response_model=ConnectionResponse, status_code=201)
async def create_connection(
    request: CreateConnectionRequest,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    """Create a connection. Status starts as untested.

    For NetSuite, credentials should include:
    - account_id, consumer_key, consumer_secret, token_id, token_secret
    - optional realm, rest_base_url

    For SAP S/4HANA, credentials should include:
    - client_id, client_secret, token_endpoint, api_base_url
    - optional scope
    """
    try:
        connection_id = await service.create(
            tenant_id=request.tenant_id,
            provider=request.provider,
            environment=request.environment,
            credentials=request.credentials,
            name=request.name,
        )
        connection = await service.get_connection(connection_id)
    except ErpError as e:
        raise _http_error(e) from e

    return ConnectionResponse.from_connection(connection)


@router.get("", response_model=List[ConnectionResponse])
async def list_connections(
    tenant_id: str = Query(..., min_length=1),
    service: ConnectionService = Depends(get_connection_service),
) -> List[ConnectionResponse]:
    """List a tenant's connections."""
    connections = await service.list_connections(tenant_id)
    return [ConnectionResponse.from_connection(c) for c in connections]


@router.get("/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: str,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    """Get a connection."""
    try:
        connection = await service.get_connection(connection_id)
    except ErpError as e:
        raise _http_error(e) from e
    return ConnectionResponse.from_connection(connection)


@router.post("/{connection_id}/test", response_model=ConnectionTestResponse)
async def test_connection(
    connection_id: str,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionTestResponse:
    """Run an authenticated round trip against the ERP and record the outcome.

    A failing test is a successful API call: the response carries
    status=failing and the error kind/message.
    """
    try:
        result = await service.test_connection(connection_id)
    except ErpError as e:
        raise _http_error(e) from e
    return ConnectionTestResponse(**result.model_dump())


@router.put("/{connection_id}/credentials", response_model=ConnectionResponse)
async def rotate_credentials(
    connection_id: str,
    request: RotateCredentialsRequest,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    """Replace credentials. Status resets to untested."""
    try:
        connection = await service.rotate_credentials(connection_id, request.credentials)
    except ErpError as e:
        raise _http_error(e) from e
    return ConnectionResponse.from_connection(connection)


@router.delete("/{connection_id}", status_code=204)
async def delete_connection(
    connection_id: str,
    service: ConnectionService = Depends(get_connection_service),
) -> Response:
    """Delete a connection and drop any cached client."""
    try:
        await service.delete(connection_id)
    except ErpError as e:
        raise _http_error(e) from e
    return Response(status_code=204)

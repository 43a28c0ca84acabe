"""
Connection form helpers: test a descriptor, encrypt a password for storage,
browse the source catalog
"""

from fastapi import APIRouter, Depends
from api.dependencies import get_codec, get_connector_factory, get_settings
from core.config import Settings
from core.exceptions import SecretError
from core.secrets import SecretCodec
from ingestion.connectors import ConnectorFactory
from schemas.api import (
    DistinctValuesRequest,
    DistinctValuesResponse,
    EncryptPasswordRequest,
    EncryptPasswordResponse,
    MetadataRequest,
    MetadataResponse,
)
from schemas.pipeline import ConnectionDescriptor, ConnectionTestResult, TableInfo
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/connections", tags=["Connections"])


@router.post("/test", response_model=ConnectionTestResult)
async def test_connection(
    descriptor: ConnectionDescriptor,
    connectors: ConnectorFactory = Depends(get_connector_factory),
):
    """
    Connect with the descriptor and run a trivial query.

    Connector failures come back as ``{ok: false, message, errorKind}`` with
    the localized hint as the message.
    """
    logger.info(f"POST /connections/test - {descriptor.dialect}://{descriptor.host or ''}")
    try:
        return await connectors.test_connection(descriptor)
    except SecretError as e:
        return ConnectionTestResult(ok=False, message=e.message, error_kind=e.kind)


@router.post("/encrypt-password", response_model=EncryptPasswordResponse)
async def encrypt_password(
    body: EncryptPasswordRequest,
    codec: SecretCodec = Depends(get_codec),
):
    """Ciphertext to store in place of the password. Fails without ENCRYPTION_KEY."""
    return EncryptPasswordResponse(encrypted_password=codec.encrypt(body.password.get_secret_value()))


@router.post("/metadata", response_model=MetadataResponse)
async def connection_metadata(
    body: MetadataRequest,
    connectors: ConnectorFactory = Depends(get_connector_factory),
):
    """
    Tables (and optionally columns) of the source, read from its catalog.

    Connector failures answer 502 with the localized hint; a malformed table
    name answers 422.
    """
    descriptor = body.connection
    logger.info(f"POST /connections/metadata - {descriptor.dialect}://{descriptor.host or ''}")
    async with connectors.session(descriptor) as connector:
        if body.table:
            columns = await connector.list_columns(body.table)
            tables = [TableInfo(name=body.table, columns=columns)]
        else:
            tables = await connector.list_tables()
            if body.include_columns:
                for table in tables:
                    table.columns = await connector.list_columns(table.name, schema=table.schema_name)

    return MetadataResponse(dialect=descriptor.dialect, tables=tables)


@router.post("/distinct-values", response_model=DistinctValuesResponse)
async def distinct_values(
    body: DistinctValuesRequest,
    connectors: ConnectorFactory = Depends(get_connector_factory),
    config: Settings = Depends(get_settings),
):
    """Distinct non-null values of one column for filter pickers, capped at DISTINCT_VALUES_LIMIT."""
    limit = min(body.limit or config.DISTINCT_VALUES_LIMIT, config.DISTINCT_VALUES_LIMIT)
    async with connectors.session(body.connection) as connector:
        values = await connector.distinct_values(body.table, body.column, limit)
    return DistinctValuesResponse(values=values)

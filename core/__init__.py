"""
Core utilities and configuration for the ETL engine.

This package provides foundational components used throughout the engine:

Modules:
    config: Application configuration and environment variable management
    database: Warehouse engine, session factory and warehouse schemas
    exceptions: Exception hierarchy and error kinds surfaced to callers
    logging: Logging configuration
    messages: Localized connector hints (en, es)
    secrets: Connection password codec

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import CyclicPipeline, AuthFailed
    from core.secrets import SecretCodec

Example:
    setup_logging()

    codec = SecretCodec(settings.ENCRYPTION_KEY)
    blob = codec.encrypt("s3cret")
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    "SecretCodec",
    # Exceptions
    "ETLException",
    "PipelineValidationError",
    "InvalidIdentifier",
    "UnsupportedOperator",
    "CyclicPipeline",
    "UnresolvedReference",
    "InvalidPipeline",
    "RuleTypeError",
    "TransformationError",
    "CastError",
    "ConnectorError",
    "ConnectionTimeout",
    "AuthFailed",
    "HostUnreachable",
    "ConnectionRefused",
    "QueryError",
    "UnsupportedDialect",
    "SecretError",
    "EncryptionKeyMissing",
    "DecryptionError",
    "LoadError",
    "SpreadsheetError",
    "RunStateConflict",
    "StaleTimeout",
]

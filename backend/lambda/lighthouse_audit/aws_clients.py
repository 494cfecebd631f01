"""aws_clients.py — Lazy-singleton AWS service clients (S3, DynamoDB, SNS, SQS, EventBridge).

Clients are created on first use and cached for warm invocations. Every
client carries explicit connect/read timeouts so no AWS call can hang the
invocation past its own budget.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

from config import Settings

__all__ = [
    "_get_ddb",
    "_get_eb",
    "_get_s3",
    "_get_sns",
    "_get_sqs",
    "_reset_clients",
]

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_clients: Dict[str, Any] = {}


def _client_config(settings: Settings, max_attempts: int) -> Config:
    return Config(
        connect_timeout=settings.aws_connect_timeout_seconds,
        read_timeout=settings.aws_read_timeout_seconds,
        retries={"max_attempts": max_attempts, "mode": "standard"},
    )


def _get_client(service: str, settings: Settings, max_attempts: int = 3):
    client = _clients.get(service)
    if client is None:
        client = boto3.client(
            service,
            region_name=settings.region,
            config=_client_config(settings, max_attempts),
        )
        _clients[service] = client
    return client


def _get_s3(settings: Settings):
    """Get (or create) the S3 client singleton."""
    return _get_client("s3", settings)


def _get_ddb(settings: Settings):
    """Get (or create) the DynamoDB client singleton."""
    return _get_client("dynamodb", settings, max_attempts=5)


def _get_sns(settings: Settings):
    """Get (or create) the SNS client singleton."""
    return _get_client("sns", settings)


def _get_sqs(settings: Settings):
    """Get (or create) the SQS client singleton."""
    return _get_client("sqs", settings)


def _get_eb(settings: Settings):
    """Get (or create) the EventBridge client singleton."""
    return _get_client("events", settings)


def _reset_clients(service: Optional[str] = None) -> None:
    if service is None:
        _clients.clear()
    else:
        _clients.pop(service, None)

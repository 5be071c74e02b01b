"""Temporal client factory for the sync worker and CLI.

A local or self-hosted frontend is reached over plain gRPC; setting
``TEMPORAL_API_KEY`` targets Temporal Cloud with TLS (plus an optional client
certificate pair for mTLS namespaces).
"""

from pathlib import Path
from typing import Optional

from temporalio.client import Client
from temporalio.service import TLSConfig

from core.config import TemporalConfig, get_temporal_config


def build_tls_config(config: TemporalConfig) -> Optional[TLSConfig]:
    if not config.uses_cloud:
        return None
    if config.cert_path:
        key_path = config.key_path or config.cert_path
        return TLSConfig(
            client_cert=Path(config.cert_path).read_bytes(),
            client_private_key=Path(key_path).read_bytes(),
        )
    return TLSConfig()


async def get_temporal_client(config: Optional[TemporalConfig] = None) -> Client:
    """Connect using ``TEMPORAL_ENDPOINT`` / ``TEMPORAL_NAMESPACE`` / ``TEMPORAL_API_KEY``.

    Raises:
        ConfigError: If an API key is set without an endpoint
    """
    config = config or get_temporal_config()
    tls = build_tls_config(config)
    if tls is None:
        return await Client.connect(config.endpoint, namespace=config.namespace)
    return await Client.connect(
        config.endpoint,
        namespace=config.namespace,
        tls=tls,
        api_key=config.api_key,
    )

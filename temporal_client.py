"""Temporal client factory.

Creates connections to Temporal (Cloud or a local dev server) using the
billing settings.
"""

import os
from pathlib import Path
from typing import Optional, Union

from temporalio.client import Client
from temporalio.service import TLSConfig

from core.config import BillingSettings, get_settings


def _tls_config(api_key: Optional[str]) -> Union[bool, TLSConfig]:
    cert_path = os.getenv("TEMPORAL_CERT_PATH")
    key_path = os.getenv("TEMPORAL_KEY_PATH")
    if cert_path and key_path:
        # mTLS with a client certificate
        return TLSConfig(
            client_cert=Path(cert_path).read_bytes(),
            client_private_key=Path(key_path).read_bytes(),
        )
    # Temporal Cloud API keys require TLS; a local dev server has none
    return bool(api_key)


async def get_temporal_client(settings: Optional[BillingSettings] = None) -> Client:
    """Create and return a connected Temporal client.

    Reads TEMPORAL_ENDPOINT, TEMPORAL_NAMESPACE and TEMPORAL_API_KEY through
    the billing settings; TEMPORAL_CERT_PATH / TEMPORAL_KEY_PATH enable mTLS.

    Raises:
        ValueError: If TEMPORAL_ENDPOINT is not set
    """
    settings = settings or get_settings()

    if not settings.temporal_endpoint:
        raise ValueError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal endpoint (e.g., 'localhost:7233' or 'ns.acct.tmprl.cloud:7233')"
        )

    return await Client.connect(
        target_host=settings.temporal_endpoint,
        namespace=settings.temporal_namespace,
        tls=_tls_config(settings.temporal_api_key),
        api_key=settings.temporal_api_key,
    )

"""
Azure Blob Storage object store.

Partition objects are uploaded as block blobs in a single call, which
Azure commits atomically. Uploads never overwrite: keys are unique per
flush, so an existing blob means something is badly wrong.

Authentication follows the same choices as the rest of our Azure
tooling: DefaultAzureCredential by default, Managed Identity
explicitly, or a connection string for development.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from azure.core.exceptions import (
    AzureError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.storage.blob.aio import BlobServiceClient, ContainerClient

from ..config import AzureAuthMethod, StoreConfig
from ..exceptions import ConfigurationError, ObjectNotFoundError, StoreError
from .base import ObjectStore

logger = logging.getLogger(__name__)

# Status codes worth retrying; anything else (auth, bad request) is permanent
_TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}


def _store_error(operation: str, key: str | None, exc: AzureError) -> StoreError:
    status = getattr(exc, "status_code", None)
    retryable = status is None or status in _TRANSIENT_STATUS
    return StoreError(operation, key, exc, status_code=status, retryable=retryable)


class AzureBlobObjectStore(ObjectStore):
    """Object store backed by one Azure Blob Storage container."""

    def __init__(
        self,
        container: ContainerClient,
        credential: Any = None,
        page_size: int = 1000,
        service: BlobServiceClient | None = None,
    ) -> None:
        """Wrap an existing container client.

        Prefer ``from_config`` unless a client is already at hand.

        Args:
            container: Async container client
            service: Owning service client, closed together with the store
            credential: Credential to close together with the store
            page_size: Blobs per listing page
        """
        self._container = container
        self._credential = credential
        self._service = service
        self.page_size = page_size

    @classmethod
    def from_config(cls, config: StoreConfig) -> AzureBlobObjectStore:
        """Build a store from configuration.

        Raises:
            ConfigurationError: If required connection settings are missing
        """
        method = config.azure_auth_method
        if method == AzureAuthMethod.CONNECTION_STRING:
            if not config.azure_connection_string:
                raise ConfigurationError(
                    "store.azure_connection_string", "required for connection_string auth"
                )
            service = BlobServiceClient.from_connection_string(config.azure_connection_string)
            return cls(
                service.get_container_client(config.azure_container),
                page_size=config.page_size,
                service=service,
            )

        if not config.azure_account_url:
            raise ConfigurationError("store.azure_account_url", f"required for {method.value} auth")

        if method == AzureAuthMethod.MANAGED_IDENTITY:
            from azure.identity.aio import ManagedIdentityCredential

            credential: Any = ManagedIdentityCredential(client_id=config.azure_client_id)
        else:
            from azure.identity.aio import DefaultAzureCredential

            credential = DefaultAzureCredential()

        service = BlobServiceClient(config.azure_account_url, credential=credential)
        logger.info(
            "Azure blob store: %s/%s (auth=%s)",
            config.azure_account_url,
            config.azure_container,
            method.value,
        )
        return cls(
            service.get_container_client(config.azure_container),
            credential=credential,
            page_size=config.page_size,
            service=service,
        )

    async def put_object(self, key: str, data: bytes) -> None:
        try:
            await self._container.upload_blob(name=key, data=data, overwrite=False)
        except ResourceExistsError as e:
            raise StoreError("put_object", key, e, status_code=409, retryable=False) from e
        except AzureError as e:
            raise _store_error("put_object", key, e) from e

    async def list_pages(self, prefix: str) -> AsyncIterator[list[str]]:
        try:
            pages = self._container.list_blobs(
                name_starts_with=prefix, results_per_page=self.page_size
            ).by_page()
            async for page in pages:
                yield [blob.name async for blob in page]
        except AzureError as e:
            raise _store_error("list_objects", prefix, e) from e

    async def get_object(self, key: str) -> bytes:
        try:
            downloader = await self._container.download_blob(key)
            return await downloader.readall()
        except ResourceNotFoundError as e:
            raise ObjectNotFoundError(key, e) from e
        except AzureError as e:
            raise _store_error("get_object", key, e) from e

    async def close(self) -> None:
        await self._container.close()
        if self._service is not None:
            await self._service.close()
        if self._credential is not None:
            await self._credential.close()

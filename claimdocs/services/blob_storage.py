"""
Azure Blob Storage Client
Fetches source images and persists rendered documents, audit reports and the
legacy template workbook.
Supports both connection string and Managed Identity authentication
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobClient, BlobSasPermissions, BlobServiceClient, ContentSettings, generate_blob_sas

from claimdocs.config import settings
from claimdocs.utils.blob_path_helper import log_blob_access, resolve_blob_path

logger = logging.getLogger(__name__)


class BlobStorageError(Exception):
    """Custom exception for blob storage operations"""
    pass


class BlobStorageClient:
    """
    Azure Blob Storage client for reading images and writing rendered documents.

    Supports:
    - Connection string authentication (dev/local)
    - Managed Identity / DefaultAzureCredential (prod on Azure)
    - Both absolute URLs and relative blob paths
    - Retry logic for transient failures
    - Read-only SAS links for preview/download
    """

    def __init__(
        self,
        storage_account_url: Optional[str] = None,
        source_container: Optional[str] = None,
        dest_container: Optional[str] = None,
        connection_string: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
    ):
        """
        Initialize blob storage client.

        Args:
            storage_account_url: Base URL for storage account (e.g., https://claimdocssa.blob.core.windows.net)
            source_container: Read-only container holding uploaded images
            dest_container: Container for rendered documents and working files
            connection_string: Azure storage connection string (optional, uses DefaultAzureCredential if not provided)
            max_retries: Maximum retry attempts for transient failures (default: 5)
            retry_base_seconds: Base delay in seconds for exponential backoff (default: 1.0)
        """
        self.storage_account_url = storage_account_url or settings.storage_account_url
        self.source_container = source_container or settings.azure_storage_source_container
        self.dest_container = dest_container or settings.azure_storage_dest_container
        self.max_retries = max_retries or settings.blob_max_retries
        self.retry_base_seconds = retry_base_seconds or settings.blob_retry_base_seconds

        self._blob_service_client: Optional[BlobServiceClient] = None
        self._connection_string = connection_string or settings.azure_storage_connection_string

        if not self.storage_account_url:
            raise BlobStorageError(
                "storage_account_url is required. Set STORAGE_ACCOUNT_URL environment variable."
            )

        logger.info(
            f"BlobStorageClient initialized: account_url={self.storage_account_url}, "
            f"source_container={self.source_container or '(unset)'}, "
            f"dest_container={self.dest_container or '(unset)'}"
        )

    def _get_blob_service_client(self) -> BlobServiceClient:
        """Get or create blob service client with appropriate authentication."""
        if self._blob_service_client is None:
            try:
                if self._connection_string:
                    logger.debug("Using connection string authentication")
                    self._blob_service_client = BlobServiceClient.from_connection_string(
                        self._connection_string
                    )
                else:
                    logger.debug("Using DefaultAzureCredential (Managed Identity)")
                    self._blob_service_client = BlobServiceClient(
                        account_url=self.storage_account_url,
                        credential=DefaultAzureCredential()
                    )
            except Exception as e:
                logger.error(f"Failed to initialize blob service client: {e}", exc_info=True)
                raise BlobStorageError(f"Failed to initialize blob service client: {e}") from e

        return self._blob_service_client

    def _get_blob_client(self, blob_path_or_url: str, container_name: Optional[str] = None) -> BlobClient:
        """
        Get blob client for a given blob path or URL.

        Absolute URLs carry their own container; relative paths use the given
        container (default: dest container) and the configured prefix.
        """
        if is_absolute_url(blob_path_or_url):
            container_from_url, blob_name = split_blob_url(blob_path_or_url)
            target_container = container_from_url or container_name or self.dest_container
        else:
            target_container = container_name or self.dest_container
            blob_name = resolve_blob_path(blob_path_or_url)

        if not target_container:
            raise BlobStorageError(
                "container_name is required. Provide container_name parameter or set a default container."
            )
        if not blob_name:
            raise BlobStorageError(f"Could not determine blob name from '{blob_path_or_url}'")

        service_client = self._get_blob_service_client()
        return service_client.get_blob_client(container=target_container, blob=blob_name)

    def resolve_blob_url(self, blob_path_or_url: str, container_name: Optional[str] = None) -> str:
        """
        Resolve blob path or URL to absolute URL.

        Args:
            blob_path_or_url: Absolute URL (returned as-is) or relative path
                (combined with base URL + container + prefix if configured)
            container_name: Optional container name override (default: dest container)
        """
        if not blob_path_or_url:
            raise BlobStorageError("blob_path_or_url cannot be empty")

        if is_absolute_url(blob_path_or_url):
            return blob_path_or_url

        resolved_path = resolve_blob_path(blob_path_or_url)
        target_container = container_name or self.dest_container
        if not target_container:
            raise BlobStorageError(
                "container_name is required to resolve relative path. "
                "Provide container_name parameter or set a default container."
            )

        base_url = self.storage_account_url.rstrip('/')
        return f"{base_url}/{target_container.strip('/')}/{resolved_path}"

    def generate_signed_url(
        self,
        blob_path_or_url: str,
        container_name: Optional[str] = None,
        expiry_minutes: Optional[int] = None,
        content_disposition: Optional[str] = None,
    ) -> str:
        """
        Generate a read-only signed URL (SAS token) for a blob.
        Required when the storage account doesn't allow public access.

        Args:
            blob_path_or_url: Absolute URL or relative blob path
            container_name: Optional container name override
            expiry_minutes: Minutes until SAS token expires (default: settings.signed_url_expiry_minutes)
            content_disposition: Optional Content-Disposition override (e.g., force download)

        Returns:
            Signed URL with SAS token, or the plain URL when no account key is available
        """
        expiry_minutes = expiry_minutes or settings.signed_url_expiry_minutes
        try:
            blob_client = self._get_blob_client(blob_path_or_url, container_name=container_name)
            account_name = urlparse(self.storage_account_url).netloc.split('.')[0]

            account_key = None
            if self._connection_string:
                # Connection string: "AccountName=...;AccountKey=...;..."
                for part in self._connection_string.split(';'):
                    if part.startswith('AccountKey='):
                        account_key = part.split('=', 1)[1]
                        break

            if not account_key:
                logger.warning("No account key available for SAS token generation. Using regular URL.")
                return self.resolve_blob_url(blob_path_or_url, container_name=container_name)

            sas_token = generate_blob_sas(
                account_name=account_name,
                container_name=blob_client.container_name,
                blob_name=blob_client.blob_name,
                account_key=account_key,
                permission=BlobSasPermissions(read=True),
                expiry=datetime.utcnow() + timedelta(minutes=expiry_minutes),
                content_disposition=content_disposition,
            )

            base_url = self.resolve_blob_url(blob_path_or_url, container_name=container_name)
            logger.debug(f"Generated signed URL for blob: {blob_client.blob_name} (expires in {expiry_minutes} minutes)")
            return f"{base_url}?{sas_token}"

        except BlobStorageError:
            raise
        except Exception as e:
            logger.error(f"Failed to generate signed URL: {e}", exc_info=True)
            raise BlobStorageError(f"Failed to generate signed URL: {e}") from e

    def _retry_on_transient_failure(self, operation, *args, **kwargs):
        """
        Retry operation on transient failures with exponential backoff.

        404 and other 4xx responses are permanent and raise immediately.
        """
        last_exception = None

        for attempt in range(self.max_retries):
            try:
                return operation(*args, **kwargs)
            except ResourceNotFoundError as e:
                logger.error(f"Blob not found (404): {e}")
                raise BlobStorageError(f"Blob not found: {e}") from e
            except HttpResponseError as e:
                status_code = getattr(e, 'status_code', None)
                if status_code and status_code >= 500:
                    last_exception = e
                    if attempt < self.max_retries - 1:
                        wait_time = self.retry_base_seconds * (2 ** attempt)
                        logger.warning(
                            f"Transient failure (attempt {attempt + 1}/{self.max_retries}): {e}. "
                            f"Retrying in {wait_time}s..."
                        )
                        time.sleep(wait_time)
                    else:
                        logger.error(f"Operation failed after {self.max_retries} attempts: {e}")
                else:
                    logger.error(f"Client error (4xx): {e}")
                    raise BlobStorageError(f"Client error: {e}") from e
            except ServiceRequestError as e:
                last_exception = e
                if attempt < self.max_retries - 1:
                    wait_time = self.retry_base_seconds * (2 ** attempt)
                    logger.warning(
                        f"Transient failure (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {wait_time}s..."
                    )
                    time.sleep(wait_time)
                else:
                    logger.error(f"Operation failed after {self.max_retries} attempts: {e}")
            except AzureError as e:
                logger.error(f"Azure error: {e}")
                raise BlobStorageError(f"Azure error: {e}") from e

        raise BlobStorageError(
            f"Operation failed after {self.max_retries} retries: {last_exception}"
        ) from last_exception

    def download_bytes(
        self,
        blob_path_or_url: str,
        container_name: Optional[str] = None,
        timeout: int = 300
    ) -> Dict[str, Any]:
        """
        Download a blob into memory.

        Returns:
            Dict with:
                - data: Blob content
                - content_type: Content type (may be None)
                - size_bytes: Size in bytes
                - blob_url: Resolved blob URL
        """
        target_container = container_name or self.dest_container
        if not is_absolute_url(blob_path_or_url):
            log_blob_access(target_container, resolve_blob_path(blob_path_or_url))

        def _download():
            blob_client = self._get_blob_client(blob_path_or_url, container_name=container_name)
            downloader = blob_client.download_blob(timeout=timeout)
            data = downloader.readall()
            content_settings = getattr(downloader.properties, 'content_settings', None)
            return {
                'data': data,
                'content_type': content_settings.content_type if content_settings else None,
                'size_bytes': len(data),
                'blob_url': self.resolve_blob_url(blob_path_or_url, container_name=container_name),
            }

        try:
            result = self._retry_on_transient_failure(_download)
            logger.info(f"Downloaded blob '{blob_path_or_url}' ({result['size_bytes']} bytes)")
            return result
        except BlobStorageError:
            raise
        except Exception as e:
            logger.error(f"Failed to download blob '{blob_path_or_url}': {e}", exc_info=True)
            raise BlobStorageError(f"Failed to download blob: {e}") from e

    def fetch_object(self, object_id: str, timeout: int = 300) -> Dict[str, Any]:
        """
        Fetch an uploaded object by its opaque storage id.

        Objects live at {upload_blob_prefix}/{object_id} in the SOURCE container.
        """
        if not object_id:
            raise BlobStorageError("object_id cannot be empty")
        if not self.source_container:
            raise BlobStorageError("AZURE_STORAGE_SOURCE_CONTAINER must be set to fetch uploaded objects")

        upload_prefix = settings.upload_blob_prefix.strip('/')
        blob_path = f"{upload_prefix}/{object_id}" if upload_prefix else object_id
        return self.download_bytes(blob_path, container_name=self.source_container, timeout=timeout)

    def upload_bytes(
        self,
        data: bytes,
        dest_blob_path: str,
        container_name: Optional[str] = None,
        overwrite: bool = True,
        content_type: str = 'application/octet-stream',
        timeout: int = 300
    ) -> Dict[str, Any]:
        """
        Upload in-memory content to blob storage.

        Returns:
            Dict with:
                - blob_url: Absolute URL of uploaded blob
                - blob_path: Relative blob path
                - etag: Blob ETag
                - size_bytes: Size in bytes
                - content_type: Content type

        Raises:
            RuntimeError: If attempting to upload to the SOURCE container
        """
        dest_blob_path = dest_blob_path.lstrip('/')
        target_container = container_name or self.dest_container
        if not target_container:
            raise BlobStorageError(
                "container_name must be provided for upload_bytes() or set as default container"
            )

        # CRITICAL SAFETY CHECK: Prevent uploading into the upload (SOURCE) container
        if self.source_container and target_container.strip() == self.source_container.strip():
            raise RuntimeError(
                f"SECURITY VIOLATION: Attempted to upload to SOURCE container '{target_container}'. "
                f"Rendered artifacts must NEVER be written into the upload container."
            )

        logger.info(
            f"Uploading {len(data)} bytes to container '{target_container}': blob '{dest_blob_path}'"
        )

        def _upload():
            blob_client = self._get_blob_client(dest_blob_path, container_name=target_container)
            response = blob_client.upload_blob(
                data=data,
                overwrite=overwrite,
                content_settings=ContentSettings(content_type=content_type),
                timeout=timeout
            )
            return {
                'blob_url': self.resolve_blob_url(dest_blob_path, container_name=target_container),
                'blob_path': dest_blob_path,
                'etag': response.get('etag') if isinstance(response, dict) else None,
                'size_bytes': len(data),
                'content_type': content_type,
            }

        try:
            result = self._retry_on_transient_failure(_upload)
            logger.info(f"Successfully uploaded blob '{dest_blob_path}' ({result['size_bytes']} bytes)")
            return result
        except BlobStorageError:
            raise
        except Exception as e:
            logger.error(f"Failed to upload blob '{dest_blob_path}': {e}", exc_info=True)
            raise BlobStorageError(f"Failed to upload blob: {e}") from e

    def exists(self, blob_path_or_url: str, container_name: Optional[str] = None) -> bool:
        """True if blob exists, False if not found (404)"""
        def _check_exists():
            blob_client = self._get_blob_client(blob_path_or_url, container_name=container_name)
            try:
                blob_client.get_blob_properties()
                return True
            except ResourceNotFoundError:
                return False

        try:
            return self._retry_on_transient_failure(_check_exists)
        except BlobStorageError:
            raise
        except Exception as e:
            logger.error(f"Error checking blob existence '{blob_path_or_url}': {e}", exc_info=True)
            raise BlobStorageError(f"Error checking blob existence: {e}") from e

    def delete_blob(self, blob_path_or_url: str, container_name: Optional[str] = None) -> None:
        """
        Delete a blob from storage.

        Raises:
            BlobStorageError: If deletion fails or the blob does not exist
        """
        logger.info(f"Deleting blob: '{blob_path_or_url}'")

        def _delete():
            blob_client = self._get_blob_client(blob_path_or_url, container_name=container_name)
            blob_client.delete_blob()

        try:
            self._retry_on_transient_failure(_delete)
            logger.info(f"Successfully deleted blob: '{blob_path_or_url}'")
        except BlobStorageError:
            raise
        except Exception as e:
            logger.error(f"Failed to delete blob '{blob_path_or_url}': {e}", exc_info=True)
            raise BlobStorageError(f"Failed to delete blob: {e}") from e


def is_absolute_url(value: str) -> bool:
    return value.startswith('http://') or value.startswith('https://')


def split_blob_url(blob_url: str):
    """Split an absolute blob URL into (container, blob_name)"""
    parsed = urlparse(blob_url)
    path_parts = parsed.path.lstrip('/').split('/', 1)
    if len(path_parts) > 1:
        return path_parts[0], path_parts[1]
    return None, path_parts[0] if path_parts else ''


_default_client: Optional[BlobStorageClient] = None


def get_blob_storage_client() -> BlobStorageClient:
    """Process-wide BlobStorageClient built from settings"""
    global _default_client
    if _default_client is None:
        settings.validate_storage_containers()
        _default_client = BlobStorageClient()
    return _default_client

"""
Object storage access for produced disk archives.
"""

from abc import ABC, abstractmethod
import logging
import os
from typing import Any

from boto3.exceptions import S3TransferFailedError
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import TransferError

logger = logging.getLogger(__name__)

# Archives are fetched in fixed 10 MiB parts
CHUNK_SIZE = 10 * 1024 * 1024


class ObjectStore(ABC):
    """Transfers archives out of bulk storage."""

    @abstractmethod
    def download(self, bucket: str, key: str, local_path: str) -> None:
        """
        Download an object to a local file, replacing the file if it exists.

        Raises:
            TransferError: On any transfer or filesystem fault
        """
        ...

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        """Delete an object. A missing object is not an error."""
        ...


class S3ObjectStore(ObjectStore):
    """
    ObjectStore backed by S3.

    Args:
        client: Boto3 S3 client
        chunk_size: Size of each ranged GET in bytes
    """

    def __init__(self, client: Any, chunk_size: int = CHUNK_SIZE):
        self.client = client
        self.transfer_config = TransferConfig(
            multipart_threshold=chunk_size,
            multipart_chunksize=chunk_size,
            io_chunksize=min(chunk_size, 256 * 1024),
        )

    def download(self, bucket: str, key: str, local_path: str) -> None:
        logger.info(f"Starting download of {key} from S3 bucket {bucket}")

        try:
            parent = os.path.dirname(local_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            self.client.download_file(bucket, key, local_path, Config=self.transfer_config)
        except (ClientError, BotoCoreError, S3TransferFailedError, OSError) as e:
            raise TransferError(f"Error downloading s3://{bucket}/{key} to {local_path}: {e}") from e

        logger.info(f"✓ Completed the download of {key} to {local_path}")

    def delete(self, bucket: str, key: str) -> None:
        logger.info(f"Deleting s3://{bucket}/{key}")

        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('NoSuchKey', '404'):
                logger.warning(f"Object s3://{bucket}/{key} not found - may already be deleted")
                return
            raise TransferError(f"Error deleting s3://{bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise TransferError(f"Error deleting s3://{bucket}/{key}: {e}") from e

        logger.info(f"✓ Deleted s3://{bucket}/{key}")

"""Tests for the S3 object store."""

from unittest.mock import MagicMock

from boto3.exceptions import S3TransferFailedError
from botocore.exceptions import ClientError
import pytest

from hashr_aws.errors import TransferError
from hashr_aws.storage import CHUNK_SIZE, S3ObjectStore


def client_error(code, operation='GetObject'):
    return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


@pytest.fixture
def s3_client():
    return MagicMock()


class TestDownload:
    def test_uses_fixed_chunk_size(self, s3_client, tmp_path):
        store = S3ObjectStore(s3_client)
        local_path = str(tmp_path / 'archives' / 'img.archive')

        store.download('bucket-x', 'img.archive', local_path)

        s3_client.download_file.assert_called_once()
        args, kwargs = s3_client.download_file.call_args
        assert args == ('bucket-x', 'img.archive', local_path)
        assert kwargs['Config'].multipart_chunksize == CHUNK_SIZE
        assert CHUNK_SIZE == 10 * 1024 * 1024

    def test_creates_parent_directory(self, s3_client, tmp_path):
        local_path = tmp_path / 'nested' / 'dir' / 'img.archive'

        S3ObjectStore(s3_client).download('bucket-x', 'img.archive', str(local_path))

        assert local_path.parent.is_dir()

    def test_client_error_is_transfer_error(self, s3_client, tmp_path):
        s3_client.download_file.side_effect = client_error('404', 'HeadObject')

        with pytest.raises(TransferError) as exc_info:
            S3ObjectStore(s3_client).download('bucket-x', 'img.archive', str(tmp_path / 'img.archive'))

        assert isinstance(exc_info.value.__cause__, ClientError)

    def test_transfer_failure_is_transfer_error(self, s3_client, tmp_path):
        s3_client.download_file.side_effect = S3TransferFailedError('connection reset')

        with pytest.raises(TransferError):
            S3ObjectStore(s3_client).download('bucket-x', 'img.archive', str(tmp_path / 'img.archive'))


class TestDelete:
    def test_delete(self, s3_client):
        S3ObjectStore(s3_client).delete('bucket-x', 'img.archive')

        s3_client.delete_object.assert_called_once_with(Bucket='bucket-x', Key='img.archive')

    def test_missing_object_is_ignored(self, s3_client):
        s3_client.delete_object.side_effect = client_error('NoSuchKey', 'DeleteObject')

        S3ObjectStore(s3_client).delete('bucket-x', 'img.archive')

    def test_other_errors_raise(self, s3_client):
        s3_client.delete_object.side_effect = client_error('AccessDenied', 'DeleteObject')

        with pytest.raises(TransferError):
            S3ObjectStore(s3_client).delete('bucket-x', 'img.archive')

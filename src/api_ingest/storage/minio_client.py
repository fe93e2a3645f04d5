import io
from minio import Minio
from minio.error import S3Error
from datetime import timedelta
from logging import getLogger
from urllib.parse import urlparse

from api_ingest.exceptions.exceptions import StorageError
from api_ingest.storage.object_storage import ObjectStorage

logger = getLogger(__name__)

MISSING_OBJECT_CODES = ("NoSuchKey", "NoSuchObject", "NotFound")


class MinioStorage(ObjectStorage):
    def __init__(
        self,
        endpoint: str,
        external_endpoint: str,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        public_base_url: str = "",
    ):
        # 1. Internal Client
        internal_host = endpoint.replace("http://", "").replace("https://", "")
        self.internal_client = Minio(
            internal_host,
            access_key=access_key,
            secret_key=secret_key,
            secure=endpoint.startswith("https")
        )

        # 2. Signer Client
        if not external_endpoint.startswith(('http://', 'https://')):
            external_endpoint = f"http://{external_endpoint}"

        parsed_external = urlparse(external_endpoint)

        self.signer_client = Minio(
            parsed_external.netloc,
            access_key=access_key,
            secret_key=secret_key,
            secure=parsed_external.scheme == "https",
            region="us-east-1"
        )

        self.bucket_name = bucket_name
        self.public_base_url = public_base_url.rstrip("/")
        self._bucket_checked = False

    # --- Internal Operations (Use internal_client) ---

    def ensure_bucket(self):
        if self._bucket_checked:
            return
        try:
            if not self.internal_client.bucket_exists(self.bucket_name):
                self.internal_client.make_bucket(self.bucket_name)
        except S3Error as e:
            raise StorageError(f"Cannot prepare bucket {self.bucket_name}: {e}") from e
        self._bucket_checked = True

    def put_bytes(self, key, data, content_type="application/octet-stream"):
        self.ensure_bucket()
        try:
            self.internal_client.put_object(
                self.bucket_name, key, io.BytesIO(data), length=len(data), content_type=content_type
            )
        except S3Error as e:
            logger.error(f"Upload of {key} failed: {e}")
            raise StorageError(f"Upload of {key} failed") from e

    def put_file(self, key, file_path, content_type="application/octet-stream"):
        self.ensure_bucket()
        try:
            self.internal_client.fput_object(self.bucket_name, key, file_path, content_type=content_type)
        except S3Error as e:
            logger.error(f"Upload of {file_path} to {key} failed: {e}")
            raise StorageError(f"Upload of {key} failed") from e

    def get_bytes(self, key):
        response = None
        try:
            response = self.internal_client.get_object(self.bucket_name, key)
            return response.read()
        except S3Error as e:
            raise StorageError(f"Download of {key} failed: {e.code}") from e
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def download_file(self, key, file_path):
        try:
            self.internal_client.fget_object(self.bucket_name, key, file_path)
        except S3Error as e:
            raise StorageError(f"Download of {key} failed: {e.code}") from e

    def delete(self, key):
        try:
            self.internal_client.remove_object(self.bucket_name, key)
        except S3Error as e:
            if e.code not in MISSING_OBJECT_CODES:
                raise StorageError(f"Delete of {key} failed: {e.code}") from e

    def list(self, prefix):
        try:
            objects = self.internal_client.list_objects(self.bucket_name, prefix=prefix, recursive=True)
            return sorted(obj.object_name for obj in objects)
        except S3Error as e:
            raise StorageError(f"Listing {prefix} failed: {e.code}") from e

    def exists(self, key):
        try:
            self.internal_client.stat_object(self.bucket_name, key)
            return True
        except S3Error as e:
            if e.code in MISSING_OBJECT_CODES:
                return False
            raise StorageError(f"Stat of {key} failed: {e.code}") from e

    # --- External URL Generation (Use signer_client) ---

    def url_for(self, key):
        if self.public_base_url:
            return f"{self.public_base_url}/{self.bucket_name}/{key}"
        return self.generate_presigned_get_url(key)

    def generate_presigned_get_url(self, object_name: str, expires: int = 7 * 24 * 3600) -> str:
        """
        Generates a GET URL signed with the external hostname so the hash matches.
        """
        url = self.signer_client.get_presigned_url(
            "GET",
            self.bucket_name,
            object_name,
            expires=timedelta(seconds=expires),
        )
        logger.info(f"Generated External GET URL for {object_name}")
        return url

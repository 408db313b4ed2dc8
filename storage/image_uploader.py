"""Image upload to S3."""
import logging
import time
import uuid
from typing import Optional

import boto3

from scraper.remote_image import RemoteImageFetcher

logger = logging.getLogger(__name__)


class S3ImageUploader:
    """Stores image bytes under events/ and returns a public URL for them."""

    PREFIX = 'events'

    def __init__(
        self,
        bucket: str,
        base_url: Optional[str] = None,
        client=None,
        region_name: str = None,
        fetcher: Optional[RemoteImageFetcher] = None
    ):
        """
        Args:
            bucket: Destination S3 bucket
            base_url: Public URL prefix for stored keys (CDN or website
                endpoint); defaults to the bucket's virtual-hosted URL
            client: Optional preconfigured boto3 S3 client
            region_name: Region for the client created when none is given
            fetcher: Remote image fetcher used by copy_from_url
        """
        self.bucket = bucket
        self.base_url = (base_url or f"https://{bucket}.s3.amazonaws.com").rstrip('/')
        self.s3 = client or boto3.client('s3', region_name=region_name)
        self.fetcher = fetcher or RemoteImageFetcher()

    def upload(self, content: bytes, filename: str, content_type: str = 'image/jpeg') -> str:
        """
        Store an image.

        Returns:
            Public URL of the stored object

        Raises:
            ClientError: If the upload fails
        """
        key = f"{self.PREFIX}/{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{filename}"
        self.s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=content,
            ContentType=content_type
        )
        logger.info(f"Uploaded {len(content)} bytes to s3://{self.bucket}/{key}")
        return f"{self.base_url}/{key}"

    def copy_from_url(self, url: str) -> str:
        """
        Fetch a remote image and store a copy.

        Raises:
            ImageFetchError: If the remote image is rejected
            ClientError: If the upload fails
        """
        image = self.fetcher.fetch(url)
        return self.upload(image.content, image.filename, image.content_type)

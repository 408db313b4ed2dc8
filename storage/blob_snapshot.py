"""S3 snapshot of the event list."""
import json
import logging
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError

from processor.models import EventRecord

logger = logging.getLogger(__name__)


class BlobSnapshot:
    """Latest full JSON snapshot of the events, stored as one S3 object."""

    def __init__(self, bucket: str, key: str = 'events.json', client=None, region_name: str = None):
        """
        Args:
            bucket: S3 bucket holding the snapshot
            key: Object key (a leading slash is dropped)
            client: Optional preconfigured boto3 S3 client
            region_name: Region for the client created when none is given
        """
        self.bucket = bucket
        self.key = key.lstrip('/')
        self.s3 = client or boto3.client('s3', region_name=region_name)
        logger.info(f"Initialized BlobSnapshot for s3://{bucket}/{self.key}")

    def write(self, records: List[EventRecord]) -> None:
        """
        Overwrite the snapshot with the given ordered list.

        Raises:
            ClientError: If the upload fails
        """
        body = json.dumps([record.to_dict() for record in records], indent=2)
        self.s3.put_object(
            Bucket=self.bucket,
            Key=self.key,
            Body=body.encode('utf-8'),
            ContentType='application/json'
        )
        logger.info(f"Wrote snapshot of {len(records)} events to s3://{self.bucket}/{self.key}")

    def read(self) -> Optional[List[EventRecord]]:
        """
        Read the snapshot back.

        Returns:
            Records in snapshot order, or None if no snapshot exists

        Raises:
            ClientError: For S3 errors other than a missing object
            ValueError: If the snapshot is not a JSON list
        """
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('NoSuchKey', '404', 'NoSuchBucket'):
                logger.info(f"No snapshot at s3://{self.bucket}/{self.key}")
                return None
            raise

        data = json.loads(response['Body'].read())
        if not isinstance(data, list):
            raise ValueError('Snapshot is not a list of events')

        records = []
        for item in data:
            try:
                records.append(EventRecord.from_dict(item))
            except (KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed snapshot entry: {e}")
                continue
        return records

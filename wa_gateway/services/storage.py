import asyncio

import boto3

from wa_gateway.core.config import settings


class R2Storage:
    """Durable media storage on Cloudflare R2 through the S3 API.

    boto3 is blocking, so every call is pushed onto a worker thread.
    """

    def __init__(self, client, bucket: str, public_url: str):
        self.client = client
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")

    @classmethod
    def from_settings(cls) -> "R2Storage":
        client = boto3.client(
            "s3",
            region_name="auto",
            endpoint_url=f"https://{settings.R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
        )
        return cls(client, settings.R2_BUCKET_NAME, settings.R2_PUBLIC_URL)

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}"

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        await asyncio.to_thread(
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return self.url_for(key)

    async def get(self, key: str) -> bytes:
        obj = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key)
        return await asyncio.to_thread(obj["Body"].read)

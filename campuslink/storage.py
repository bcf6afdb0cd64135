"""
Object storage for message attachments and profile pictures.
S3 through aioboto3 in production, local disk through aiofiles otherwise.
"""
import io
import logging
import os
import uuid
from typing import Optional

import aioboto3
import aiofiles
from botocore.config import Config
from PIL import Image, UnidentifiedImageError

from . import config
from .core import retry_transient
from .exceptions import AttachmentTooLarge, InvalidImage

logger = logging.getLogger(__name__)

MAX_AVATAR_SIZE = 5 * 1024 * 1024  # 5MB
ALLOWED_AVATAR_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.webp'}
MAX_IMAGE_SIZE = (1024, 1024)  # Max dimensions


def attachment_key(user_id: int, filename: str) -> str:
    """Storage key for a message attachment, scoped to the sender"""
    ext = os.path.splitext(filename or '')[1].lower()
    return f"messages/{user_id}/{uuid.uuid4().hex}{ext}"


def avatar_key(user_id: int) -> str:
    return f"avatars/user_{user_id}/{uuid.uuid4().hex[:12]}.jpg"


def check_attachment_size(data: bytes):
    if len(data) > config.MAX_ATTACHMENT_SIZE:
        raise AttachmentTooLarge(f"Attachment too large. Max size is {config.MAX_ATTACHMENT_SIZE // (1024 * 1024)}MB")


def prepare_avatar(filename: Optional[str], content: bytes) -> bytes:
    """Validate an uploaded image and resize it to a JPEG within MAX_IMAGE_SIZE"""
    if len(content) > MAX_AVATAR_SIZE:
        raise AttachmentTooLarge("File too large. Max size is 5MB")

    file_ext = os.path.splitext(filename or '')[1].lower()
    if file_ext not in ALLOWED_AVATAR_EXTENSIONS:
        raise InvalidImage(f"Invalid file type. Allowed: {', '.join(sorted(ALLOWED_AVATAR_EXTENSIONS))}")

    try:
        with Image.open(io.BytesIO(content)) as img:
            img.verify()
        with Image.open(io.BytesIO(content)) as img:
            if img.mode != 'RGB':
                img = img.convert('RGB')
            img.thumbnail(MAX_IMAGE_SIZE, Image.Resampling.LANCZOS)
            output = io.BytesIO()
            img.save(output, format='JPEG', quality=85, optimize=True)
            return output.getvalue()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidImage() from e


class ObjectStorage:
    async def upload_object(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key and return a public URL"""
        raise NotImplementedError


class S3ObjectStorage(ObjectStorage):
    def __init__(self, bucket: Optional[str] = None, region: Optional[str] = None):
        self.bucket = bucket or config.S3_BUCKET
        self.region = region or config.S3_REGION
        if not self.bucket:
            raise ValueError("AWS_S3_BUCKET is not set")
        self.session = aioboto3.Session()

    def _client(self):
        return self.session.client(
            's3',
            region_name=self.region,
            aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY,
            aws_access_key_id=config.AWS_ACCESS_KEY_ID,
            config=Config(signature_version='s3v4'),
        )

    def get_public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    @retry_transient
    async def upload_object(self, key: str, data: bytes, content_type: str) -> str:
        async with self._client() as client:
            await client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        logger.info(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
        return self.get_public_url(key)


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: Optional[str] = None, url_prefix: str = "/media"):
        self.root = root or config.MEDIA_DIR
        self.url_prefix = url_prefix

    def get_file_path(self, key: str) -> str:
        path = os.path.normpath(os.path.join(self.root, key))
        if not path.startswith(os.path.normpath(self.root) + os.sep):
            raise ValueError(f"Invalid storage key: {key}")
        return path

    async def upload_object(self, key: str, data: bytes, content_type: str) -> str:
        file_path = self.get_file_path(key)
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        async with aiofiles.open(file_path, 'wb') as f:
            await f.write(data)
        return f"{self.url_prefix}/{key}"


_storage: Optional[ObjectStorage] = None


def get_storage() -> ObjectStorage:
    global _storage
    if _storage is None:
        if config.STORAGE_BACKEND == 's3':
            _storage = S3ObjectStorage()
        else:
            _storage = LocalObjectStorage()
    return _storage

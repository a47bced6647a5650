from __future__ import annotations

import logging
import mimetypes
import os
import time
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from supabase import Client as SupabaseClient
from werkzeug.security import safe_join

logger = logging.getLogger(__name__)

AVATAR_BUCKET = 'avatars'
POST_IMAGE_BUCKET = 'post-images'
BUCKETS = frozenset({AVATAR_BUCKET, POST_IMAGE_BUCKET})
ALLOWED_IMAGE_EXTENSIONS = frozenset({'jpg', 'jpeg', 'png', 'gif', 'webp'})
CACHE_SECONDS = 3600


class MediaService:
    """Image uploads for avatars and post attachments.

    Files go to Supabase Storage when configured; otherwise they are written
    under ``STORAGE_DATA_DIR`` and served by the ``main.media`` view.
    """

    def __init__(self, supabase: Optional[SupabaseClient] = None, data_dir: Optional[str] = None) -> None:
        self._supabase = supabase
        root = Path(data_dir or os.getenv('STORAGE_DATA_DIR', '/tmp/hyumane-data')).expanduser()
        root.mkdir(parents=True, exist_ok=True)
        self._data_dir = root.resolve()

    def upload_avatar(self, file: Any, verified_user_id: str) -> str:
        """Store an avatar at ``<user>.<ext>``, replacing any previous one."""

        ext = image_extension(getattr(file, 'filename', None))
        path = f'{_safe_segment(verified_user_id)}.{ext}'
        return self._upload(AVATAR_BUCKET, path, _read(file), ext, upsert=True)

    def upload_post_image(self, file: Any, user_id: str) -> str:
        ext = image_extension(getattr(file, 'filename', None))
        path = f'{_safe_segment(user_id)}/{int(time.time() * 1000)}.{ext}'
        return self._upload(POST_IMAGE_BUCKET, path, _read(file), ext, upsert=False)

    def bucket_dir(self, bucket: str) -> Path:
        if bucket not in BUCKETS:
            raise ValueError(f'Unknown storage bucket: {bucket}')
        path = self._data_dir / bucket
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _upload(self, bucket: str, path: str, data: bytes, ext: str, upsert: bool) -> str:
        content_type = mimetypes.types_map.get(f'.{ext}', 'application/octet-stream')

        if self._supabase:
            storage = self._supabase.storage.from_(bucket)
            try:
                storage.upload(
                    path,
                    data,
                    file_options={
                        'cache-control': str(CACHE_SECONDS),
                        'content-type': content_type,
                        'upsert': 'true' if upsert else 'false',
                    },
                )
            except Exception:
                logger.error('media.upload.failed', exc_info=True, extra={'bucket': bucket, 'path': path})
                raise
            return str(storage.get_public_url(path)).rstrip('?')

        joined = safe_join(str(self.bucket_dir(bucket)), path)
        if joined is None:
            raise ValueError('A user id is required to upload images.')
        target = Path(joined)
        if target.exists() and not upsert:
            raise ValueError('An image with that name already exists. Please try again.')
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info('media.upload.local', extra={'bucket': bucket, 'path': path})
        return f'/media/{bucket}/{quote(path)}'


def image_extension(filename: Optional[str]) -> str:
    """Return the lower-cased extension of an accepted image filename."""

    name = (filename or '').strip()
    ext = name.rsplit('.', 1)[-1].lower() if '.' in name else ''
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise ValueError('Please upload a JPG, PNG, GIF or WebP image.')
    return ext


def _read(file: Any) -> bytes:
    data = file.read() if file is not None else b''
    if not data:
        raise ValueError('We could not read that image. Please try another file.')
    return data


def _safe_segment(value: str) -> str:
    """Return the user id verbatim as a storage path segment.

    Only ids that could leave the bucket folder are rejected.
    """

    segment = value or ''
    if not segment.strip() or segment in {'.', '..'} or any(char in segment for char in '/\\\x00'):
        raise ValueError('A user id is required to upload images.')
    return segment

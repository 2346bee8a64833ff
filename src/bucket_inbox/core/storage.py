"""
Object Storage Interface for Bucket Inbox

The protocol core talks to storage only through the ``ObjectStore``
interface: containers (buckets) holding objects with user metadata and a
last-modified timestamp. Two backends are provided:

- ``LocalObjectStore``: a directory tree on the local filesystem, useful for
  development and tests. It emulates the backend append semantics the log
  store signals through object metadata.
- ``S3ObjectStore``: any S3-compatible endpoint through boto3.

Storage URIs select the backend: ``s3://<endpoint-host>`` selects the
S3 backend, ``file://`` or a plain path selects the local one.
"""

from typing import List, Optional, Dict, Callable, Awaitable, TypeVar, Protocol, Any
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
import asyncio
import json
import logging
import os

import aiofiles
import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .models import utc_now, to_millis

logger = logging.getLogger(__name__)

T = TypeVar('T')

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[Any]]


class StorageError(Exception):
    """Base exception for storage operations"""
    pass


class ObjectNotFoundError(StorageError):
    """Object or container not found in storage"""
    pass


class AccessDeniedError(StorageError):
    """Access denied to storage resource"""
    pass


class TransientStorageError(StorageError):
    """Server-side or connectivity failure that may succeed on retry"""
    pass


@dataclass
class ObjectInfo:
    """Listing / HEAD view of an object"""
    key: str
    last_modified_ms: int
    size: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class StoredObject:
    """Object body with its listing attributes"""
    key: str
    body: bytes
    last_modified_ms: int
    metadata: Dict[str, str] = field(default_factory=dict)

    def text(self) -> str:
        """Body as text; undecodable bytes become U+FFFD"""
        return self.body.decode('utf-8', errors='replace')


class ObjectStore(Protocol):
    """Operations the protocol core requires from an object store"""

    async def head_container(self, bucket: str) -> None: ...

    async def create_container(self, bucket: str) -> None: ...

    async def put_object(self, bucket: str, key: str, body: bytes,
                         content_type: str = "application/octet-stream",
                         metadata: Optional[Dict[str, str]] = None) -> None: ...

    async def get_object(self, bucket: str, key: str) -> StoredObject: ...

    async def list_objects(self, bucket: str, prefix: str = "") -> List[ObjectInfo]: ...

    async def head_object(self, bucket: str, key: str) -> ObjectInfo: ...


async def with_retries(operation: Callable[[], Awaitable[T]], label: str,
                       attempts: int = 3, base_delay: float = 0.3,
                       sleep: Sleep = asyncio.sleep) -> T:
    """
    Await ``operation``, retrying transient failures with exponential backoff.

    Delays are ``base_delay * 2**attempt`` (0.3s, 0.6s, 1.2s with the
    defaults). Non-transient errors propagate on the first failure.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except TransientStorageError as e:
            if attempt >= attempts - 1:
                logger.error("[storage-retry] fail %s attempt %d/%d: %s", label, attempt + 1, attempts, e)
                raise
            backoff = base_delay * (2 ** attempt)
            logger.warning("[storage-retry] transient %s attempt %d/%d, backing off %.0fms",
                           label, attempt + 1, attempts, backoff * 1000)
            await sleep(backoff)
            attempt += 1


async def ensure_container(store: ObjectStore, bucket: str) -> bool:
    """Create ``bucket`` unless it already exists; returns True when created"""
    try:
        await store.head_container(bucket)
        logger.debug("Container already exists: %s", bucket)
        return False
    except ObjectNotFoundError:
        pass

    await store.create_container(bucket)
    logger.info("Container created: %s", bucket)
    return True


class LocalObjectStore:
    """
    Object store on the local filesystem.

    Each container is a directory under ``base_path``; each object is a file
    with a sidecar ``.meta`` JSON document holding its user metadata and
    last-modified time. A put carrying ``append: true`` metadata is
    concatenated onto the existing object, the ``append-version`` counter is
    bumped and a repeated ``append-id`` is ignored.
    """

    META_SUFFIX = ".meta"

    def __init__(self, base_path: str, clock: Clock = utc_now):
        self.base_path = Path(base_path)
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _container_path(self, bucket: str) -> Path:
        return self.base_path / bucket

    def _object_path(self, bucket: str, key: str) -> Path:
        if not key or '/' in key or key.startswith('.'):
            raise StorageError(f"Unsupported object key: {key!r}")
        return self._container_path(bucket) / key

    def _meta_path(self, bucket: str, key: str) -> Path:
        return self._container_path(bucket) / f".{key}{self.META_SUFFIX}"

    def _lock_for(self, bucket: str, key: str) -> asyncio.Lock:
        return self._locks.setdefault(f"{bucket}/{key}", asyncio.Lock())

    async def _read_meta(self, bucket: str, key: str) -> Dict[str, Any]:
        meta_path = self._meta_path(bucket, key)
        if not meta_path.exists():
            return {}
        async with aiofiles.open(meta_path, 'r', encoding='utf-8') as f:
            return json.loads(await f.read())

    async def _write_meta(self, bucket: str, key: str, meta: Dict[str, Any]) -> None:
        async with aiofiles.open(self._meta_path(bucket, key), 'w', encoding='utf-8') as f:
            await f.write(json.dumps(meta, indent=2))

    def _require_container(self, bucket: str) -> Path:
        path = self._container_path(bucket)
        if not path.is_dir():
            raise ObjectNotFoundError(f"No such container: {bucket}")
        return path

    async def head_container(self, bucket: str) -> None:
        self._require_container(bucket)

    async def create_container(self, bucket: str) -> None:
        self._container_path(bucket).mkdir(parents=True, exist_ok=True)

    async def put_object(self, bucket: str, key: str, body: bytes,
                         content_type: str = "application/octet-stream",
                         metadata: Optional[Dict[str, str]] = None) -> None:
        self._require_container(bucket)
        path = self._object_path(bucket, key)
        metadata = dict(metadata or {})

        async with self._lock_for(bucket, key):
            meta = await self._read_meta(bucket, key)
            user_meta: Dict[str, str] = meta.get('metadata', {})
            append_ids: List[str] = meta.get('append_ids', [])

            if metadata.get('append') == 'true':
                append_id = metadata.get('append-id')
                if append_id and append_id in append_ids:
                    logger.debug("Ignoring repeated append %s on %s/%s", append_id, bucket, key)
                    return
                expected = metadata.get('append-if-version')
                current = user_meta.get('append-version', '0')
                if expected is not None and expected != current:
                    logger.debug("Append on %s/%s expected version %s, found %s",
                                 bucket, key, expected, current)
                async with aiofiles.open(path, 'ab') as f:
                    await f.write(body)
                user_meta['append-version'] = str(int(current) + 1)
                if append_id:
                    append_ids.append(append_id)
            else:
                async with aiofiles.open(path, 'wb') as f:
                    await f.write(body)
                user_meta = {k: v for k, v in metadata.items()
                             if k not in ('append', 'append-if-version', 'append-id')}
                append_ids = []

            last_modified = max(to_millis(self.clock()), meta.get('last_modified_ms', 0))
            await self._write_meta(bucket, key, {
                'content_type': content_type,
                'metadata': user_meta,
                'append_ids': append_ids,
                'last_modified_ms': last_modified,
            })

    async def _info(self, bucket: str, key: str) -> ObjectInfo:
        path = self._object_path(bucket, key)
        if not path.is_file():
            raise ObjectNotFoundError(f"No such object: {bucket}/{key}")
        meta = await self._read_meta(bucket, key)
        last_modified = meta.get('last_modified_ms')
        if last_modified is None:
            last_modified = int(os.stat(path).st_mtime * 1000)
        return ObjectInfo(
            key=key,
            last_modified_ms=last_modified,
            size=path.stat().st_size,
            metadata=dict(meta.get('metadata', {})),
        )

    async def get_object(self, bucket: str, key: str) -> StoredObject:
        self._require_container(bucket)
        info = await self._info(bucket, key)
        async with aiofiles.open(self._object_path(bucket, key), 'rb') as f:
            body = await f.read()
        return StoredObject(key=key, body=body, last_modified_ms=info.last_modified_ms,
                            metadata=info.metadata)

    async def list_objects(self, bucket: str, prefix: str = "") -> List[ObjectInfo]:
        container = self._require_container(bucket)
        infos = []
        for path in sorted(container.iterdir()):
            if path.name.startswith('.') or not path.is_file():
                continue
            if path.name.startswith(prefix):
                infos.append(await self._info(bucket, path.name))
        return infos

    async def head_object(self, bucket: str, key: str) -> ObjectInfo:
        self._require_container(bucket)
        return await self._info(bucket, key)


# S3 error classification

NOT_FOUND_CODES = {'404', 'NotFound', 'NoSuchKey', 'NoSuchObject', 'NoSuchBucket'}
ACCESS_DENIED_CODES = {'401', '403', 'AccessDenied', 'InvalidAccessKeyId',
                       'SignatureDoesNotMatch', 'Forbidden'}
ALREADY_EXISTS_CODES = {'BucketAlreadyOwnedByYou', 'BucketAlreadyExists'}
CONNECTIVITY_ERRORS = (EndpointConnectionError, ConnectionClosedError,
                       ConnectTimeoutError, ReadTimeoutError)


def translate_s3_error(error: Exception, target: str) -> StorageError:
    """Map a botocore error onto the storage error taxonomy"""
    if isinstance(error, CONNECTIVITY_ERRORS):
        return TransientStorageError(f"{target}: {error}")
    if isinstance(error, ClientError):
        code = str(error.response.get('Error', {}).get('Code', ''))
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode') or 0
        if code in NOT_FOUND_CODES or status == 404:
            return ObjectNotFoundError(f"{target}: {code or status}")
        if code in ACCESS_DENIED_CODES or status in (401, 403):
            return AccessDeniedError(f"{target}: {code or status}")
        if status >= 500 or code in ('ServiceUnavailable', 'SlowDown', 'InternalError'):
            return TransientStorageError(f"{target}: {code or status}")
        return StorageError(f"{target}: {code or status}")
    if isinstance(error, BotoCoreError):
        return TransientStorageError(f"{target}: {error}")
    return StorageError(f"{target}: {error}")


class S3ObjectStore:
    """Object store backed by an S3-compatible endpoint"""

    def __init__(self, access_key_id: str, secret_access_key: str,
                 endpoint_url: Optional[str] = None, region: str = "us-east-1",
                 client: Any = None):
        if client is None:
            client = boto3.client(
                's3',
                endpoint_url=endpoint_url,
                region_name=region,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=Config(s3={'addressing_style': 'path'}, retries={'max_attempts': 1}),
            )
        self.client = client

    async def _call(self, target: str, method: str, **kwargs) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(getattr(self.client, method), **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise translate_s3_error(e, target) from e

    async def head_container(self, bucket: str) -> None:
        await self._call(bucket, 'head_bucket', Bucket=bucket)

    async def create_container(self, bucket: str) -> None:
        try:
            await asyncio.to_thread(self.client.create_bucket, Bucket=bucket)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ALREADY_EXISTS_CODES:
                logger.debug("Container already exists: %s", bucket)
                return
            raise translate_s3_error(e, bucket) from e
        except BotoCoreError as e:
            raise translate_s3_error(e, bucket) from e

    async def put_object(self, bucket: str, key: str, body: bytes,
                         content_type: str = "application/octet-stream",
                         metadata: Optional[Dict[str, str]] = None) -> None:
        kwargs = dict(Bucket=bucket, Key=key, Body=body, ContentType=content_type)
        if metadata:
            kwargs['Metadata'] = metadata
        await self._call(f"{bucket}/{key}", 'put_object', **kwargs)

    async def get_object(self, bucket: str, key: str) -> StoredObject:
        target = f"{bucket}/{key}"
        response = await self._call(target, 'get_object', Bucket=bucket, Key=key)
        try:
            body = await asyncio.to_thread(response['Body'].read)
        except BotoCoreError as e:
            raise translate_s3_error(e, target) from e
        return StoredObject(
            key=key,
            body=body,
            last_modified_ms=_last_modified_ms(response.get('LastModified')),
            metadata=dict(response.get('Metadata') or {}),
        )

    async def list_objects(self, bucket: str, prefix: str = "") -> List[ObjectInfo]:
        infos = []
        token = None
        while True:
            kwargs = dict(Bucket=bucket, Prefix=prefix)
            if token:
                kwargs['ContinuationToken'] = token
            response = await self._call(bucket, 'list_objects_v2', **kwargs)
            for item in response.get('Contents') or []:
                if not item.get('Key'):
                    continue
                infos.append(ObjectInfo(
                    key=item['Key'],
                    last_modified_ms=_last_modified_ms(item.get('LastModified')),
                    size=item.get('Size', 0),
                ))
            if not response.get('IsTruncated'):
                return infos
            token = response.get('NextContinuationToken')

    async def head_object(self, bucket: str, key: str) -> ObjectInfo:
        response = await self._call(f"{bucket}/{key}", 'head_object', Bucket=bucket, Key=key)
        return ObjectInfo(
            key=key,
            last_modified_ms=_last_modified_ms(response.get('LastModified')),
            size=response.get('ContentLength', 0),
            metadata=dict(response.get('Metadata') or {}),
        )


def _last_modified_ms(value: Optional[datetime]) -> int:
    return to_millis(value) if value is not None else 0


# Utility functions
def parse_storage_uri(uri: str) -> dict:
    """Parse storage URI and return information about it"""
    if uri.startswith('s3://'):
        host = uri[5:].strip('/')
        return {
            'type': 's3',
            'endpoint_url': f'https://{host}' if host else None,
            'uri': uri
        }
    elif uri.startswith('file://'):
        return {
            'type': 'local',
            'path': uri[7:],
            'uri': uri
        }
    else:
        return {
            'type': 'local',
            'path': uri,
            'uri': f'file://{uri}'
        }


def open_object_store(uri: str, credentials: Optional[Dict[str, str]] = None,
                      endpoint_url: Optional[str] = None, region: str = "us-east-1",
                      clock: Clock = utc_now) -> ObjectStore:
    """Build the backend a storage URI names"""
    info = parse_storage_uri(uri)
    if info['type'] == 's3':
        credentials = credentials or {}
        return S3ObjectStore(
            access_key_id=credentials.get('access_key_id', ''),
            secret_access_key=credentials.get('secret_access_key', ''),
            endpoint_url=endpoint_url or info['endpoint_url'],
            region=region,
        )
    return LocalObjectStore(info['path'], clock=clock)

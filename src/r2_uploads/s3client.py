from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import create_transfer_manager
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import ClientError
from r2_uploads.interfaces import IS3Client
from zope.interface import implementer

import boto3
import contextlib
import hashlib
import logging
import os
import re
import shutil
import tempfile


logger = logging.getLogger(__name__)

# Operations that create objects and therefore carry an ACL.
CREATE_OPERATIONS = ("PutObject", "CreateMultipartUpload")

_DELETE_BATCH_SIZE = 1000

_SDK_LOGGERS = ("boto3", "botocore", "s3transfer")


class S3OperationError(Exception):
    """Wraps boto3 errors so callers only deal with one exception type."""


def parse_bucket(bucket):
    """Split a bucket identifier like ``name/sub/path`` into its parts."""
    name, _sep, path = bucket.strip("/").partition("/")
    return name, path.strip("/")


def parse_s3_uri(uri):
    """Return ``(bucket, key)`` for an ``s3://`` URI, None for local paths."""
    if not uri.startswith("s3://"):
        return None
    bucket, _sep, key = uri[len("s3://") :].partition("/")
    return bucket, key


def acl_injector(acl):
    """Build a request hook that stamps ``acl`` on every object-create call.

    The returned callable has the ``before_request`` contract of
    :meth:`S3Client.upload_directory`: it receives the operation name and
    the mutable request parameters and returns nothing.
    """

    def inject(operation_name, params):
        if operation_name in CREATE_OPERATIONS:
            params["ACL"] = acl

    return inject


@contextlib.contextmanager
def _sdk_debug_logging(enabled):
    """Stream SDK debug logs to stderr while the block runs."""
    if not enabled:
        yield
        return
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(name)s [%(levelname)s] %(message)s")
    )
    previous = []
    for name in _SDK_LOGGERS:
        sdk_logger = logging.getLogger(name)
        previous.append((sdk_logger, sdk_logger.level))
        sdk_logger.setLevel(logging.DEBUG)
        sdk_logger.addHandler(handler)
    try:
        yield
    finally:
        for sdk_logger, level in previous:
            sdk_logger.removeHandler(handler)
            sdk_logger.setLevel(level)


@implementer(IS3Client)
class S3Client:
    """Thin boto3 wrapper bound to one bucket identifier.

    Keys passed to and returned from the methods are logical keys,
    relative to the sub-path embedded in the bucket identifier.
    """

    def __init__(
        self,
        bucket,
        endpoint_url=None,
        region_name=None,
        aws_access_key_id=None,
        aws_secret_access_key=None,
        use_ssl=True,
        addressing_style="auto",
        connect_timeout=60,
        read_timeout=60,
        cache=None,
    ):
        self.bucket = bucket
        self.bucket_name, self.prefix = parse_bucket(bucket)
        self._cache = cache

        if not self.bucket_name:
            raise ValueError(f"bucket identifier has no bucket name: {bucket!r}")
        if self.prefix:
            if not re.fullmatch(r"[a-zA-Z0-9._/-]*", self.prefix):
                raise ValueError(
                    f"bucket path contains invalid characters: {self.prefix!r}. "
                    "Only alphanumeric characters, dots, hyphens, underscores, "
                    "and slashes are allowed."
                )
            if ".." in self.prefix:
                raise ValueError(f"bucket path must not contain '..': {self.prefix!r}")

        config = Config(
            s3={"addressing_style": addressing_style},
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )

        kwargs = {"config": config}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if region_name:
            kwargs["region_name"] = region_name
        if aws_access_key_id:
            kwargs["aws_access_key_id"] = aws_access_key_id
        if aws_secret_access_key:
            kwargs["aws_secret_access_key"] = aws_secret_access_key
        kwargs["use_ssl"] = use_ssl
        if not use_ssl:
            logger.warning(
                "S3 SSL is disabled: data and credentials are transmitted in cleartext"
            )

        self._client = boto3.client("s3", **kwargs)

    def full_key(self, key):
        key = key.lstrip("/")
        if self.prefix:
            return f"{self.prefix}/{key}"
        return key

    def uri(self, key=""):
        return f"s3://{self.bucket_name}/{self.full_key(key)}"

    def _cache_key(self, full_key, bucket_name=None):
        # Hashed so keys differing only in punctuation stay distinct
        path = f"{bucket_name or self.bucket_name}/{full_key}"
        return "head-" + hashlib.sha1(path.encode("utf-8")).hexdigest()

    def _forget(self, full_key, bucket_name=None):
        if self._cache is not None:
            self._cache.remove(self._cache_key(full_key, bucket_name))

    def _wrap_client_error(self, e, operation, key):
        """Re-raise an SDK error as S3OperationError, logging the original."""
        logger.debug("S3 %s failed for key=%s: %s", operation, key, e)
        if isinstance(e, ClientError):
            error = e.response.get("Error", {})
            detail = error.get("Code", "Unknown")
            if error.get("Message"):
                detail = f"{detail} ({error['Message']})"
        else:
            detail = str(e)
        raise S3OperationError(f"S3 {operation} failed for key={key}: {detail}") from e

    def put_object(self, key, body, acl=None, content_type=None):
        full_key = self.full_key(key)
        kwargs = {"Bucket": self.bucket_name, "Key": full_key, "Body": body}
        if acl:
            kwargs["ACL"] = acl
        if content_type:
            kwargs["ContentType"] = content_type
        self._forget(full_key)
        try:
            self._client.put_object(**kwargs)
        except ClientError as e:
            self._wrap_client_error(e, "put", key)

    def upload_file(self, local_path, key, acl=None):
        full_key = self.full_key(key)
        self._forget(full_key)
        try:
            self._client.upload_file(
                local_path,
                self.bucket_name,
                full_key,
                ExtraArgs={"ACL": acl} if acl else None,
            )
        except (ClientError, S3UploadFailedError) as e:
            self._wrap_client_error(e, "upload", key)

    def download_file(self, key, local_path):
        self._download(self.bucket_name, self.full_key(key), local_path, key)

    def _download(self, bucket_name, full_key, local_path, key):
        # Written to a temp file beside the target and renamed into place
        target_dir = os.path.dirname(local_path) or "."
        os.makedirs(target_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=target_dir, suffix=".download.tmp")
        try:
            os.close(fd)
            try:
                self._client.download_file(bucket_name, full_key, tmp_path)
            except ClientError as e:
                self._wrap_client_error(e, "download", key)
            os.replace(tmp_path, local_path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

    def delete_object(self, key):
        full_key = self.full_key(key)
        self._forget(full_key)
        try:
            self._client.delete_object(Bucket=self.bucket_name, Key=full_key)
        except ClientError as e:
            self._wrap_client_error(e, "delete", key)

    def head_object(self, key):
        full_key = self.full_key(key)
        if self._cache is not None:
            cached = self._cache.get(self._cache_key(full_key))
            if cached is not None:
                return cached
        try:
            response = self._client.head_object(Bucket=self.bucket_name, Key=full_key)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                return None
            self._wrap_client_error(e, "head", key)
        meta = {k: v for k, v in response.items() if k != "ResponseMetadata"}
        if self._cache is not None:
            self._cache.set(self._cache_key(full_key), meta)
        return meta

    def list_objects(self, prefix=""):
        full_prefix = self.full_key(prefix)
        paginator = self._client.get_paginator("list_objects_v2")
        prefix_len = len(self.prefix) + 1 if self.prefix else 0
        try:
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=full_prefix):
                for obj in page.get("Contents", []):
                    # Strip the bucket path so callers see logical keys
                    yield obj["Key"][prefix_len:]
        except ClientError as e:
            self._wrap_client_error(e, "list", prefix)

    def put_object_acl(self, key, acl):
        full_key = self.full_key(key)
        self._forget(full_key)
        try:
            self._client.put_object_acl(Bucket=self.bucket_name, Key=full_key, ACL=acl)
        except ClientError as e:
            self._wrap_client_error(e, "acl", key)
        logger.info("Set ACL %s on %s", acl, self.uri(key))

    def delete_matching_objects(self, prefix, regex=None, before_delete=None):
        pattern = re.compile(regex) if regex else None
        deleted = []
        batch = []
        for key in self.list_objects(prefix):
            if pattern is not None and not pattern.search(self.full_key(key)):
                continue
            batch.append(key)
            if len(batch) == _DELETE_BATCH_SIZE:
                deleted.extend(self._delete_batch(batch, before_delete))
                batch = []
        if batch:
            deleted.extend(self._delete_batch(batch, before_delete))
        return deleted

    def _delete_batch(self, keys, before_delete):
        if before_delete is not None:
            for key in keys:
                before_delete(key)
        objects = [{"Key": self.full_key(key)} for key in keys]
        for obj in objects:
            self._forget(obj["Key"])
        try:
            response = self._client.delete_objects(
                Bucket=self.bucket_name,
                Delete={"Objects": objects, "Quiet": True},
            )
        except ClientError as e:
            self._wrap_client_error(e, "delete", keys[0])
        errors = response.get("Errors", [])
        if errors:
            failed = ", ".join(
                f"{err.get('Key')} ({err.get('Code', 'Unknown')})" for err in errors
            )
            raise S3OperationError(f"S3 delete failed for keys: {failed}")
        logger.info("Deleted %d objects from %s", len(keys), self.bucket_name)
        return keys

    def upload_directory(
        self, local_dir, dest="", concurrency=5, verbose=False, before_request=None
    ):
        if not os.path.isdir(local_dir):
            raise ValueError(f"{local_dir} is not a directory")
        dest = dest.strip("/")
        uploads = []
        for dirpath, dirnames, filenames in os.walk(local_dir):
            dirnames.sort()
            for fn in sorted(filenames):
                path = os.path.join(dirpath, fn)
                rel = os.path.relpath(path, local_dir).replace(os.sep, "/")
                uploads.append((path, f"{dest}/{rel}" if dest else rel))

        handler = None
        if before_request is not None:

            def handler(params, model, **kwargs):
                before_request(model.name, params)

            for operation in CREATE_OPERATIONS:
                self._client.meta.events.register(
                    f"before-parameter-build.s3.{operation}", handler
                )

        config = TransferConfig(max_concurrency=concurrency)
        try:
            with _sdk_debug_logging(verbose), create_transfer_manager(
                self._client, config
            ) as manager:
                futures = [
                    manager.upload(path, self.bucket_name, self.full_key(key))
                    for path, key in uploads
                ]
                for future in futures:
                    future.result()
        except ClientError as e:
            self._wrap_client_error(e, "upload", dest or "/")
        finally:
            if handler is not None:
                for operation in CREATE_OPERATIONS:
                    self._client.meta.events.unregister(
                        f"before-parameter-build.s3.{operation}", handler
                    )
            for _path, key in uploads:
                self._forget(self.full_key(key))

        logger.info(
            "Uploaded %d files from %s to %s", len(uploads), local_dir, self.uri(dest)
        )
        return [key for _path, key in uploads]

    def _logical_key(self, bucket_name, full_key):
        """Return the logical key of an object in this client's bucket.

        None when the object lives in another bucket or outside the prefix.
        """
        if bucket_name != self.bucket_name:
            return None
        if not self.prefix:
            return full_key
        if full_key.startswith(self.prefix + "/"):
            return full_key[len(self.prefix) + 1 :]
        return None

    def copy(self, src, dst):
        """Copy one file; either side may be a local path or an s3:// URI."""
        source = parse_s3_uri(src)
        target = parse_s3_uri(dst)
        if source is None and target is None:
            shutil.copyfile(src, dst)
            return

        if source is None:
            key = self._logical_key(*target)
            if key is not None:
                self.upload_file(src, key)
                return
        elif target is None:
            key = self._logical_key(*source)
            if key is not None:
                self.download_file(key, dst)
            else:
                self._download(source[0], source[1], dst, src)
            return

        # Objects outside this client's bucket or prefix
        self._forget(target[1], target[0])
        try:
            if source is None:
                self._client.upload_file(src, target[0], target[1])
            else:
                self._client.copy_object(
                    Bucket=target[0],
                    Key=target[1],
                    CopySource={"Bucket": source[0], "Key": source[1]},
                )
        except (ClientError, S3UploadFailedError) as e:
            self._wrap_client_error(e, "copy", src)

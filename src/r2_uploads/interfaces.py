from zope.interface import Attribute
from zope.interface import Interface


class IS3Client(Interface):
    """Abstraction over a bucket (optionally scoped to a sub-path)."""

    bucket_name = Attribute("Name of the remote bucket")
    prefix = Attribute("Sub-path inside the bucket, without slashes")

    def put_object(key, body, acl=None, content_type=None):
        """Write bytes to a key."""

    def upload_file(local_path, key, acl=None):
        """Upload a local file to a key."""

    def download_file(key, local_path):
        """Download an object to a local file (atomic via temp+rename)."""

    def delete_object(key):
        """Delete an object. Missing keys are not an error."""

    def head_object(key):
        """Return metadata dict for an object, or None if not found."""

    def list_objects(prefix):
        """Yield keys matching the given prefix."""

    def put_object_acl(key, acl):
        """Set the access-control designation of an object."""

    def delete_matching_objects(prefix, regex=None, before_delete=None):
        """Delete every object under prefix whose key matches regex.

        before_delete(key) is called once per object before it goes.
        Returns the deleted keys.
        """

    def upload_directory(
        local_dir, dest="", concurrency=5, verbose=False, before_request=None
    ):
        """Transfer a local directory tree below dest.

        before_request(operation_name, params) may mutate the request
        parameters of every object-create call before it is sent.
        Returns the uploaded keys.
        """

    def copy(src, dst):
        """Copy one file; either side may be a local path or s3:// URI."""


class ITransientStore(Interface):
    """Expiring key/value store keyed by arbitrary strings."""

    def get(key):
        """Return the value or None when missing or expired."""

    def set(key, value, ttl):
        """Store value for ttl seconds (ttl <= 0 never expires)."""

    def delete(key):
        """Forget key. Missing keys are not an error."""


class IMetadataCache(Interface):
    """Namespaced pass-through cache for bucket metadata."""

    def get(key):
        """Return cached value or None."""

    def set(key, value, ttl=None):
        """Cache value, overwriting any previous one."""

    def remove(key):
        """Drop key from the cache."""


class IMediaHost(Interface):
    """The content host owning options and attachment metadata."""

    def get_option(name, default=None):
        """Return a persisted option."""

    def update_option(name, value):
        """Persist an option."""

    def delete_option(name):
        """Remove a persisted option."""

    def get_attachment_files(attachment_id):
        """Return the remote keys belonging to an attachment."""

    def set_attachment_files_acl(attachment_id, acl):
        """Set acl on every remote key of an attachment."""

"""ZODB-backed stand-in for the content host.

The host owns three things the adapter consults: persisted options
(the URL rewriting switch), a transient key/value store (backing the
metadata cache) and attachment records mapping an attachment id to the
files that make it up in the bucket.
"""

from BTrees.IOBTree import IOBTree
from BTrees.OOBTree import OOBTree
from persistent.mapping import PersistentMapping
from r2_uploads.interfaces import IMediaHost
from r2_uploads.interfaces import ITransientStore
from zope.interface import implementer

import logging
import posixpath
import time


logger = logging.getLogger(__name__)

OPTIONS_ROOT = "r2_uploads.options"
TRANSIENTS_ROOT = "r2_uploads.transients"
ATTACHMENTS_ROOT = "r2_uploads.attachments"

ENABLED_OPTION = "r2_uploads_enabled"

PURGE_INTERVAL = 60 * 60

ACLS = ("public-read", "private")


def _ensure_roots(db):
    with db.transaction() as conn:
        root = conn.root()
        if OPTIONS_ROOT not in root:
            root[OPTIONS_ROOT] = PersistentMapping()
        if TRANSIENTS_ROOT not in root:
            root[TRANSIENTS_ROOT] = OOBTree()
        if ATTACHMENTS_ROOT not in root:
            root[ATTACHMENTS_ROOT] = IOBTree()


@implementer(ITransientStore)
class TransientStore:
    """Expiring key/value store persisted in the ZODB root.

    Entries are kept as ``(expires_at, value)``; an ``expires_at`` of
    None never expires. Writes purge expired entries at most once every
    ``purge_interval`` seconds.
    """

    def __init__(self, db, clock=time.time, purge_interval=PURGE_INTERVAL):
        self._db = db
        self._clock = clock
        self.purge_interval = purge_interval
        self._next_purge = clock() + purge_interval
        _ensure_roots(db)

    def get(self, key):
        with self._db.transaction() as conn:
            entry = conn.root()[TRANSIENTS_ROOT].get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and self._clock() >= expires_at:
            return None
        return value

    def set(self, key, value, ttl):
        now = self._clock()
        expires_at = now + ttl if ttl and ttl > 0 else None
        with self._db.transaction() as conn:
            conn.root()[TRANSIENTS_ROOT][key] = (expires_at, value)
        if now >= self._next_purge:
            self.purge_expired()

    def delete(self, key):
        with self._db.transaction() as conn:
            transients = conn.root()[TRANSIENTS_ROOT]
            if key in transients:
                del transients[key]

    def purge_expired(self):
        """Drop expired entries, returning how many were removed."""
        now = self._clock()
        self._next_purge = now + self.purge_interval
        with self._db.transaction() as conn:
            transients = conn.root()[TRANSIENTS_ROOT]
            expired = [
                key
                for key, (expires_at, _value) in transients.items()
                if expires_at is not None and now >= expires_at
            ]
            for key in expired:
                del transients[key]
        if expired:
            logger.info("Purged %d expired transients", len(expired))
        return len(expired)


@implementer(IMediaHost)
class MediaHost:
    """Options and attachment records of the content host."""

    def __init__(self, db, s3_client, upload_root="uploads"):
        self._db = db
        self._s3_client = s3_client
        self.upload_root = upload_root.strip("/")
        _ensure_roots(db)

    # -- Options --

    def get_option(self, name, default=None):
        with self._db.transaction() as conn:
            return conn.root()[OPTIONS_ROOT].get(name, default)

    def update_option(self, name, value):
        with self._db.transaction() as conn:
            conn.root()[OPTIONS_ROOT][name] = value

    def delete_option(self, name):
        with self._db.transaction() as conn:
            conn.root()[OPTIONS_ROOT].pop(name, None)

    def enable_rewriting(self):
        self.update_option(ENABLED_OPTION, "enabled")
        logger.info("Media URL rewriting enabled")

    def disable_rewriting(self):
        self.delete_option(ENABLED_OPTION)
        logger.info("Media URL rewriting disabled")

    def is_rewriting_enabled(self):
        return self.get_option(ENABLED_OPTION) == "enabled"

    # -- Attachments --

    def add_attachment(self, attachment_id, file, sizes=()):
        """Register an attachment.

        ``file`` is relative to the upload root; ``sizes`` are file names
        of the intermediate image sizes, stored beside the main file.
        """
        with self._db.transaction() as conn:
            conn.root()[ATTACHMENTS_ROOT][int(attachment_id)] = (
                file.lstrip("/"),
                tuple(sizes),
            )

    def get_attachment_files(self, attachment_id):
        with self._db.transaction() as conn:
            record = conn.root()[ATTACHMENTS_ROOT].get(int(attachment_id))
        if record is None:
            raise KeyError(f"Attachment {attachment_id} does not exist")
        file, sizes = record
        directory = posixpath.dirname(file)
        files = [self._key(file)]
        files.extend(self._key(posixpath.join(directory, size)) for size in sizes)
        return files

    def set_attachment_files_acl(self, attachment_id, acl):
        if acl not in ACLS:
            raise ValueError(f"Invalid ACL {acl!r}, expected one of {', '.join(ACLS)}")
        result = {}
        for key in self.get_attachment_files(attachment_id):
            self._s3_client.put_object_acl(key, acl)
            result[key] = acl
        return result

    def _key(self, path):
        if self.upload_root:
            return f"{self.upload_root}/{path}"
        return path

from r2_uploads.interfaces import IMetadataCache
from zope.interface import implementer

import hashlib
import re
import unicodedata


WEEK_IN_SECONDS = 7 * 24 * 60 * 60

DEFAULT_PREFIX = "offload_s3/"

_UNSAFE_RE = re.compile(r"[^a-z0-9_-]+")


def sanitize_key(key):
    """Reduce a logical key to a slug safe for the transient store.

    Accents are stripped, the key is lowercased and every run of other
    characters becomes a single hyphen.
    """
    text = unicodedata.normalize("NFKD", key).encode("ascii", "ignore").decode()
    slug = _UNSAFE_RE.sub("-", text.lower())
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    if not slug:
        return hashlib.sha1(key.encode("utf-8")).hexdigest()
    return slug


@implementer(IMetadataCache)
class MetadataCache:
    """Namespaced pass-through to a transient store.

    Entries live under ``{prefix}{sanitized key}`` so they never collide
    with other users of the same store. Expiry is left to the store.
    """

    def __init__(self, store, prefix=DEFAULT_PREFIX, default_ttl=WEEK_IN_SECONDS):
        self._store = store
        self.prefix = prefix
        self.default_ttl = default_ttl

    def _key(self, key):
        return self.prefix + sanitize_key(key)

    def get(self, key):
        return self._store.get(self._key(key))

    def set(self, key, value, ttl=None):
        if ttl is None:
            ttl = self.default_ttl
        self._store.set(self._key(key), value, ttl)

    def remove(self, key):
        self._store.delete(self._key(key))

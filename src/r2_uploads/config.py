from r2_uploads.cache import MetadataCache
from r2_uploads.cache import WEEK_IN_SECONDS
from r2_uploads.host import MediaHost
from r2_uploads.host import TransientStore
from r2_uploads.s3client import S3Client
from ZODB.config import BaseConfig

import io
import os
import ZConfig


SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schema.xml")

DEFAULT_OBJECT_ACL = "public-read"

# (setting, config key, environment fallback)
REQUIRED_SETTINGS = (
    ("bucket", "bucket", "R2_UPLOADS_BUCKET"),
    ("access_key", "access-key", "R2_UPLOADS_KEY"),
    ("secret_key", "secret-key", "R2_UPLOADS_SECRET"),
)

ENV_FALLBACKS = {name: env for name, _key, env in REQUIRED_SETTINGS}
ENV_FALLBACKS.update(
    {
        "endpoint_url": "R2_UPLOADS_ENDPOINT",
        "region": "R2_UPLOADS_REGION",
        "object_acl": "R2_UPLOADS_OBJECT_ACL",
    }
)

_SETTINGS = (
    "bucket",
    "access_key",
    "secret_key",
    "endpoint_url",
    "region",
    "object_acl",
    "upload_root",
    "addressing_style",
    "use_ssl",
    "cache_ttl",
)

_schema = None


def _get_schema():
    global _schema
    if _schema is None:
        _schema = ZConfig.loadSchema(SCHEMA_PATH)
    return _schema


def load_config(path, environ=None):
    """Load a configuration file and return the opened Uploads."""
    config, _handlers = ZConfig.loadConfig(_get_schema(), path)
    return config.uploads.open(environ=environ)


def load_config_string(text, environ=None):
    config, _handlers = ZConfig.loadConfigFile(_get_schema(), io.StringIO(text))
    return config.uploads.open(environ=environ)


class UploadsFactory(BaseConfig):
    """ZConfig factory for the Uploads container."""

    def open(self, environ=None):
        environ = os.environ if environ is None else environ
        config = self.config
        settings = {name: getattr(config, name) for name in _SETTINGS}
        for name, env in ENV_FALLBACKS.items():
            if not settings[name]:
                settings[name] = environ.get(env)
        return Uploads(settings, config.database.open())


class Uploads:
    """Everything a command needs, built once per process.

    The S3 client is only built when the required connection settings
    are present; ``missing_settings`` tells which ones are not.
    """

    def __init__(self, settings, db, s3_client=None, transients=None):
        self.settings = dict(settings)
        self.settings.setdefault("upload_root", "uploads")
        self.settings.setdefault("cache_ttl", WEEK_IN_SECONDS)
        if not self.settings.get("object_acl"):
            self.settings["object_acl"] = DEFAULT_OBJECT_ACL
        self.db = db
        if transients is None:
            transients = TransientStore(db)
            transients.purge_expired()
        self.transients = transients
        self.cache = MetadataCache(
            self.transients, default_ttl=self.settings["cache_ttl"]
        )
        if s3_client is None and not self.missing_settings():
            s3_client = S3Client(
                bucket=self.settings["bucket"],
                endpoint_url=self.settings.get("endpoint_url"),
                region_name=self.settings.get("region"),
                aws_access_key_id=self.settings["access_key"],
                aws_secret_access_key=self.settings["secret_key"],
                use_ssl=self.settings.get("use_ssl", True),
                addressing_style=self.settings.get("addressing_style") or "auto",
                cache=self.cache,
            )
        self.s3 = s3_client
        self.host = MediaHost(db, s3_client, upload_root=self.settings["upload_root"])

    @property
    def object_acl(self):
        return self.settings["object_acl"]

    @property
    def upload_root(self):
        return self.settings["upload_root"]

    def missing_settings(self):
        """Return ``(config key, environment name)`` for each missing setting."""
        return [
            (key, env)
            for name, key, env in REQUIRED_SETTINGS
            if not self.settings.get(name)
        ]

    def close(self):
        self.db.close()

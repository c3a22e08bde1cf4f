from botocore.exceptions import BotoCoreError
from functools import update_wrapper
from r2_uploads.config import load_config
from r2_uploads.host import ACLS
from r2_uploads.s3client import acl_injector
from r2_uploads.s3client import parse_s3_uri
from r2_uploads.s3client import S3OperationError

import click
import contextlib
import json
import logging
import os
import re
import secrets


logger = logging.getLogger(__name__)

VERIFY_CONTENT = b"This file was written by r2-uploads verify and can be deleted.\n"

_COMMAND_ERRORS = (S3OperationError, BotoCoreError, OSError, KeyError, ValueError, re.error)


def _error(message):
    click.echo(f"Error: {message}", err=True)


def _success(message):
    click.echo(f"Success: {message}")


def _print_value(value):
    click.echo(json.dumps(value, indent=2))


def _message(exc):
    if isinstance(exc, KeyError) and exc.args:
        return str(exc.args[0])
    return str(exc)


@contextlib.contextmanager
def _command_errors():
    """Turn remote and local failures into a failed command."""
    try:
        yield
    except _COMMAND_ERRORS as e:
        logger.debug("Command failed", exc_info=True)
        raise click.ClickException(_message(e)) from e


def _trailingslashit(path):
    return path.rstrip("/") + "/"


def _get_uploads(ctx):
    root = ctx.find_root()
    if root.obj is None:
        config_path = root.params.get("config_path")
        if not config_path:
            raise click.UsageError(
                "No configuration file given; use --config or R2_UPLOADS_CONFIG."
            )
        root.obj = load_config(config_path)
        root.call_on_close(root.obj.close)
    return root.obj


def _verify_connection_settings(uploads):
    """Report each missing connection setting, returning True if none are."""
    missing = uploads.missing_settings()
    for key, env in missing:
        _error(f"The required setting {key} ({env}) is not defined.")
    return not missing


def pass_uploads(require_connection=True):
    """Inject the Uploads container as the first argument of a command."""

    def decorator(f):
        @click.pass_context
        def new_func(ctx, *args, **kwargs):
            uploads = _get_uploads(ctx)
            if require_connection and not _verify_connection_settings(uploads):
                ctx.exit(1)
            return ctx.invoke(f, uploads, *args, **kwargs)

        return update_wrapper(new_func, f)

    return decorator


@click.group()
@click.option(
    "-c",
    "--config",
    "config_path",
    envvar="R2_UPLOADS_CONFIG",
    type=click.Path(exists=True, dir_okay=False),
    help="ZConfig file with the <r2uploads> section.",
)
def cli(config_path):
    """Manage media uploads stored in an R2 / S3-compatible bucket."""


@cli.command()
@pass_uploads()
def verify(uploads):
    """Verify the configured keys can write to and delete from the bucket."""
    s3 = uploads.s3
    # Random name so existing data is never overwritten
    key = f"{uploads.upload_root}/{secrets.randbelow(2**31)}.txt"
    uri = s3.uri(key)

    click.echo(f"Attempting to upload file {uri}")
    try:
        s3.put_object(key, VERIFY_CONTENT, content_type="text/plain")
        written = s3.head_object(key) is not None
        reason = "object not found after write"
    except (S3OperationError, BotoCoreError) as e:
        written = False
        reason = str(e)
    if not written:
        raise click.ClickException(
            f"Failed to copy / write to R2 - check your policy? ({reason})"
        )
    click.echo("File uploaded to R2 successfully.")

    click.echo(f"Attempting to delete file {uri}")
    try:
        s3.delete_object(key)
        deleted = s3.head_object(key) is None
        reason = "object still present after delete"
    except (S3OperationError, BotoCoreError) as e:
        deleted = False
        reason = str(e)
    if not deleted:
        raise click.ClickException(f"Failed to delete {uri} ({reason})")
    click.echo("File deleted from R2 successfully.")

    _success("Looks like your configuration is correct.")


@cli.command()
@click.argument("path", required=False)
@pass_uploads()
def ls(uploads, path):
    """List files in the bucket, optionally below PATH."""
    prefix = ""
    if path and path.strip("/"):
        prefix = _trailingslashit(path.lstrip("/"))
    with _command_errors():
        for key in uploads.s3.list_objects(prefix):
            click.echo(key[len(prefix) :])


def _copy_pairs(src, dst):
    """Yield (source, target) for every file below the directory src."""
    remote = parse_s3_uri(dst) is not None
    for dirpath, dirnames, filenames in os.walk(src):
        dirnames.sort()
        rel = os.path.relpath(dirpath, src)
        target_dir = dst if rel == "." else f"{dst.rstrip('/')}/{rel}"
        if not remote:
            os.makedirs(target_dir, exist_ok=True)
        for fn in sorted(filenames):
            yield os.path.join(dirpath, fn), f"{target_dir.rstrip('/')}/{fn}"


@cli.command()
@click.argument("src", metavar="FROM")
@click.argument("dst", metavar="TO")
@pass_uploads()
def cp(uploads, src, dst):
    """Copy files to / from the uploads directory.

    Use s3://bucket/location for objects in the bucket. Directories are
    copied recursively.
    """
    recursive = os.path.isdir(src)
    with _command_errors():
        pairs = list(_copy_pairs(src, dst)) if recursive else [(src, dst)]

    failures = 0
    for source, target in pairs:
        if recursive:
            click.echo(f"Copying from {source} to {target}")
        try:
            uploads.s3.copy(source, target)
        except (S3OperationError, BotoCoreError, OSError) as e:
            failures += 1
            _error(f"Failed to copy {source}: {e}")

    if failures:
        raise click.ClickException(
            f"{failures} of {len(pairs)} files failed to copy from {src} to {dst}"
        )
    _success(f"Completed copy from {src} to {dst}")


@cli.command("upload-directory")
@click.argument("src", metavar="FROM", type=click.Path(exists=True, file_okay=False))
@click.argument("dst", metavar="[TO]", required=False, default="")
@click.option(
    "--concurrency",
    default=5,
    show_default=True,
    type=click.IntRange(min=1),
    help="Number of parallel transfers.",
)
@click.option("--verbose", is_flag=True, help="Log every request.")
@pass_uploads()
def upload_directory(uploads, src, dst, concurrency, verbose):
    """Upload a local directory to the bucket."""
    s3 = uploads.s3
    with _command_errors():
        keys = s3.upload_directory(
            src,
            dst,
            concurrency=concurrency,
            verbose=verbose,
            before_request=acl_injector(uploads.object_acl),
        )
    _success(f"Uploaded {len(keys)} files to {s3.uri(dst.strip('/'))}")


@cli.command()
@click.argument("path")
@click.option("--regex", default=None, help="Only delete keys matching this pattern.")
@pass_uploads()
def rm(uploads, path, regex):
    """Delete files from the bucket.

    A PATH without a dot is treated as a directory.
    """
    s3 = uploads.s3
    prefix = path.lstrip("/")
    if not prefix.strip("/"):
        raise click.UsageError(
            "Refusing to delete the whole bucket; give a path inside it."
        )
    if "." not in path:
        prefix = _trailingslashit(prefix)

    with _command_errors():
        s3.delete_matching_objects(
            prefix,
            regex,
            before_delete=lambda key: click.echo(f"Deleting {key}"),
        )
    _success(f"Successfully deleted {s3.full_key(prefix)}")


@cli.command()
@pass_uploads(require_connection=False)
def enable(uploads):
    """Enable the rewriting of media links to the bucket."""
    uploads.host.enable_rewriting()
    _success("Media URL rewriting enabled.")


@cli.command()
@pass_uploads(require_connection=False)
def disable(uploads):
    """Disable the rewriting of media links to the bucket."""
    uploads.host.disable_rewriting()
    _success("Media URL rewriting disabled.")


@cli.command("get-attachment-files")
@click.argument("attachment_id", metavar="ATTACHMENT-ID", type=int)
@pass_uploads()
def get_attachment_files(uploads, attachment_id):
    """List all files for a given attachment."""
    with _command_errors():
        files = uploads.host.get_attachment_files(attachment_id)
    _print_value(files)


@cli.command("set-attachment-acl")
@click.argument("attachment_id", metavar="ATTACHMENT-ID", type=int)
@click.argument("acl", type=click.Choice(ACLS))
@pass_uploads()
def set_attachment_acl(uploads, attachment_id, acl):
    """Update the ACL of all files for an attachment."""
    with _command_errors():
        result = uploads.host.set_attachment_files_acl(attachment_id, acl)
    _print_value(result)

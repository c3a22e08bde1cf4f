import os

import boto3
import pytest
from moto import mock_aws

from r2_uploads.cache import MetadataCache
from r2_uploads.interfaces import IS3Client
from r2_uploads.s3client import acl_injector
from r2_uploads.s3client import parse_bucket
from r2_uploads.s3client import parse_s3_uri
from r2_uploads.s3client import S3Client
from r2_uploads.s3client import S3OperationError


ALL_USERS = "http://acs.amazonaws.com/groups/global/AllUsers"


class DictStore:
    """In-memory transient store that records its calls."""

    def __init__(self):
        self.data = {}
        self.gets = 0

    def get(self, key):
        self.gets += 1
        return self.data.get(key)

    def set(self, key, value, ttl):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


@pytest.fixture
def s3_env():
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(
            Bucket="test-bucket"
        )
        yield


@pytest.fixture
def raw_s3(s3_env):
    return boto3.client("s3", region_name="us-east-1")


@pytest.fixture
def client(s3_env):
    return S3Client(bucket="test-bucket", region_name="us-east-1")


@pytest.fixture
def prefixed_client(s3_env):
    return S3Client(bucket="test-bucket/myprefix", region_name="us-east-1")


def _keys(raw_s3, prefix=""):
    resp = raw_s3.list_objects_v2(Bucket="test-bucket", Prefix=prefix)
    return sorted(obj["Key"] for obj in resp.get("Contents", []))


def _is_public(raw_s3, key):
    grants = raw_s3.get_object_acl(Bucket="test-bucket", Key=key)["Grants"]
    return any(
        g["Grantee"].get("URI") == ALL_USERS and g["Permission"] == "READ"
        for g in grants
    )


class TestS3ClientInterface:
    def test_interface_provided(self, client):
        assert IS3Client.providedBy(client)


class TestParsing:
    def test_parse_bucket_plain(self):
        assert parse_bucket("media") == ("media", "")

    def test_parse_bucket_with_path(self):
        assert parse_bucket("media/site-a/") == ("media", "site-a")

    def test_parse_bucket_nested_path(self):
        assert parse_bucket("/media/a/b") == ("media", "a/b")

    def test_parse_s3_uri(self):
        assert parse_s3_uri("s3://media/uploads/a.jpg") == ("media", "uploads/a.jpg")

    def test_parse_local_path(self):
        assert parse_s3_uri("/tmp/a.jpg") is None

    def test_invalid_prefix_rejected(self, s3_env):
        with pytest.raises(ValueError):
            S3Client(bucket="test-bucket/bad prefix", region_name="us-east-1")

    def test_parent_reference_rejected(self, s3_env):
        with pytest.raises(ValueError):
            S3Client(bucket="test-bucket/a/../b", region_name="us-east-1")

    def test_uri(self, prefixed_client):
        assert prefixed_client.uri("x.txt") == "s3://test-bucket/myprefix/x.txt"


class TestPutHeadDelete:
    def test_put_and_head(self, client):
        client.put_object("hello.txt", b"hello")
        meta = client.head_object("hello.txt")
        assert meta["ContentLength"] == 5
        assert "ResponseMetadata" not in meta

    def test_head_object_missing(self, client):
        assert client.head_object("missing/key.txt") is None

    def test_put_with_acl(self, client, raw_s3):
        client.put_object("public.txt", b"x", acl="public-read")
        assert _is_public(raw_s3, "public.txt")

    def test_delete_object(self, client):
        client.put_object("del/key.txt", b"delete me")
        client.delete_object("del/key.txt")
        assert client.head_object("del/key.txt") is None

    def test_delete_nonexistent_does_not_raise(self, client):
        client.delete_object("nonexistent/key.txt")

    def test_missing_bucket_raises_wrapped_error(self, s3_env):
        client = S3Client(bucket="no-such-bucket", region_name="us-east-1")
        with pytest.raises(S3OperationError, match="NoSuchBucket"):
            client.put_object("a.txt", b"x")


class TestUploadDownload:
    def test_upload_and_download_roundtrip(self, client, tmp_path):
        src = tmp_path / "source.bin"
        src.write_bytes(b"hello media")
        client.upload_file(str(src), "2024/01/source.bin")

        dst = tmp_path / "out" / "downloaded.bin"
        client.download_file("2024/01/source.bin", str(dst))

        assert dst.read_bytes() == b"hello media"
        assert [p.name for p in dst.parent.iterdir()] == ["downloaded.bin"]

    def test_download_missing_leaves_no_temp_file(self, client, tmp_path):
        with pytest.raises(S3OperationError):
            client.download_file("missing.bin", str(tmp_path / "missing.bin"))
        assert list(tmp_path.iterdir()) == []


class TestListObjects:
    def test_list_objects(self, client):
        for i in range(3):
            client.put_object(f"list/{i}.jpg", b"x")
        client.put_object("other/x.jpg", b"x")

        keys = list(client.list_objects("list/"))
        assert sorted(keys) == ["list/0.jpg", "list/1.jpg", "list/2.jpg"]

    def test_list_objects_empty(self, client):
        assert list(client.list_objects("nonexistent/")) == []

    def test_list_paginates(self, client, raw_s3):
        for i in range(1005):
            raw_s3.put_object(Bucket="test-bucket", Key=f"many/{i:04d}", Body=b"")
        assert len(list(client.list_objects("many/"))) == 1005


class TestPrefix:
    def test_prefix_applied_to_put(self, prefixed_client, raw_s3):
        prefixed_client.put_object("uploads/a.jpg", b"x")
        assert _keys(raw_s3) == ["myprefix/uploads/a.jpg"]

    def test_prefix_stripped_from_list(self, prefixed_client, raw_s3):
        raw_s3.put_object(Bucket="test-bucket", Key="myprefix/a.jpg", Body=b"")
        raw_s3.put_object(Bucket="test-bucket", Key="myprefixother/b.jpg", Body=b"")
        assert list(prefixed_client.list_objects()) == ["a.jpg"]

    def test_prefix_isolation(self, s3_env):
        client_a = S3Client(bucket="test-bucket/ns_a", region_name="us-east-1")
        client_b = S3Client(bucket="test-bucket/ns_b", region_name="us-east-1")

        client_a.put_object("key.txt", b"isolation test")

        assert client_a.head_object("key.txt") is not None
        assert client_b.head_object("key.txt") is None


class TestDeleteMatchingObjects:
    def test_deletes_everything_under_prefix(self, client, raw_s3):
        for key in ("logs/a.txt", "logs/b/c.txt", "logs-old/d.txt"):
            client.put_object(key, b"x")

        deleted = client.delete_matching_objects("logs/")

        assert sorted(deleted) == ["logs/a.txt", "logs/b/c.txt"]
        assert _keys(raw_s3) == ["logs-old/d.txt"]

    def test_regex_filters_keys(self, client, raw_s3):
        for key in ("logs/a.txt", "logs/b.gz", "logs/c.gz"):
            client.put_object(key, b"x")

        deleted = client.delete_matching_objects("logs/", regex=r"\.gz$")

        assert sorted(deleted) == ["logs/b.gz", "logs/c.gz"]
        assert _keys(raw_s3) == ["logs/a.txt"]

    def test_before_delete_called_per_object(self, client):
        for key in ("x/1", "x/2", "x/3"):
            client.put_object(key, b"x")
        seen = []

        client.delete_matching_objects("x/", before_delete=seen.append)

        assert sorted(seen) == ["x/1", "x/2", "x/3"]

    def test_no_match_returns_empty(self, client):
        assert client.delete_matching_objects("nothing/") == []

    def test_regex_sees_full_key(self, prefixed_client, raw_s3):
        prefixed_client.put_object("a.txt", b"x")
        prefixed_client.put_object("b.txt", b"x")

        prefixed_client.delete_matching_objects("", regex=r"^myprefix/a")

        assert _keys(raw_s3) == ["myprefix/b.txt"]


class TestUploadDirectory:
    def _make_tree(self, tmp_path):
        root = tmp_path / "media"
        (root / "2024" / "01").mkdir(parents=True)
        (root / "a.jpg").write_bytes(b"a")
        (root / "2024" / "01" / "b.jpg").write_bytes(b"b")
        (root / "2024" / "01" / "c.jpg").write_bytes(b"c")
        return root

    def test_uploads_all_files(self, client, raw_s3, tmp_path):
        root = self._make_tree(tmp_path)

        keys = client.upload_directory(str(root), "uploads", concurrency=1)

        expected = ["uploads/2024/01/b.jpg", "uploads/2024/01/c.jpg", "uploads/a.jpg"]
        assert sorted(keys) == expected
        assert _keys(raw_s3) == expected

    def test_before_request_sets_acl(self, client, raw_s3, tmp_path):
        root = self._make_tree(tmp_path)

        client.upload_directory(
            str(root), concurrency=2, before_request=acl_injector("public-read")
        )

        for key in _keys(raw_s3):
            assert _is_public(raw_s3, key)

    def test_without_hook_objects_are_private(self, client, raw_s3, tmp_path):
        root = self._make_tree(tmp_path)
        client.upload_directory(str(root))
        assert not _is_public(raw_s3, "a.jpg")

    def test_hook_unregistered_after_transfer(self, client, raw_s3, tmp_path):
        root = self._make_tree(tmp_path)
        client.upload_directory(str(root), before_request=acl_injector("public-read"))

        client.put_object("later.txt", b"x")
        assert not _is_public(raw_s3, "later.txt")

    def test_hook_receives_operation_name(self, client, tmp_path):
        root = self._make_tree(tmp_path)
        calls = []

        client.upload_directory(
            str(root), before_request=lambda name, params: calls.append(name)
        )

        assert calls == ["PutObject"] * 3

    def test_not_a_directory(self, client, tmp_path):
        with pytest.raises(ValueError):
            client.upload_directory(str(tmp_path / "missing"))

    def test_prefixed_destination(self, prefixed_client, raw_s3, tmp_path):
        root = self._make_tree(tmp_path)
        prefixed_client.upload_directory(str(root), "/up/")
        assert "myprefix/up/a.jpg" in _keys(raw_s3)


class TestAclInjector:
    def test_sets_acl_on_create_operations(self):
        inject = acl_injector("private")
        for name in ("PutObject", "CreateMultipartUpload"):
            params = {}
            inject(name, params)
            assert params == {"ACL": "private"}

    def test_ignores_other_operations(self):
        params = {}
        acl_injector("private")("UploadPart", params)
        assert params == {}


class TestCopy:
    def test_local_to_local(self, client, tmp_path):
        src = tmp_path / "a.txt"
        src.write_bytes(b"local")
        client.copy(str(src), str(tmp_path / "b.txt"))
        assert (tmp_path / "b.txt").read_bytes() == b"local"

    def test_local_to_bucket_and_back(self, client, tmp_path):
        src = tmp_path / "a.txt"
        src.write_bytes(b"remote")

        client.copy(str(src), "s3://test-bucket/uploads/a.txt")
        client.copy("s3://test-bucket/uploads/a.txt", str(tmp_path / "back.txt"))

        assert (tmp_path / "back.txt").read_bytes() == b"remote"

    def test_bucket_to_bucket(self, client, raw_s3):
        client.put_object("a.txt", b"x")
        client.copy("s3://test-bucket/a.txt", "s3://test-bucket/b.txt")
        assert _keys(raw_s3) == ["a.txt", "b.txt"]

    def test_missing_local_source(self, client, tmp_path):
        with pytest.raises(OSError):
            client.copy(str(tmp_path / "missing"), str(tmp_path / "x"))

    def test_missing_remote_source(self, client, tmp_path):
        with pytest.raises(S3OperationError):
            client.copy("s3://test-bucket/missing", os.path.join(tmp_path, "x"))

    def test_failed_download_leaves_no_partial_file(self, client, tmp_path):
        with pytest.raises(S3OperationError):
            client.copy("s3://test-bucket/missing.jpg", str(tmp_path / "out.jpg"))
        assert list(tmp_path.iterdir()) == []

    def test_failed_download_from_other_bucket_leaves_no_partial_file(
        self, client, tmp_path
    ):
        with pytest.raises(S3OperationError):
            client.copy("s3://other-bucket/missing.jpg", str(tmp_path / "out.jpg"))
        assert list(tmp_path.iterdir()) == []

    def test_download_from_other_bucket(self, client, raw_s3, tmp_path):
        raw_s3.create_bucket(Bucket="other-bucket")
        raw_s3.put_object(Bucket="other-bucket", Key="a.txt", Body=b"other")

        client.copy("s3://other-bucket/a.txt", str(tmp_path / "a.txt"))

        assert (tmp_path / "a.txt").read_bytes() == b"other"
        assert [p.name for p in tmp_path.iterdir()] == ["a.txt"]

    def test_prefixed_client_copies_by_logical_key(
        self, prefixed_client, raw_s3, tmp_path
    ):
        src = tmp_path / "a.txt"
        src.write_bytes(b"abc")

        prefixed_client.copy(str(src), "s3://test-bucket/myprefix/2024/a.txt")
        assert _keys(raw_s3) == ["myprefix/2024/a.txt"]

        prefixed_client.copy(
            "s3://test-bucket/myprefix/2024/a.txt", str(tmp_path / "back.txt")
        )
        assert (tmp_path / "back.txt").read_bytes() == b"abc"

    def test_logical_key(self, prefixed_client):
        assert prefixed_client._logical_key("test-bucket", "myprefix/a.txt") == "a.txt"
        assert prefixed_client._logical_key("test-bucket", "myprefixed/a.txt") is None
        assert prefixed_client._logical_key("other-bucket", "myprefix/a.txt") is None


class TestHeadCache:
    @pytest.fixture
    def store(self):
        return DictStore()

    @pytest.fixture
    def cached_client(self, s3_env, store):
        return S3Client(
            bucket="test-bucket", region_name="us-east-1", cache=MetadataCache(store)
        )

    def test_head_result_cached(self, cached_client, store, raw_s3):
        cached_client.put_object("a.txt", b"abc")
        first = cached_client.head_object("a.txt")
        assert len(store.data) == 1

        # Deleted behind the client's back: the cached answer still wins
        raw_s3.delete_object(Bucket="test-bucket", Key="a.txt")
        assert cached_client.head_object("a.txt") == first

    def test_cache_keys_namespaced(self, cached_client, store):
        cached_client.put_object("a.txt", b"abc")
        cached_client.head_object("a.txt")
        assert all(key.startswith("offload_s3/head-") for key in store.data)

    def test_miss_not_cached(self, cached_client, store):
        assert cached_client.head_object("missing.txt") is None
        assert store.data == {}

    def test_delete_invalidates(self, cached_client, store):
        cached_client.put_object("a.txt", b"abc")
        cached_client.head_object("a.txt")
        cached_client.delete_object("a.txt")
        assert store.data == {}
        assert cached_client.head_object("a.txt") is None

    def test_put_invalidates(self, cached_client):
        cached_client.put_object("a.txt", b"abc")
        cached_client.head_object("a.txt")
        cached_client.put_object("a.txt", b"abcdef")
        assert cached_client.head_object("a.txt")["ContentLength"] == 6

    def test_batch_delete_invalidates(self, cached_client, store):
        cached_client.put_object("x/a.txt", b"abc")
        cached_client.head_object("x/a.txt")
        cached_client.delete_matching_objects("x/")
        assert store.data == {}

    def test_copy_into_bucket_invalidates(self, cached_client, tmp_path):
        cached_client.put_object("a.txt", b"abc")
        cached_client.head_object("a.txt")
        src = tmp_path / "a.txt"
        src.write_bytes(b"abcdef")

        cached_client.copy(str(src), "s3://test-bucket/a.txt")

        assert cached_client.head_object("a.txt")["ContentLength"] == 6

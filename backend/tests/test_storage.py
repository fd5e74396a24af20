"""
Unit tests for the Supabase-backed object store.
Tests uploads, public URL handling, and deletion by URL.
"""

import pytest
import os
from unittest.mock import Mock, MagicMock, patch

# Mock environment variables before importing app modules
os.environ['SUPABASE_URL'] = 'https://test.supabase.co'
os.environ['SUPABASE_KEY'] = 'test-anon-key'

from auraiq.services.storage import (
    SupabaseObjectStore,
    _rewrite_public_url_host,
    _sanitize_filename,
    storage_path_from_url,
)

PUBLIC_BASE = "https://proj.supabase.co/storage/v1/object/public/chat-media"


def _mock_client():
    client = MagicMock()
    bucket = client.storage.from_.return_value
    bucket.get_public_url.side_effect = lambda path: f"{PUBLIC_BASE}/{path}"
    return client, bucket


class TestPut:
    """Test uploads to the chat media bucket."""

    @pytest.mark.asyncio
    async def test_put_returns_public_url_with_unique_prefix(self):
        """put() uploads under a unique prefix and returns the public URL."""
        client, bucket = _mock_client()
        store = SupabaseObjectStore(client=client, bucket="chat-media")

        with patch('auraiq.services.storage.uuid4') as mock_uuid:
            mock_uuid.return_value = Mock(hex="abc123")
            url = await store.put("cat.png", b"png-bytes", "image/png")

        assert url == f"{PUBLIC_BASE}/abc123-cat.png"
        client.storage.from_.assert_called_with("chat-media")
        path, content, options = bucket.upload.call_args[0]
        assert path == "abc123-cat.png"
        assert content == b"png-bytes"
        assert options["content-type"] == "image/png"

    @pytest.mark.asyncio
    async def test_put_sanitizes_filename(self):
        """Unsafe characters in the file name are replaced before upload."""
        client, bucket = _mock_client()
        store = SupabaseObjectStore(client=client, bucket="chat-media")

        url = await store.put("my photo (1).png", b"x", "image/png")

        assert url.endswith("-my_photo__1_.png")

    @pytest.mark.asyncio
    async def test_put_failure_raises_exception(self):
        """An upload error propagates to the caller."""
        client, bucket = _mock_client()
        bucket.upload.side_effect = Exception("bucket full")
        store = SupabaseObjectStore(client=client, bucket="chat-media")

        with pytest.raises(Exception) as exc_info:
            await store.put("cat.png", b"x", "image/png")

        assert "Failed to upload cat.png" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_service_key_raises_value_error(self):
        """Without a service-role client, put() raises ValueError."""
        with patch('auraiq.services.storage.supabase_admin', None):
            store = SupabaseObjectStore(bucket="chat-media")

        with pytest.raises(ValueError):
            await store.put("cat.png", b"x", "image/png")


class TestDelete:
    """Test deletion by the URLs put() returned."""

    @pytest.mark.asyncio
    async def test_delete_by_url(self):
        """URLs are mapped to bucket paths and removed in one call."""
        client, bucket = _mock_client()
        bucket.remove.return_value = [{"name": "a.png"}, {"name": "b.png"}]
        store = SupabaseObjectStore(client=client, bucket="chat-media")

        deleted = await store.delete([f"{PUBLIC_BASE}/a.png", f"{PUBLIC_BASE}/b.png"])

        assert deleted == 2
        bucket.remove.assert_called_once_with(["a.png", "b.png"])

    @pytest.mark.asyncio
    async def test_foreign_urls_are_skipped(self):
        """URLs from other buckets or hosts are not deleted."""
        client, bucket = _mock_client()
        bucket.remove.return_value = [{"name": "a.png"}]
        store = SupabaseObjectStore(client=client, bucket="chat-media")

        await store.delete([
            f"{PUBLIC_BASE}/a.png",
            "https://proj.supabase.co/storage/v1/object/public/other-bucket/x.png",
            "https://example.com/random.png",
        ])

        bucket.remove.assert_called_once_with(["a.png"])

    @pytest.mark.asyncio
    async def test_nothing_to_delete_skips_storage_call(self):
        """No matching paths means no storage call."""
        client, bucket = _mock_client()
        store = SupabaseObjectStore(client=client, bucket="chat-media")

        assert await store.delete(["https://example.com/random.png"]) == 0
        bucket.remove.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_failure_raises_exception(self):
        """A remove error propagates to the caller."""
        client, bucket = _mock_client()
        bucket.remove.side_effect = Exception("network")
        store = SupabaseObjectStore(client=client, bucket="chat-media")

        with pytest.raises(Exception) as exc_info:
            await store.delete([f"{PUBLIC_BASE}/a.png"])

        assert "Failed to delete" in str(exc_info.value)


class TestStoragePathFromUrl:

    def test_public_url(self):
        """A public object URL maps to its path."""
        assert storage_path_from_url(f"{PUBLIC_BASE}/abc-photo.png", "chat-media") == "abc-photo.png"

    def test_signed_url_with_query(self):
        """A signed URL maps to its path without the query."""
        url = "https://proj.supabase.co/storage/v1/object/sign/chat-media/x/y.png?token=t"
        assert storage_path_from_url(url, "chat-media") == "x/y.png"

    def test_percent_encoded_path(self):
        """Percent-encoded paths are decoded."""
        assert storage_path_from_url(f"{PUBLIC_BASE}/my%20file.png", "chat-media") == "my file.png"

    def test_plain_path_returned_unchanged(self):
        """A bare path is taken as already relative to the bucket."""
        assert storage_path_from_url("abc-photo.png", "chat-media") == "abc-photo.png"

    def test_other_bucket_returns_none(self):
        """A URL for another bucket has no path in this one."""
        url = "https://proj.supabase.co/storage/v1/object/public/avatars/a.pdf"
        assert storage_path_from_url(url, "chat-media") is None


class TestRewritePublicUrlHost:
    """Test _rewrite_public_url_host helper."""

    def test_no_env_var_returns_url_unchanged(self):
        """When SUPABASE_PUBLIC_URL is not set, the URL is returned as-is."""
        url = "http://host.docker.internal:54321/storage/v1/object/public/chat-media/a.png"
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("SUPABASE_PUBLIC_URL", None)
            result = _rewrite_public_url_host(url)
        assert result == url

    def test_env_var_set_replaces_host_and_scheme(self):
        """When SUPABASE_PUBLIC_URL is set, scheme+host are replaced."""
        url = "http://host.docker.internal:54321/storage/v1/object/public/chat-media/a.png?x=1"
        expected = "https://myproject.supabase.co/storage/v1/object/public/chat-media/a.png?x=1"
        with patch.dict(os.environ, {"SUPABASE_PUBLIC_URL": "https://myproject.supabase.co"}):
            result = _rewrite_public_url_host(url)
        assert result == expected


class TestSanitizeFilename:

    def test_keeps_safe_characters(self):
        """Letters, digits, dots, dashes and underscores are kept."""
        assert _sanitize_filename("report-2024_v1.pdf") == "report-2024_v1.pdf"

    def test_replaces_spaces_and_symbols(self):
        """Spaces, slashes and other symbols become underscores."""
        assert _sanitize_filename("a b/c?.png") == "a_b_c_.png"

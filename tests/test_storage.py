"""Storage backends and object key layout."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from matting_service.config import Settings
from matting_service.errors import StorageError
from matting_service.storage import LocalStorage, S3Storage, build_object_key, build_storage


def _r2_settings(**overrides) -> Settings:
    values = dict(
        r2_endpoint="https://account.r2.cloudflarestorage.com",
        r2_access_key_id="key",
        r2_secret_access_key="secret",
        r2_bucket_name="cutouts",
        r2_public_base_url="https://cdn.example.com",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.mark.unit
class TestObjectKey:
    def test_short_owner_is_zero_padded(self) -> None:
        assert build_object_key(42, "background-removed", "a.png") == "images/background-removed/0/0/0/42/a.png"

    def test_long_owner_uses_leading_characters(self) -> None:
        assert build_object_key("1234567", "cat", "a.png") == "images/cat/1/2/3/1234567/a.png"

    @pytest.mark.parametrize("owner", ["../../x", "a/b", "..", "", "user 1", "x\\y"])
    def test_rejects_owner_ids_that_leave_the_prefix(self, owner: str) -> None:
        with pytest.raises(StorageError):
            build_object_key(owner, "cat", "a.png")

    @pytest.mark.parametrize("file_name", ["../a.png", "a/b.png", ".hidden.png"])
    def test_rejects_unsafe_file_names(self, file_name: str) -> None:
        with pytest.raises(StorageError):
            build_object_key(1, "cat", file_name)


class TestS3Storage:
    @pytest.mark.asyncio
    async def test_uploads_and_returns_public_url(self) -> None:
        client = MagicMock()
        storage = S3Storage(_r2_settings(), client=client)

        artifact = await storage.store(b"png", 7, "background-removed", "1_nobg.png", "image/png")

        key = "images/background-removed/0/0/0/7/1_nobg.png"
        client.put_object.assert_called_once_with(
            Bucket="cutouts", Key=key, Body=b"png", ContentType="image/png"
        )
        assert artifact.url == f"https://cdn.example.com/{key}"
        assert artifact.path == key
        assert artifact.file_name == "1_nobg.png"

    @pytest.mark.asyncio
    async def test_traversal_owner_is_not_uploaded(self) -> None:
        client = MagicMock()
        with pytest.raises(StorageError):
            await S3Storage(_r2_settings(), client=client).store(b"png", "../x", "cat", "f.png", "image/png")
        client.put_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_presigned_url_without_public_base(self) -> None:
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://signed.example.com/x"
        storage = S3Storage(_r2_settings(r2_public_base_url=None), client=client)

        artifact = await storage.store(b"png", 7, "cat", "f.png", "image/png")

        assert artifact.url == "https://signed.example.com/x"
        _, kwargs = client.generate_presigned_url.call_args
        assert kwargs["ExpiresIn"] == 3600

    @pytest.mark.asyncio
    async def test_client_error_becomes_storage_error(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )
        with pytest.raises(StorageError):
            await S3Storage(_r2_settings(), client=client).store(b"png", 1, "cat", "f.png", "image/png")

    @pytest.mark.asyncio
    async def test_incomplete_configuration(self) -> None:
        with pytest.raises(StorageError, match="incomplete"):
            await S3Storage(Settings(r2_bucket_name="only-bucket")).store(b"png", 1, "cat", "f.png", "image/png")


class TestLocalStorage:
    @pytest.mark.asyncio
    async def test_writes_file(self, tmp_path: Path) -> None:
        storage = LocalStorage(tmp_path, base_url="/static")
        artifact = await storage.store(b"png-bytes", "u1", "cat", "f.png", "image/png")
        assert Path(artifact.path).read_bytes() == b"png-bytes"
        assert artifact.url == "/static/images/cat/0/0/0/u1/f.png"

    @pytest.mark.asyncio
    async def test_traversal_owner_writes_nothing(self, tmp_path: Path) -> None:
        root = tmp_path / "out"
        storage = LocalStorage(root)
        with pytest.raises(StorageError):
            await storage.store(b"x", "../../../../escaped", "background-removed", "f.png", "image/png")
        assert not (tmp_path / "escaped").exists()
        assert list(tmp_path.rglob("f.png")) == []

    @pytest.mark.asyncio
    async def test_unwritable_root(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_bytes(b"")
        with pytest.raises(StorageError):
            await LocalStorage(blocker).store(b"png", 1, "cat", "f.png", "image/png")


@pytest.mark.unit
class TestBuildStorage:
    def test_prefers_r2_when_configured(self) -> None:
        assert isinstance(build_storage(_r2_settings()), S3Storage)

    def test_falls_back_to_local(self, settings: Settings) -> None:
        assert isinstance(build_storage(settings), LocalStorage)

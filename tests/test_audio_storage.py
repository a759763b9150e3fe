"""Tests for audio_storage."""

from audio_storage import LocalAudioStore, R2AudioStore, episode_object_key, get_audio_store


class FakeS3:
    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = (Body, ContentType)


class TestLocalAudioStore:
    def test_saves_file_and_returns_uri(self, tmp_path):
        store = LocalAudioStore(tmp_path)
        url = store.save("episodes/u/e.mp3", b"abc")
        assert (tmp_path / "episodes/u/e.mp3").read_bytes() == b"abc"
        assert url.startswith("file://")

    def test_base_url(self, tmp_path):
        store = LocalAudioStore(tmp_path, base_url="https://cdn.example/")
        assert store.save("a.mp3", b"x") == "https://cdn.example/a.mp3"


class TestR2AudioStore:
    def test_put_object_with_content_type(self):
        client = FakeS3()
        store = R2AudioStore(client, "bucket", public_base_url="https://audio.example")

        url = store.save("episodes/u/e.mp3", b"abc", "audio/mpeg")

        assert client.objects[("bucket", "episodes/u/e.mp3")] == (b"abc", "audio/mpeg")
        assert url == "https://audio.example/episodes/u/e.mp3"


class TestGetAudioStore:
    def test_local_without_credentials(self, monkeypatch):
        for var in ("CF_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY"):
            monkeypatch.delenv(var, raising=False)
        assert isinstance(get_audio_store(), LocalAudioStore)

    def test_r2_with_credentials(self, monkeypatch):
        monkeypatch.setenv("CF_ACCOUNT_ID", "acct")
        monkeypatch.setenv("R2_ACCESS_KEY_ID", "key")
        monkeypatch.setenv("R2_SECRET_ACCESS_KEY", "secret")
        monkeypatch.setenv("R2_BUCKET_NAME", "episodes-test")

        store = get_audio_store()

        assert isinstance(store, R2AudioStore)
        assert store.bucket == "episodes-test"


def test_episode_object_key():
    assert episode_object_key("u1", "e1") == "episodes/u1/e1.mp3"
    assert episode_object_key("u1", "e1", "wav") == "episodes/u1/e1.wav"

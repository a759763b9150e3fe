"""
Episode audio object storage.

Cloudflare R2 (S3-compatible, via boto3) when credentials are configured,
otherwise a local directory. Both return the URL the episode row stores.
"""

import os
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent
DEFAULT_LOCAL_DIR = SCRIPT_DIR / "episodes"


def _get_r2_client():
    """Return (boto3 S3 client, bucket name) or (None, None) if credentials missing."""
    account_id = os.environ.get("CF_ACCOUNT_ID")
    access_key = os.environ.get("R2_ACCESS_KEY_ID")
    secret_key = os.environ.get("R2_SECRET_ACCESS_KEY")

    if not all([account_id, access_key, secret_key]):
        return None, None

    import boto3
    r2 = boto3.client(
        "s3",
        endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name="auto",
    )
    bucket = os.environ.get("R2_BUCKET_NAME", "briefcast-episodes")
    return r2, bucket


def episode_object_key(user_id, episode_id, extension="mp3"):
    return f"episodes/{user_id}/{episode_id}.{extension}"


class LocalAudioStore:
    """Writes episode audio under a local directory."""

    def __init__(self, base_dir=None, base_url=None):
        self.base_dir = Path(base_dir or os.getenv("BRIEFCAST_AUDIO_DIR") or DEFAULT_LOCAL_DIR)
        self.base_url = base_url

    def save(self, key, data, content_type="audio/mpeg"):
        path = self.base_dir / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        print(f"   💾 Saved {key} ({len(data) / 1024:.0f} KB)")
        if self.base_url:
            return f"{self.base_url.rstrip('/')}/{key}"
        return path.resolve().as_uri()


class R2AudioStore:
    """Uploads episode audio to an R2 bucket served from a public base URL."""

    def __init__(self, client, bucket, public_base_url=None):
        self.client = client
        self.bucket = bucket
        self.public_base_url = public_base_url or os.getenv("R2_PUBLIC_URL", "")

    def save(self, key, data, content_type="audio/mpeg"):
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        print(f"   ☁️  Uploaded {key} ({content_type})")
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        return f"r2://{self.bucket}/{key}"


def get_audio_store():
    """R2 when configured, local directory otherwise."""
    r2, bucket = _get_r2_client()
    if r2 is None:
        print("   ⏭️  R2 credentials not configured, storing audio locally")
        return LocalAudioStore()
    return R2AudioStore(r2, bucket)

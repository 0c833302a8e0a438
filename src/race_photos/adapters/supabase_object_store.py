"""Supabase Storage adapter for photo renditions."""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
from supabase import Client

from race_photos.services.renditions import ObjectStore

_SIGNED_URL_TTL_SECONDS = 60


@dataclass
class SupabaseObjectStore(ObjectStore):
    """Object store backed by a Supabase Storage bucket."""

    client: Client
    bucket: str
    http_client: httpx.AsyncClient

    @classmethod
    def create(cls, client: Client, bucket: str) -> "SupabaseObjectStore":
        """Create a store with a managed httpx session for streaming reads."""
        return cls(client=client, bucket=bucket, http_client=httpx.AsyncClient())

    async def put(self, data: bytes, key: str, content_type: str) -> None:
        """Upload bytes, overwriting any existing object."""
        await asyncio.to_thread(
            self._bucket().upload,
            key,
            data,
            {"content-type": content_type, "upsert": "true"},
        )

    async def get(self, key: str) -> AsyncIterator[bytes]:
        """Stream an object through a short-lived signed URL."""
        signed = await asyncio.to_thread(
            self._bucket().create_signed_url, key, _SIGNED_URL_TTL_SECONDS
        )
        url = signed.get("signedURL") or signed.get("signedUrl")
        if not url:
            raise RuntimeError(f"Failed to sign storage key {key}")
        async with self.http_client.stream("GET", url, timeout=30) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes():
                yield chunk

    async def get_buffer(self, key: str) -> bytes:
        """Download a whole object."""
        return await asyncio.to_thread(self._bucket().download, key)

    async def delete_many(self, keys: list[str]) -> None:
        """Delete objects in a single request."""
        if not keys:
            return
        await asyncio.to_thread(self._bucket().remove, keys)

    async def close(self) -> None:
        """Close the underlying HTTP client session."""
        await self.http_client.aclose()

    def _bucket(self):  # type: ignore[no-untyped-def]
        return self.client.storage.from_(self.bucket)

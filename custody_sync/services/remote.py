"""
Client for the remote evidence platform

Only the three writes the sync engine replays (create bag, append custody
entry, upload photo) plus the display-id RPC are covered here.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from ..core.config import settings
from ..core.errors import RemoteWriteError

logger = logging.getLogger(__name__)

PHOTO_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
    "video/webm": "webm",
}


class RemoteEvidenceApi(ABC):
    """Remote writes replayed by the sync engine"""

    @abstractmethod
    async def create_evidence_bag(
        self,
        payload: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """Create an evidence bag; returns the server record including its id"""

    @abstractmethod
    async def add_custody_entry(
        self,
        payload: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """Append a chain-of-custody entry"""

    @abstractmethod
    async def upload_photo(
        self,
        bag_id: str,
        content: bytes,
        content_type: str,
        notes: Optional[str] = None,
        file_hash: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """Store the binary, then insert its metadata row; both must succeed"""


class HttpEvidenceApi(RemoteEvidenceApi):
    """RemoteEvidenceApi over the platform's REST, RPC and storage endpoints"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        bucket: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.REMOTE_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.REMOTE_API_KEY
        self.access_token = access_token if access_token is not None else settings.REMOTE_ACCESS_TOKEN
        self.bucket = bucket or settings.REMOTE_PHOTO_BUCKET
        self.timeout = timeout or settings.REMOTE_CALL_TIMEOUT_SECONDS
        self.transport = transport

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        idempotency_key: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        **kwargs,
    ) -> httpx.Response:
        """Send a request, converting HTTP and transport failures to RemoteWriteError"""
        merged = {**self._headers(idempotency_key), **(headers or {})}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                resp = await client.request(method, path, headers=merged, **kwargs)
                resp.raise_for_status()
                return resp
        except httpx.HTTPStatusError as e:
            code = None
            message = e.response.text
            try:
                body = e.response.json()
                if isinstance(body, dict):
                    code = body.get("code")
                    message = body.get("message") or body.get("detail") or message
            except ValueError:
                pass
            raise RemoteWriteError(
                f"{method} {path} failed with {e.response.status_code}: {message}",
                status_code=e.response.status_code,
                code=code,
            ) from e
        except httpx.HTTPError as e:
            raise RemoteWriteError(f"{method} {path} failed: {e.__class__.__name__}: {e}") from e

    @staticmethod
    def _single(resp: httpx.Response) -> dict[str, Any]:
        """Inserts return a one-element list of the created row"""
        body = resp.json()
        if isinstance(body, list):
            if not body:
                raise RemoteWriteError("Insert returned no rows")
            return body[0]
        return body

    async def generate_bag_id(self) -> str:
        """Ask the platform for the next display bag id"""
        resp = await self._request("POST", "/rest/v1/rpc/generate_bag_id", json={})
        return str(resp.json())

    async def create_evidence_bag(
        self,
        payload: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        bag = dict(payload)
        if not bag.get("bag_id"):
            bag["bag_id"] = await self.generate_bag_id()
        if not bag.get("qr_data"):
            bag["qr_data"] = f"{settings.APP_ORIGIN.rstrip('/')}/bag/{bag['bag_id']}"

        resp = await self._request(
            "POST",
            "/rest/v1/evidence_bags",
            idempotency_key=idempotency_key,
            headers={"Prefer": "return=representation"},
            json=bag,
        )
        return self._single(resp)

    async def add_custody_entry(
        self,
        payload: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        resp = await self._request(
            "POST",
            "/rest/v1/chain_of_custody_log",
            idempotency_key=idempotency_key,
            headers={"Prefer": "return=representation"},
            json=payload,
        )
        return self._single(resp)

    async def upload_photo(
        self,
        bag_id: str,
        content: bytes,
        content_type: str,
        notes: Optional[str] = None,
        file_hash: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        # Object name derives from the idempotency key so a retried upload overwrites itself
        ext = PHOTO_EXTENSIONS.get(content_type, "bin")
        object_name = idempotency_key or f"photo-{file_hash or len(content)}"
        photo_path = f"{bag_id}/{object_name}.{ext}"

        await self._request(
            "POST",
            f"/storage/v1/object/{self.bucket}/{photo_path}",
            headers={"Content-Type": content_type, "x-upsert": "true"},
            content=content,
        )

        resp = await self._request(
            "POST",
            "/rest/v1/evidence_photos",
            idempotency_key=idempotency_key,
            headers={"Prefer": "return=representation"},
            json={
                "bag_id": bag_id,
                "photo_url": photo_path,
                "file_hash": file_hash,
                "file_size": len(content),
                "notes": notes,
            },
        )
        logger.debug(f"Uploaded photo {photo_path} ({len(content)} bytes)")
        return self._single(resp)


# Singleton instance
remote_api = HttpEvidenceApi()

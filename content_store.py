import json
import logging
import time
from typing import Any, Dict, Optional, Union

import requests

from errors import ContentStoreUnavailable

logger = logging.getLogger(__name__)


class ContentStoreClient:
    """IPFS-style content-addressed store: ``POST {upload}/add``, ``GET {gateway}/ipfs/<hash>``."""

    def __init__(self, upload_url: str, gateway_url: str, timeout: float = 15.0,
                 session: Optional[requests.Session] = None):
        self.upload_url = upload_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def put(self, payload: Union[bytes, str], content_type: str = "application/octet-stream",
            filename: Optional[str] = None) -> str:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        filename = filename or f"data-{int(time.time() * 1000)}"
        try:
            resp = self.session.post(
                f"{self.upload_url}/add",
                files={"file": (filename, payload, content_type)},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ContentStoreUnavailable(f"upload failed: {exc}") from exc
        if not resp.ok:
            raise ContentStoreUnavailable(f"upload failed: HTTP {resp.status_code} {resp.text[:100]}")
        try:
            address = resp.json().get("Hash")
        except ValueError as exc:
            raise ContentStoreUnavailable("upload returned a non-JSON body") from exc
        if not address:
            raise ContentStoreUnavailable("upload returned no content address")
        logger.info("stored %d bytes as %s", len(payload), address)
        return address

    def put_json(self, obj: Dict[str, Any]) -> str:
        return self.put(json.dumps(obj), "application/json",
                        filename=f"data-{int(time.time() * 1000)}.json")

    def get(self, address: str) -> bytes:
        """Fetch raw content. Empty bytes means the content is unavailable."""
        if not address:
            logger.warning("content fetch called without an address")
            return b""
        url = f"{self.gateway_url}/ipfs/{address}"
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("content fetch %s failed: %s", url, exc)
            return b""
        if not resp.ok:
            logger.warning("content fetch %s returned HTTP %s", url, resp.status_code)
            return b""
        return resp.content

    def get_json(self, address: str) -> Dict[str, Any]:
        raw = self.get(address)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("content %s is not JSON", address)
            return {}
        return data if isinstance(data, dict) else {}

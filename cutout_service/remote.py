"""
Client for the metered remove.bg API.

One request per call, no retries. Success returns the PNG cut-out exactly as
the service sent it.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from .errors import RemoteServiceError, RemoteUnavailableError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5
MAX_ERROR_BODY = 2000


class RemoteBackgroundRemover:
    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        timeout_seconds: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def remove(self, jpeg_bytes: bytes) -> bytes:
        """
        Upload a JPEG and return the service's PNG-with-alpha response body.

        Raises:
            RemoteServiceError: non-2xx response (or no API key configured).
            RemoteUnavailableError: connection failure or timeout.
        """
        if not self.api_key:
            raise RemoteServiceError(401, "REMOVE_BG_API_KEY is not configured")

        try:
            resp = self.session.post(
                self.api_url,
                files={"image_file": ("image.jpg", jpeg_bytes, "image/jpeg")},
                data={"size": "auto"},
                headers={"X-Api-Key": self.api_key},
                timeout=(CONNECT_TIMEOUT_SECONDS, self.timeout_seconds),
            )
        except requests.RequestException as exc:
            raise RemoteUnavailableError(f"Remote service unreachable: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            body = resp.text[:MAX_ERROR_BODY]
            logger.warning("remote: HTTP %s from %s: %s", resp.status_code, self.api_url, body)
            raise RemoteServiceError(resp.status_code, body)

        logger.info("remote: received %d bytes from %s", len(resp.content), self.api_url)
        return resp.content

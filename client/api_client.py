import logging
from typing import Any
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config.settings import DEFAULT_WORKER_URL, REQUEST_TIMEOUT_SECONDS
from engine.errors import SubmissionRejected, WorkerUnavailable

logger = logging.getLogger(__name__)

# Probes should fail fast so the connection monitor sees outages promptly.
PING_TIMEOUT_SECONDS = 3


class WorkerClient:
    """Thin JSON client for the worker's control API."""

    def __init__(self, base_url: str | None = None, *, timeout: float = REQUEST_TIMEOUT_SECONDS, session=None) -> None:
        self.base_url = (base_url or DEFAULT_WORKER_URL).rstrip("/") + "/"
        self.timeout_seconds = timeout
        self._session = session or requests.Session()
        if session is None:
            retry = Retry(
                total=2,
                backoff_factor=0.2,
                status_forcelist=(502, 503, 504),
                allowed_methods=frozenset({"GET"}),
            )
            adapter = HTTPAdapter(max_retries=retry)
            self._session.mount("https://", adapter)
            self._session.mount("http://", adapter)

    def _url(self, endpoint: str) -> str:
        return urljoin(self.base_url, endpoint.lstrip("/"))

    def _request(self, method: str, endpoint: str, *, json=None, timeout=None) -> Any:
        url = self._url(endpoint)
        try:
            resp = self._session.request(
                method,
                url,
                json=json,
                timeout=timeout or self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.debug(f"[WORKER] request={endpoint} status=error error={exc}")
            raise WorkerUnavailable(f"Host not reachable: {exc}") from exc
        status = int(resp.status_code)
        logger.debug(f"[WORKER] request={endpoint} status={status}")
        if status < 200 or status >= 300:
            raise WorkerUnavailable(f"{endpoint} returned HTTP {status}")
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise WorkerUnavailable(f"{endpoint} returned invalid JSON") from exc

    def ping(self) -> dict:
        payload = self._request("GET", "/api/ping", timeout=PING_TIMEOUT_SECONDS)
        if not isinstance(payload, dict) or not payload.get("ok"):
            raise WorkerUnavailable("ping not acknowledged")
        return payload

    def is_alive(self) -> bool:
        try:
            self.ping()
        except WorkerUnavailable:
            return False
        return True

    def downloads(self) -> dict[str, dict]:
        payload = self._request("GET", "/api/downloads")
        if not isinstance(payload, dict):
            raise WorkerUnavailable("downloads snapshot is not an object")
        return payload

    def submit(self, item_id: str, auth_context: str | None = None) -> dict:
        try:
            payload = self._request(
                "POST",
                "/api/download",
                json={"id": item_id, "authContext": auth_context},
            )
        except WorkerUnavailable as exc:
            raise SubmissionRejected(exc.message) from exc
        if not isinstance(payload, dict) or not payload.get("ok"):
            raise SubmissionRejected("submission not acknowledged")
        return payload

    def cancel(self, item_id: str) -> bool:
        payload = self._request("POST", "/api/cancel", json={"id": item_id})
        return bool(payload.get("cancelled")) if isinstance(payload, dict) else False

    def ack(self, item_id: str) -> bool:
        payload = self._request("POST", "/api/ack", json={"id": item_id})
        return bool(payload.get("ok")) if isinstance(payload, dict) else False

    def delete_files(self, file_path: str | None, thumbnail_path: str | None) -> list[str]:
        payload = self._request(
            "POST",
            "/api/delete-files",
            json={"filePath": file_path, "thumbnailPath": thumbnail_path},
        )
        deleted = payload.get("deleted") if isinstance(payload, dict) else None
        return list(deleted or [])

    def disk_usage(self) -> int:
        payload = self._request("GET", "/api/disk-usage")
        try:
            return int(payload.get("totalBytes") or 0)
        except (AttributeError, TypeError, ValueError):
            return 0

    def media_url(self, rel_path: str) -> str:
        return self._url(f"/media/{rel_path.lstrip('/')}")

    def close(self) -> None:
        self._session.close()

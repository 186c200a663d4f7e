"""HTTP client for the photo-search service daemon.

Auto-launches the service if it's not running.
"""

import json
import logging
import subprocess
import sys
import time
from pathlib import Path

import httpx

from config import (
    DEFAULT_LIMIT,
    DEFAULT_THRESHOLD,
    SERVICE_HOST,
    SERVICE_PORT,
    SERVICE_STARTUP_TIMEOUT,
)

logger = logging.getLogger(__name__)


class ServiceError(RuntimeError):
    """The service answered with an error (loading, or search unavailable)."""


class ServiceClient:
    def __init__(self, base_url: str | None = None, http: httpx.Client | None = None):
        self._base_url = base_url or f"http://{SERVICE_HOST}:{SERVICE_PORT}"
        self._http = http or httpx.Client(base_url=self._base_url, timeout=600)

    def _is_alive(self) -> bool:
        try:
            resp = self._http.get("/health", timeout=2)
            return resp.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    def _ensure_service(self) -> None:
        if self._is_alive():
            return

        logger.info("Service not running, launching...")
        service_script = Path(__file__).resolve().parent / "service.py"
        subprocess.Popen(
            [sys.executable, str(service_script)],
            cwd=str(service_script.parent),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

        deadline = time.time() + SERVICE_STARTUP_TIMEOUT
        while time.time() < deadline:
            time.sleep(0.5)
            if self._is_alive():
                logger.info("Service is ready")
                return

        raise RuntimeError(
            f"Service did not start within {SERVICE_STARTUP_TIMEOUT}s"
        )

    @staticmethod
    def _check(resp: httpx.Response) -> httpx.Response:
        if resp.status_code == 503:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if body.get("loading"):
                raise ServiceError("Service is loading, try again shortly.")
            raise ServiceError(body.get("error") or resp.text)
        resp.raise_for_status()
        return resp

    def _post(self, path: str, json: dict | None = None) -> httpx.Response:
        self._ensure_service()
        return self._check(self._http.post(path, json=json or {}))

    def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        self._ensure_service()
        return self._check(self._http.get(path, params=params))

    # -- tool methods --

    def search(self, query: str, limit: int = DEFAULT_LIMIT, threshold: float = DEFAULT_THRESHOLD) -> dict:
        body = {"query": query, "limit": limit, "threshold": threshold}
        return self._post("/search", body).json()

    def index(self) -> dict:
        return self._post("/index").json()

    def index_stream(self):
        """Yield progress dicts from the SSE indexing endpoint."""
        self._ensure_service()
        with self._http.stream("POST", "/index-stream", json={}) as resp:
            if resp.status_code != 200:
                resp.read()
            self._check(resp)
            for line in resp.iter_lines():
                if line.startswith("data: "):
                    yield json.loads(line[len("data: "):])

    def cancel(self) -> dict:
        return self._post("/cancel").json()

    def stats(self) -> dict:
        return self._get("/stats").json()

    def status(self) -> dict:
        return self._get("/status").json()

    def prune(self) -> dict:
        return self._post("/prune").json()

    def delete(self, item_id: str) -> dict:
        return self._post("/delete", {"id": item_id}).json()

    def add_folder(self, path: str) -> str:
        return self._post("/add-folder", {"path": path}).text

    def remove_folder(self, path: str) -> str:
        return self._post("/remove-folder", {"path": path}).text

    def list_folders(self) -> list[str]:
        return self._get("/folders").json()

    def health(self) -> bool:
        return self._is_alive()

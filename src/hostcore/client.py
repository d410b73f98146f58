"""Client for the hostcore HTTP API."""

from pathlib import Path
from typing import Any, Optional

import httpx


class HostcoreClientError(Exception):
    """Non-2xx response from the API."""

    def __init__(self, message: str, status_code: int, kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.kind = kind


class HostcoreClient:
    """Client for interacting with a hostcore server."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:5000",
        token: Optional[str] = None,
        caller_id: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {}
        if token:
            headers["X-Hostcore-Token"] = token
        if caller_id:
            headers["X-Caller-Id"] = caller_id
        self._client = httpx.Client(
            base_url=self.base_url, timeout=timeout, headers=headers, transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self._client.close()

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._client.request(method, path, **kwargs)
        if response.is_success:
            return response.json()
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("error") or body.get("detail") or response.text or response.reason_phrase
        raise HostcoreClientError(str(message), response.status_code, body.get("kind"))

    def health(self) -> bool:
        """Check if the server is reachable."""
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def check_name(self, name: str) -> dict:
        return self._request("GET", f"/api/check-name/{name}")

    def deploy_git(self, repo_url: str, app_name: str) -> dict:
        return self._request("POST", "/api/deploy/git", json={"repo_url": repo_url, "app_name": app_name})

    def deploy_archive(self, archive_path: Path, app_name: str) -> dict:
        archive_path = Path(archive_path)
        with open(archive_path, "rb") as f:
            return self._request(
                "POST",
                "/api/deploy/archive",
                files={"archive": (archive_path.name, f, "application/octet-stream")},
                data={"app_name": app_name},
            )

    def list_apps(self) -> list[dict]:
        return self._request("GET", "/api/apps")["apps"]

    def get_app(self, name: str) -> dict:
        return self._request("GET", f"/api/apps/{name}")["app"]

    def start(self, name: str) -> dict:
        return self._request("POST", f"/api/apps/{name}/start")

    def stop(self, name: str) -> dict:
        return self._request("POST", f"/api/apps/{name}/stop")

    def restart(self, name: str) -> dict:
        return self._request("POST", f"/api/apps/{name}/restart")

    def status(self, name: str) -> dict:
        return self._request("GET", f"/api/apps/{name}/status")

    def delete(self, name: str) -> dict:
        return self._request("DELETE", f"/api/apps/{name}")

    def logs(self, name: str, stream: str = "out", lines: int = 100) -> str:
        return self._request("GET", f"/api/apps/{name}/logs", params={"type": stream, "lines": lines})["logs"]

    def route(self, name: str) -> str:
        return self._request("GET", f"/api/apps/{name}/route")["config"]

    def ports(self) -> dict:
        return self._request("GET", "/api/ports")

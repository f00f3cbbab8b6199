"""HTTP client for the remote scene/reconstruction API."""

import asyncio
import json
import logging
import mimetypes
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp

from .errors import RemoteError, TransientError
from .models import ReadinessInfo, Scene
from .utils.auth import AuthManager

logger = logging.getLogger(__name__)

PIPELINE_ENDPOINTS = {
    "pipeline": "/pipeline/run/{scene_id}",
    "reconstruction": "/reconstruction/run/{scene_id}",
}


class SceneClient:
    """Thin authenticated wrapper around the remote job API.

    Every response follows the ``{success, message, data}`` envelope. Non-2xx
    answers and unsuccessful envelopes raise RemoteError; requests that never
    get an answer raise TransientError. No orchestration happens here.
    """

    def __init__(self, config: Dict[str, Any], auth: Optional[AuthManager] = None):
        self.config = config
        api_url = config.get("api_url", "http://localhost:5000").rstrip("/")
        api_version = config.get("api_version", "v1")
        self.base_url = f"{api_url}/{api_version}" if api_version else api_url
        self.auth = auth

        self.request_timeout = float(config.get("request_timeout", 30))
        self.upload_timeout = float(config.get("upload_timeout", 600))

        endpoint = config.get("pipeline_endpoint", "pipeline")
        if endpoint not in PIPELINE_ENDPOINTS:
            raise ValueError(
                f"Unknown pipeline_endpoint {endpoint!r}; "
                f"expected one of {', '.join(PIPELINE_ENDPOINTS)}"
            )
        self.pipeline_path = PIPELINE_ENDPOINTS[endpoint]

    async def create_job(self, name: str, description: Optional[str] = None) -> Scene:
        """POST /scenes"""
        body = {"name": name}
        if description:
            body["description"] = description
        data = await self._request("POST", "/scenes", json_body=body)
        return self._parse("/scenes", Scene.from_dict, data)

    async def list_jobs(self, owner_scope: str = "user") -> List[Scene]:
        """GET /scenes/{owner_scope}"""
        endpoint = f"/scenes/{owner_scope}"
        data = await self._request("GET", endpoint)
        return self._parse(endpoint, lambda items: [Scene.from_dict(s) for s in items], data)

    async def get_job_status(self, scene_id: str) -> Scene:
        """GET /scenes/detail/{id}; read-only, safe to call during a running job."""
        endpoint = f"/scenes/detail/{scene_id}"
        data = await self._request("GET", endpoint)
        return self._parse(endpoint, Scene.from_dict, data)

    async def upload_images(self, scene_id: str, files: Sequence[Path]) -> Scene:
        """POST /image/upload-multiple as multipart form data.

        Files are streamed from open handles, which aiohttp reads off the
        event loop; every handle is closed once the request finishes.
        """
        form = aiohttp.FormData()
        form.add_field("sceneId", scene_id)
        handles = []
        try:
            for path in files:
                path = Path(path)
                content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
                handle = open(path, "rb")
                handles.append(handle)
                form.add_field("files", handle, filename=path.name, content_type=content_type)

            endpoint = "/image/upload-multiple"
            data = await self._request("POST", endpoint, form=form, timeout=self.upload_timeout)
        finally:
            for handle in handles:
                handle.close()
        return self._parse(endpoint, Scene.from_dict, data)

    async def start_reconstruction(self, scene_id: str) -> Dict[str, Any]:
        """Trigger the background pipeline; the acknowledgement says nothing about completion."""
        endpoint = self.pipeline_path.format(scene_id=scene_id)
        data = await self._request("POST", endpoint, json_body={})
        return data if isinstance(data, dict) else {}

    async def check_readiness(self, scene_id: str) -> ReadinessInfo:
        """GET /scenes/{id}/check"""
        endpoint = f"/scenes/{scene_id}/check"
        data = await self._request("GET", endpoint)
        return self._parse(endpoint, ReadinessInfo.from_dict, data)

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[Dict[str, Any]] = None,
        form: Optional[aiohttp.FormData] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Issue one request and unwrap the response envelope."""
        url = f"{self.base_url}{endpoint}"
        headers = self.auth.auth_headers() if self.auth else {}
        kwargs: Dict[str, Any] = {"headers": headers}

        # multipart bodies set their own content type with the boundary
        if form is not None:
            kwargs["data"] = form
        else:
            headers["Content-Type"] = "application/json"
            if json_body is not None:
                kwargs["data"] = json.dumps(json_body)

        client_timeout = aiohttp.ClientTimeout(total=timeout or self.request_timeout)
        logger.debug(f"{method} {url}")

        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.request(method, url, **kwargs) as response:
                    body = await self._read_json(response)

                    if not 200 <= response.status < 300:
                        message = "Request failed"
                        if isinstance(body, dict) and body.get("message"):
                            message = body["message"]
                        raise RemoteError(message, status=response.status, data=body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"Network error: {str(e) or type(e).__name__}") from e

        if not isinstance(body, dict):
            raise RemoteError(f"Malformed response from {endpoint}", status=response.status)
        if not body.get("success", False):
            raise RemoteError(
                body.get("message") or f"Request to {endpoint} was not successful",
                status=response.status,
                data=body,
            )
        return body.get("data")

    @staticmethod
    async def _read_json(response) -> Any:
        try:
            return await response.json(content_type=None)
        except ValueError:
            return None

    @staticmethod
    def _parse(endpoint: str, parser: Callable[[Any], Any], data: Any) -> Any:
        if data is None:
            raise RemoteError(f"Empty response from {endpoint}")
        try:
            return parser(data)
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteError(f"Malformed response from {endpoint}: {e}") from e

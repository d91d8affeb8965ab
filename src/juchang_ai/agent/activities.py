"""
HTTP client for the platform's activity service.

Activities (drafts, publishing, joining, nearby search) are owned by the
platform API; the assistant's activity tools go through this client.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from juchang_ai.config import settings
from juchang_ai.exceptions import ToolError

logger = logging.getLogger(__name__)


@dataclass
class ActivityClientConfig:
    """Configuration for the activity client."""

    base_url: str
    api_key: str = ""
    timeout: float = 10.0
    max_retries: int = 3


class ActivityClient:
    """
    Thin JSON client with retry on network and 5xx errors.

    Client errors (4xx) are surfaced as ToolError carrying the service's
    message so the model can explain them to the user.
    """

    def __init__(
        self,
        config: ActivityClientConfig,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = httpx.Client(
            base_url=config.base_url,
            headers=headers,
            timeout=config.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ActivityClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def search_nearby(
        self,
        lat: float,
        lng: float,
        activity_type: Optional[str] = None,
        query: Optional[str] = None,
        radius_km: float = 5.0,
    ) -> list[dict]:
        params: dict[str, Any] = {"lat": lat, "lng": lng, "radius": radius_km}
        if activity_type:
            params["type"] = activity_type
        if query:
            params["q"] = query
        data = self._request("GET", "/activities/nearby", params=params)
        return list(data.get("activities", []))

    def get_detail(self, activity_id: str) -> dict:
        return self._request("GET", f"/activities/{activity_id}")

    def create_draft(self, user_id: str, draft: dict) -> dict:
        return self._request("POST", "/activities/drafts", json={"userId": user_id, **draft})

    def refine_draft(self, activity_id: str, changes: dict) -> dict:
        return self._request("PATCH", f"/activities/drafts/{activity_id}", json=changes)

    def publish(self, user_id: str, activity_id: str) -> dict:
        return self._request(
            "POST", f"/activities/{activity_id}/publish", json={"userId": user_id}
        )

    def join(self, user_id: str, activity_id: str) -> dict:
        return self._request(
            "POST", f"/activities/{activity_id}/join", json={"userId": user_id}
        )

    def list_mine(self, user_id: str) -> list[dict]:
        data = self._request("GET", "/activities/mine", params={"userId": user_id})
        return list(data.get("activities", []))

    def cancel(self, user_id: str, activity_id: str) -> dict:
        return self._request(
            "POST", f"/activities/{activity_id}/cancel", json={"userId": user_id}
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        """Send a request with exponential backoff retry."""
        last_error: Optional[Exception] = None

        for attempt in range(self.config.max_retries):
            try:
                response = self._client.request(method, path, **kwargs)
            except httpx.RequestError as e:
                last_error = e
                wait_time = 0.5 * 2**attempt
                logger.warning(f"Activity service network error: {e}, retrying in {wait_time}s")
                time.sleep(wait_time)
                continue

            if response.status_code >= 500:
                last_error = httpx.HTTPStatusError(
                    f"Server error {response.status_code}",
                    request=response.request,
                    response=response,
                )
                wait_time = 0.5 * 2**attempt
                logger.warning(
                    f"Activity service error {response.status_code}, retrying in {wait_time}s"
                )
                time.sleep(wait_time)
                continue

            if response.status_code >= 400:
                try:
                    message = response.json().get("message") or response.text
                except ValueError:
                    message = response.text
                raise ToolError(message or f"活动服务返回 {response.status_code}")

            return response.json() if response.content else {}

        raise ToolError(f"活动服务暂时不可用: {last_error}")


def get_activity_client() -> Optional[ActivityClient]:
    """Client from settings, or None when no activity service is configured."""
    if not settings.activity_api_url:
        return None
    return ActivityClient(
        ActivityClientConfig(
            base_url=settings.activity_api_url,
            api_key=settings.activity_api_key,
            timeout=settings.activity_api_timeout,
            max_retries=settings.activity_api_max_retries,
        )
    )

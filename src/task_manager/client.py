"""HTTP client for the task manager control-plane API.

Used by session starters to declare tasks and by the CLI.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

ADMIN_API_KEY_HEADER = "X-ADMIN-API-KEY"


class TaskManagerError(Exception):
    """Raised when a task manager API call fails."""

    def __init__(self, message: str, status_code: int = 0, detail: str = ""):
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class TaskManagerClient:
    """HTTP client for the task manager API.

    All methods are async and raise TaskManagerError on failure.
    """

    def __init__(self, base_url: str, admin_api_key: str = ""):
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if admin_api_key:
            headers[ADMIN_API_KEY_HEADER] = admin_api_key

        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(30.0),
        )

    # --- Tasks ---

    async def create_task(
        self,
        title: str,
        agent_id: str,
        owner_id: str,
        configuration: dict[str, Any],
        *,
        action: str = "start",
        description: str = "",
    ) -> dict[str, Any]:
        """Create a task, or update the one with the same title.

        POST /client-twitter/tasks

        Raises:
            TaskManagerError: 400 if no worker holds a session for the title.
        """
        return await self._request(
            "POST",
            "/client-twitter/tasks",
            json={
                "title": title,
                "agent_id": agent_id,
                "owner_id": owner_id,
                "action": action,
                "description": description,
                "configuration": configuration,
            },
        )

    async def stop_task(self, title: str) -> dict[str, Any]:
        """POST /client-twitter/tasks/{title}/stop"""
        return await self._request("POST", f"/client-twitter/tasks/{title}/stop")

    async def stop_agent(self, agent_id: str) -> dict[str, Any]:
        """POST /client-twitter/tasks/agent/{agent_id}/stop"""
        return await self._request("POST", f"/client-twitter/tasks/agent/{agent_id}/stop")

    async def update_task(self, task_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Update a task and clear its start-failure flag.

        PUT /client-twitter/tasks/{task_id}
        """
        return await self._request("PUT", f"/client-twitter/tasks/{task_id}", json=data)

    async def get_task_status(self, title: str) -> dict[str, Any]:
        """GET /client-twitter/tasks/{title}/status"""
        return await self._request("GET", f"/client-twitter/tasks/{title}/status")

    async def report_suspended(self, twitter_username: str) -> list[dict[str, Any]]:
        """POST /client-twitter/tasks/{twitter_username}/report/suspended"""
        return await self._request(
            "POST", f"/client-twitter/tasks/{twitter_username}/report/suspended"
        )

    async def report_error(self, twitter_username: str, agent_id: str, message: str) -> dict[str, Any]:
        """POST /client-twitter/tasks/{twitter_username}/report/error"""
        return await self._request(
            "POST",
            f"/client-twitter/tasks/{twitter_username}/report/error",
            json={"agent_id": agent_id, "message": message},
        )

    # --- Settings ---

    async def add_http_proxies(self, proxies: list[dict[str, Any]]) -> int:
        """Add proxies to the pool. Returns how many were new.

        POST /client-twitter/task-settings
        """
        return await self._request("POST", "/client-twitter/task-settings", json=proxies)

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    # --- Lifecycle ---

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # --- Internal ---

    async def _request(
        self,
        method: str,
        url: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make a request to the task manager.

        Raises:
            TaskManagerError: On HTTP errors or connection failures.
        """
        try:
            response = await self._client.request(method, url, json=json, params=params)

            if response.status_code >= 400:
                detail = ""
                try:
                    body = response.json()
                    detail = body.get("detail", str(body))
                except Exception:
                    detail = response.text[:200]

                raise TaskManagerError(
                    f"{method} {url} returned {response.status_code}: {detail}",
                    status_code=response.status_code,
                    detail=detail,
                )

            if not response.content:
                return {}

            return response.json()

        except httpx.ConnectError as e:
            raise TaskManagerError(f"Cannot connect to task manager: {e}", detail=str(e)) from e
        except httpx.TimeoutException as e:
            raise TaskManagerError(f"Request timed out: {method} {url}", detail=str(e)) from e
        except TaskManagerError:
            raise
        except Exception as e:
            raise TaskManagerError(f"Unexpected error: {e}", detail=str(e)) from e

"""
Task store access for the reconciler and board controller.

TaskApiClient talks to the JSON API over HTTP. AsyncTaskGateway wraps any
blocking backend with the TaskStore call shape (the SQLite store itself or
the HTTP client) so persistence calls never block the event loop.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from .errors import NotFoundError, TransientStoreError, ValidationError
from .schema import Task

logger = logging.getLogger(__name__)


class TaskApiClient:
    """Blocking HTTP client for the task endpoints."""

    def __init__(self, base_url: str, user_id: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.timeout = timeout
        self.http = session or requests.Session()

    def list_tasks(self, session_id: Optional[str] = None, status: Optional[str] = None) -> List[Task]:
        params = {}
        if session_id:
            params["sessionId"] = session_id
        if status:
            params["status"] = status
        data = self._request("GET", "/api/tasks", params=params)
        return [Task.from_dict(t) for t in data.get("tasks", [])]

    def create_tasks(self, tasks: List[Dict[str, Any]]) -> List[Task]:
        data = self._request("POST", "/api/tasks", json={"tasks": tasks})
        return [Task.from_dict(t) for t in data.get("tasks", [])]

    def patch_task(self, task_id: str, fields: Dict[str, Any], user_id: Optional[str] = None) -> Task:
        data = self._request("PATCH", f"/api/tasks/{task_id}", json=fields, user_id=user_id)
        return Task.from_dict(data["task"])

    def delete_task(self, task_id: str) -> None:
        self._request("DELETE", f"/api/tasks/{task_id}")

    def _request(self, method: str, path: str, user_id: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        headers = {"X-User-Id": user_id or self.user_id}
        try:
            r = self.http.request(method, self.base_url + path, headers=headers, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientStoreError(f"{method} {path}: {e}") from e

        if r.ok:
            try:
                return r.json()
            except ValueError as e:
                raise TransientStoreError(f"{method} {path}: invalid JSON in response") from e

        try:
            message = r.json().get("error", r.reason)
        except ValueError:
            message = r.text or r.reason
        if r.status_code == 404:
            raise NotFoundError(message)
        if r.status_code in (400, 409, 422):
            raise ValidationError(message)
        # 5xx, 429 and anything unexpected are worth another try
        raise TransientStoreError(f"{method} {path} → {r.status_code}: {message}")


class AsyncTaskGateway:
    """Runs a blocking task backend in a worker thread."""

    def __init__(self, backend, user_id: Optional[str] = None):
        self.backend = backend
        self.user_id = user_id

    async def patch_task(self, task_id: str, fields: Dict[str, Any]) -> Task:
        return await asyncio.to_thread(self.backend.patch_task, task_id, fields, self.user_id)

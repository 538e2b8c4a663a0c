"""Task store API client (OAuth 2.0 client-credentials)."""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from ...core.task import Comment, Task

logger = logging.getLogger(__name__)

# Refresh this many seconds before the server-declared expiry.
TOKEN_EXPIRY_MARGIN = 300


class TaskStoreError(Exception):
    """Task store request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TaskStoreClient:
    """Thin wrapper over the task store's v1 REST API."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self._http = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None
        self._token_expiry = 0.0

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "TaskStoreClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expiry:
            return self._token
        try:
            response = self._http.post(
                "/api/v1/oauth/token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise TaskStoreError(f"OAuth token request failed: {e}") from e
        if response.status_code >= 400:
            raise TaskStoreError(f"OAuth token request failed: {self._error_text(response)}", response.status_code)
        data = response.json()
        self._token = data["access_token"]
        expires_in = int(data.get("expires_in", 3600))
        self._token_expiry = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        return self._token

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"HTTP {response.status_code}: {response.reason_phrase}"

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        headers = {"X-OAuth-Token": self._access_token()}
        try:
            response = self._http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise TaskStoreError(f"{method} {path} failed: {e}") from e
        if response.status_code == 401:
            # Token revoked early; refresh once.
            self._token = None
            headers = {"X-OAuth-Token": self._access_token()}
            try:
                response = self._http.request(method, path, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                raise TaskStoreError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 400:
            raise TaskStoreError(f"{method} {path}: {self._error_text(response)}", response.status_code)
        return response.json() if response.content else {}

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def list_tasks(self, list_id: Optional[str] = None, include_completed: bool = False) -> List[Task]:
        params: Dict[str, str] = {}
        if list_id:
            params["listId"] = list_id
        if include_completed:
            params["includeCompleted"] = "true"
        data = self._request("GET", "/api/v1/tasks", params=params)
        return [Task.model_validate(t) for t in data.get("tasks", [])]

    def get_task(self, task_id: str) -> Task:
        data = self._request("GET", f"/api/v1/tasks/{task_id}")
        task = Task.model_validate(data["task"])
        if not task.comments:
            task.comments = self.get_comments(task_id)
        return task

    def update_task(self, task_id: str, **updates: Any) -> Dict[str, Any]:
        """PUT partial updates; keys are the store's camelCase field names."""
        data = self._request("PUT", f"/api/v1/tasks/{task_id}", json=updates)
        return data.get("task", {})

    def reassign(self, task_id: str, assignee_id: Optional[str]) -> None:
        self.update_task(task_id, assigneeId=assignee_id)

    def update_description(self, task_id: str, description: str) -> None:
        self.update_task(task_id, description=description)

    def set_working_branch(self, task_id: str, branch: str) -> None:
        self.update_task(task_id, workingBranch=branch)

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def get_comments(self, task_id: str) -> List[Comment]:
        data = self._request("GET", f"/api/v1/tasks/{task_id}/comments")
        return [Comment.model_validate(c) for c in data.get("comments", [])]

    def add_comment(self, task_id: str, content: str, agent_id: Optional[str] = None) -> Optional[Comment]:
        body: Dict[str, Any] = {"content": content}
        if agent_id:
            body["aiAgentId"] = agent_id
        data = self._request("POST", f"/api/v1/tasks/{task_id}/comments", json=body)
        comment = data.get("comment")
        return Comment.model_validate(comment) if comment else None

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def get_lists(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/v1/lists").get("lists", [])

    def get_list(self, list_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/v1/lists/{list_id}").get("list", {})

    def find_agent_id(self, email: str) -> Optional[str]:
        """User id of an agent identity, found through list memberships."""
        wanted = email.lower()
        for summary in self.get_lists():
            detail = self.get_list(summary["id"])
            for member in detail.get("listMembers", []):
                user = member.get("user") or {}
                if (user.get("email") or "").lower() == wanted and user.get("isAIAgent"):
                    return user.get("id")
        return None

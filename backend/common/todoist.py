import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Literal, Optional, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict

from common.config import settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_RETRY_AFTER_SECONDS = 60.0


class TodoistAPIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TodoistAuthError(TodoistAPIError):
    """Token rejected by Todoist; fatal for the whole sync pass."""


class TodoistNotFoundError(TodoistAPIError):
    """A single remote entity vanished; callers skip just that entity."""


# --- Remote records ---

class _RemoteModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RemoteProject(_RemoteModel):
    id: str
    name: str
    color: Optional[str] = None
    parent_id: Optional[str] = None
    child_order: Optional[int] = None
    is_favorite: bool = False
    is_shared: bool = False
    inbox_project: bool = False


class RemoteLabel(_RemoteModel):
    id: str
    name: str
    color: Optional[str] = None
    order: Optional[int] = None
    is_favorite: bool = False


class RemoteDue(_RemoteModel):
    date: str
    is_recurring: bool = False
    string: Optional[str] = None
    timezone: Optional[str] = None
    lang: Optional[str] = None


class RemoteDeadline(_RemoteModel):
    date: str
    lang: Optional[str] = None


class RemoteDuration(_RemoteModel):
    amount: int
    unit: Literal["minute", "day"] = "minute"


class RemoteTask(_RemoteModel):
    id: str
    content: str
    description: str = ""
    project_id: Optional[str] = None
    section_id: Optional[str] = None
    parent_id: Optional[str] = None
    labels: List[str] = []
    priority: int = 1
    due: Optional[RemoteDue] = None
    deadline: Optional[RemoteDeadline] = None
    duration: Optional[RemoteDuration] = None
    checked: bool = False
    child_order: Optional[int] = None
    added_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class RemoteTaskPayload(_RemoteModel):
    """Outgoing create/update body. ``project_id``/``parent_id`` only apply on create."""

    content: str
    description: Optional[str] = None
    project_id: Optional[str] = None
    parent_id: Optional[str] = None
    labels: List[str] = []
    priority: int = 1
    due_string: Optional[str] = None
    due_date: Optional[str] = None
    due_datetime: Optional[str] = None
    deadline_date: Optional[str] = None
    duration: Optional[int] = None
    duration_unit: Optional[Literal["minute", "day"]] = None

    def create_body(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def update_body(self) -> Dict[str, Any]:
        body = self.model_dump(exclude={"project_id", "parent_id"}, exclude_none=True)
        # Clearing fields on update needs explicit values.
        if self.due_string is None and self.due_date is None and self.due_datetime is None:
            body["due_string"] = "no date"
        body.setdefault("description", "")
        return body


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    results: List[T] = field(default_factory=list)
    next_cursor: Optional[str] = None


async def collect_pages(fetch_page: Callable[[Optional[str]], Awaitable[Page[T]]]) -> List[T]:
    """Follow ``next_cursor`` until exhausted and return every result."""
    items: List[T] = []
    cursor: Optional[str] = None
    seen_cursors = set()
    while True:
        page = await fetch_page(cursor)
        items.extend(page.results)
        cursor = page.next_cursor
        if not cursor:
            return items
        if cursor in seen_cursors:
            raise TodoistAPIError(f"Pagination cursor repeated: {cursor}")
        seen_cursors.add(cursor)


def _retry_delay(response: Optional[httpx.Response], attempt: int) -> float:
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(max(0.0, float(retry_after)), MAX_RETRY_AFTER_SECONDS)
            except ValueError:
                pass
    return max(0.0, settings.TODOIST_RETRY_BACKOFF_SECONDS) * (2 ** attempt)


class TodoistClient:
    def __init__(self, token: str, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings.TODOIST_API_BASE).rstrip("/")
        self.token = token
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        if not self.token:
            raise TodoistAuthError("Todoist access token missing")
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json"
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        retries = max(0, settings.TODOIST_MAX_RETRIES)
        url = f"{self.base_url}{path}"
        for attempt in range(retries + 1):
            response: Optional[httpx.Response] = None
            try:
                async with httpx.AsyncClient(timeout=settings.TODOIST_TIMEOUT_SECONDS, transport=self._transport) as client:
                    response = await client.request(method, url, headers=self._get_headers(), params=params, json=json)
            except (httpx.RequestError, httpx.TimeoutException) as exc:
                if attempt >= retries:
                    raise TodoistAPIError(f"Todoist request failed: {exc}") from exc
                logger.warning(f"Todoist {method} {path} failed ({exc}), retrying")
                await asyncio.sleep(_retry_delay(None, attempt))
                continue

            status_code = response.status_code
            if status_code in (401, 403):
                raise TodoistAuthError(f"Todoist rejected the access token ({status_code})", status_code)
            if status_code == 404:
                raise TodoistNotFoundError(f"Todoist resource not found: {path}", status_code)
            if status_code in RETRYABLE_STATUS_CODES and attempt < retries:
                delay = _retry_delay(response, attempt)
                logger.warning(f"Todoist {method} {path} returned {status_code}, retrying in {delay}s")
                await asyncio.sleep(delay)
                continue
            if status_code >= 400:
                raise TodoistAPIError(f"Todoist {method} {path} failed with {status_code}: {response.text[:200]}", status_code)
            if status_code == 204 or not response.content:
                return {}
            return response.json()
        raise TodoistAPIError(f"Todoist {method} {path} exhausted retries")

    async def _get_page(self, path: str, model, cursor: Optional[str], limit: Optional[int], extra: Optional[Dict[str, Any]] = None, key: str = "results") -> Page:
        params: Dict[str, Any] = {"limit": limit or settings.TODOIST_PAGE_LIMIT}
        if cursor:
            params["cursor"] = cursor
        if extra:
            params.update({k: v for k, v in extra.items() if v is not None})
        payload = await self._request("GET", path, params=params)
        if not isinstance(payload, dict):
            raise TodoistAPIError(f"Unexpected Todoist response shape for {path}")
        raw_items = payload.get(key) or []
        return Page(
            results=[model.model_validate(item) for item in raw_items],
            next_cursor=payload.get("next_cursor"),
        )

    async def get_projects(self, cursor: Optional[str] = None, limit: Optional[int] = None) -> Page[RemoteProject]:
        return await self._get_page("/projects", RemoteProject, cursor, limit)

    async def get_labels(self, cursor: Optional[str] = None, limit: Optional[int] = None) -> Page[RemoteLabel]:
        return await self._get_page("/labels", RemoteLabel, cursor, limit)

    async def get_tasks(self, ids: Optional[List[str]] = None, cursor: Optional[str] = None, limit: Optional[int] = None) -> Page[RemoteTask]:
        extra = {"ids": ",".join(ids)} if ids else None
        return await self._get_page("/tasks", RemoteTask, cursor, limit, extra=extra)

    async def get_completed_tasks(self, since: str, until: str, cursor: Optional[str] = None, limit: Optional[int] = None) -> Page[RemoteTask]:
        return await self._get_page(
            "/tasks/completed/by_completion_date",
            RemoteTask,
            cursor,
            limit,
            extra={"since": since, "until": until},
            key="items",
        )

    async def get_task(self, task_id: str) -> Optional[RemoteTask]:
        """Fetches a single task; None when Todoist no longer has it."""
        try:
            payload = await self._request("GET", f"/tasks/{task_id}")
        except TodoistNotFoundError:
            return None
        return RemoteTask.model_validate(payload)

    async def get_label(self, label_id: str) -> Optional[RemoteLabel]:
        try:
            payload = await self._request("GET", f"/labels/{label_id}")
        except TodoistNotFoundError:
            return None
        return RemoteLabel.model_validate(payload)

    async def create_task(self, payload: RemoteTaskPayload) -> RemoteTask:
        body = await self._request("POST", "/tasks", json=payload.create_body())
        return RemoteTask.model_validate(body)

    async def update_task(self, task_id: str, payload: RemoteTaskPayload) -> Optional[RemoteTask]:
        body = await self._request("POST", f"/tasks/{task_id}", json=payload.update_body())
        if not body:
            return None
        return RemoteTask.model_validate(body)

    async def move_task(self, task_id: str, project_id: Optional[str] = None, parent_id: Optional[str] = None) -> None:
        if parent_id:
            body = {"parent_id": parent_id}
        elif project_id:
            body = {"project_id": project_id}
        else:
            raise ValueError("move_task needs a project_id or parent_id")
        await self._request("POST", f"/tasks/{task_id}/move", json=body)

    async def close_task(self, task_id: str) -> bool:
        await self._request("POST", f"/tasks/{task_id}/close")
        return True

    async def reopen_task(self, task_id: str) -> bool:
        await self._request("POST", f"/tasks/{task_id}/reopen")
        return True


def create_todoist_client(token: str) -> TodoistClient:
    return TodoistClient(token)


async def fetch_all_projects(client) -> List[RemoteProject]:
    return await collect_pages(lambda cursor: client.get_projects(cursor=cursor))


async def fetch_all_labels(client) -> List[RemoteLabel]:
    return await collect_pages(lambda cursor: client.get_labels(cursor=cursor))


async def fetch_all_tasks(client) -> List[RemoteTask]:
    return await collect_pages(lambda cursor: client.get_tasks(cursor=cursor))


async def fetch_completed_tasks(client, since: str, until: str) -> List[RemoteTask]:
    return await collect_pages(lambda cursor: client.get_completed_tasks(since=since, until=until, cursor=cursor))

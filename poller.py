"""Keeping a whiteboard view in sync by polling.

A :class:`BoardSession` belongs to one open board view.  It fetches the
projection when started, again every ``interval`` seconds, and right after
every change made through it.  Each fetch replaces the whole row set, so
views converge without any merge logic.

Responses can arrive out of order.  Every fetch gets a token from a counter
and a response is applied only if no newer fetch has already been applied and
the view has not been reset (filters changed, session closed) since the fetch
started.

Rows whose waiting or turnaround timer is live get a ticker that recomputes
the elapsed minutes between polls.  Tickers stop when the row disappears or
stops being live, and all background work stops on :meth:`BoardSession.close`.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

from errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    QueueError,
    TransientIOError,
    ValidationError,
)
from models import utcnow
from schemas import ActionResult, EntryCreate, WhiteboardFilters, WhiteboardRow
from timers import format_minutes, turnaround_time, waiting_time

logger = logging.getLogger(__name__)

POLL_SECONDS = float(os.getenv("WHITEBOARD_POLL_SECONDS", "30"))
FETCH_TIMEOUT = float(os.getenv("WHITEBOARD_FETCH_TIMEOUT", "10"))
TICK_SECONDS = float(os.getenv("WHITEBOARD_TICK_SECONDS", "60"))

RETRY_HINT = "The server did not respond. Please try again."


class WhiteboardClient:
    """Async HTTP binding for the waiting list API of one clinic."""

    def __init__(
        self,
        base_url: str,
        clinic_id: str,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = FETCH_TIMEOUT,
    ) -> None:
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.headers = {"X-Clinic-Id": clinic_id}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.http.request(method, url, headers=self.headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientIOError(f"Request to {url} timed out") from e
        except httpx.TransportError as e:
            raise TransientIOError(f"Request to {url} failed: {e}") from e

    async def fetch_board(self, filters: WhiteboardFilters) -> List[WhiteboardRow]:
        response = await self._request("GET", "/whiteboard", params=filters.query_params())
        if response.status_code >= 500:
            raise TransientIOError(f"Whiteboard unavailable ({response.status_code})")
        if response.status_code >= 400:
            raise _error_for(response)
        return [WhiteboardRow.model_validate(row) for row in response.json()["data"]]

    async def _action(self, method: str, url: str, body: Optional[dict] = None) -> ActionResult:
        response = await self._request(method, url, json=body)
        if response.status_code == 503:
            raise TransientIOError(_error_message(response))
        payload = _payload(response)
        if response.is_success:
            return ActionResult(success=bool(payload.get("success", True)), data=payload.get("data"))
        error_cls = _error_class(response, payload)
        return ActionResult(
            success=False,
            error=_error_message(response, payload),
            error_type=error_cls.__name__ if error_cls is not QueueError else None,
        )

    async def add_entry(self, data: EntryCreate) -> ActionResult:
        return await self._action("POST", "/waiting-list", data.model_dump(exclude_none=True))

    async def update_status(self, entry_id: str, status: str) -> ActionResult:
        return await self._action("PUT", "/waiting-list/status", {"id": entry_id, "status": status})

    async def update_priority(self, entry_id: str, priority: str) -> ActionResult:
        return await self._action(
            "PUT", "/waiting-list/priority", {"id": entry_id, "priority": priority}
        )

    async def update_photo(self, entry_id: str, photo_url: Optional[str]) -> ActionResult:
        return await self._action("PUT", "/waiting-list/photo", {"id": entry_id, "photo_url": photo_url})

    async def remove_entry(self, entry_id: str) -> ActionResult:
        return await self._action("DELETE", f"/waiting-list/{entry_id}")

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()


_ERRORS_BY_NAME = {
    cls.__name__: cls
    for cls in (
        ValidationError,
        InvalidTransitionError,
        InvalidStateError,
        NotFoundError,
        TransientIOError,
    )
}

# for responses that do not name their error type
_ERRORS_BY_STATUS = {
    400: ValidationError,
    404: NotFoundError,
    409: InvalidTransitionError,
    422: ValidationError,
    503: TransientIOError,
}


def _error_message(response: httpx.Response, payload: Optional[dict] = None) -> str:
    if payload is None:
        payload = _payload(response)
    if payload.get("error"):
        return str(payload["error"])
    return f"Request failed ({response.status_code})"


def _payload(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_class(response: httpx.Response, payload: dict) -> type:
    """Error class named by the response, else the one its status implies."""
    named = _ERRORS_BY_NAME.get(str(payload.get("error_type") or ""))
    if named is not None:
        return named
    return _ERRORS_BY_STATUS.get(response.status_code, QueueError)


def _error_for(response: httpx.Response) -> QueueError:
    payload = _payload(response)
    return _error_class(response, payload)(_error_message(response, payload))


class BoardState(BaseModel):
    """What a board view renders: the current rows plus fetch status."""

    rows: List[WhiteboardRow] = []
    error: Optional[str] = None
    loading: bool = False
    last_updated: Optional[datetime] = None


Listener = Callable[[BoardState], None]


class BoardSession:
    """Live view of one clinic's whiteboard for one set of filters."""

    def __init__(
        self,
        client: WhiteboardClient,
        filters: Optional[WhiteboardFilters] = None,
        interval: float = POLL_SECONDS,
        fetch_timeout: float = FETCH_TIMEOUT,
        tick_interval: float = TICK_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.filters = filters or WhiteboardFilters()
        self.interval = interval
        self.fetch_timeout = fetch_timeout
        self.tick_interval = tick_interval
        self.clock = clock
        self.state = BoardState()

        self._listeners: List[Listener] = []
        self._issued = 0  # last token handed out
        self._applied = 0  # last token whose outcome reached the state
        self._floor = 0  # tokens at or below this were started before a reset
        self._in_flight = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._tickers: Dict[str, asyncio.Task] = {}
        self._closed = False

    # lifecycle

    async def start(self) -> None:
        if self._poll_task is not None:
            return
        await self.refresh()
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tickers.values())
        if self._poll_task is not None:
            tasks.append(self._poll_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tickers.clear()
        self._poll_task = None
        self._listeners.clear()

    async def __aenter__(self) -> "BoardSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def live_row_ids(self) -> List[str]:
        return sorted(self._tickers)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # fetching

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.refresh()

    def _is_current(self, token: int) -> bool:
        return not self._closed and token > self._applied and token > self._floor

    async def refresh(self) -> bool:
        """Fetch the board and apply it unless a newer result got there first.

        Returns ``True`` when this fetch's rows were applied.
        """
        if self._closed:
            return False
        self._issued += 1
        token = self._issued
        self._in_flight += 1
        self.state.loading = True
        error = None
        try:
            rows = await asyncio.wait_for(
                self.client.fetch_board(self.filters), self.fetch_timeout
            )
        except asyncio.TimeoutError:
            error = "Timed out loading the whiteboard"
        except QueueError as e:
            error = e.message
        except Exception:
            logger.exception("Whiteboard fetch failed")
            error = "Failed to load the whiteboard"
        finally:
            self._in_flight -= 1
            self.state.loading = self._in_flight > 0
        if error is not None:
            return self._fail(token, error)

        if not self._is_current(token):
            logger.debug("Discarding stale whiteboard response %d", token)
            return False
        self._applied = token
        self.state.rows = rows
        self.state.error = None
        self.state.last_updated = self.clock()
        self._sync_tickers()
        self._notify()
        return True

    def _fail(self, token: int, message: str) -> bool:
        if not self._is_current(token):
            return False
        # previous rows stay on screen; the next poll retries
        self._applied = token
        self.state.error = message
        logger.warning("Whiteboard refresh failed: %s", message)
        self._notify()
        return False

    async def set_filters(self, filters: WhiteboardFilters) -> bool:
        """Switch to new filters; results of fetches already running are dropped."""
        self.filters = filters
        self._floor = self._issued
        return await self.refresh()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("Whiteboard listener failed")

    # changes

    async def _mutate(self, label: str, call: Callable[[], Awaitable[ActionResult]]) -> ActionResult:
        if self._closed:
            return ActionResult(success=False, error="The whiteboard has been closed")
        try:
            result = await asyncio.wait_for(call(), self.fetch_timeout)
        except (asyncio.TimeoutError, TransientIOError):
            result = ActionResult(
                success=False,
                error=f"Could not {label}. {RETRY_HINT}",
                error_type=TransientIOError.__name__,
            )
        except Exception:
            logger.exception("Failed to %s", label)
            result = ActionResult(success=False, error=f"Failed to {label}")
        await self.refresh()
        return result

    async def add_entry(self, data: EntryCreate) -> ActionResult:
        return await self._mutate("add to the waiting list", lambda: self.client.add_entry(data))

    async def update_status(self, entry_id: str, status: str) -> ActionResult:
        return await self._mutate(
            "update status", lambda: self.client.update_status(entry_id, status)
        )

    async def update_priority(self, entry_id: str, priority: str) -> ActionResult:
        return await self._mutate(
            "update priority", lambda: self.client.update_priority(entry_id, priority)
        )

    async def update_photo(self, entry_id: str, photo_url: Optional[str]) -> ActionResult:
        return await self._mutate(
            "update photo", lambda: self.client.update_photo(entry_id, photo_url)
        )

    async def remove_entry(self, entry_id: str) -> ActionResult:
        return await self._mutate(
            "remove from the waiting list", lambda: self.client.remove_entry(entry_id)
        )

    # live timers

    def _sync_tickers(self) -> None:
        live = {r.id for r in self.state.rows if r.waiting_live or r.turnaround_live}
        for row_id in list(self._tickers):
            if row_id not in live:
                self._tickers.pop(row_id).cancel()
        for row_id in live:
            if row_id not in self._tickers:
                self._tickers[row_id] = asyncio.create_task(self._tick(row_id))

    async def _tick(self, row_id: str) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.recompute_row(row_id)

    def recompute_row(self, row_id: str) -> Optional[WhiteboardRow]:
        """Refresh one row's elapsed times against the local clock."""
        for index, row in enumerate(self.state.rows):
            if row.id == row_id:
                updated = recompute_timers(row, self.clock())
                self.state.rows = (
                    self.state.rows[:index] + [updated] + self.state.rows[index + 1:]
                )
                self._notify()
                return updated
        return None


def recompute_timers(row: WhiteboardRow, now: datetime) -> WhiteboardRow:
    waited = waiting_time(row.checked_in_at, row.attending_at, now, row.completed_at)
    turnaround = turnaround_time(row.attending_at, row.completed_at, now)
    return row.model_copy(
        update={
            "waiting_time_minutes": waited,
            "turnaround_time_minutes": turnaround,
            "waiting_time_display": format_minutes(waited),
            "turnaround_time_display": format_minutes(turnaround),
        }
    )

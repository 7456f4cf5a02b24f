"""Calendar oracle adapters."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import httpx


class OpenCalendar:
    """Every instant is permitted."""

    def is_permitted_now(self, instant: datetime) -> bool:
        return True

    def next_permitted_instant(self, instant: datetime) -> datetime:
        return instant


class HttpCalendarOracle:
    """Business calendar served over HTTP.

    Expected endpoints::

        GET {base_url}/permitted?instant=<iso>       -> {"permitted": bool}
        GET {base_url}/next-permitted?instant=<iso>  -> {"instant": "<iso>"}

    Transport and HTTP errors propagate to the caller.
    """

    def __init__(
        self,
        base_url: str,
        timeout_ms: int = 3000,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_ms / 1000.0)
        self.client = client or httpx.Client(timeout=self.timeout, follow_redirects=False)
        self.logger = logging.getLogger(__name__)

    def _get(self, path: str, instant: datetime) -> dict:
        response = self.client.get(
            f"{self.base_url}/{path}",
            params={"instant": instant.astimezone(UTC).isoformat()},
        )
        response.raise_for_status()
        return response.json()

    def is_permitted_now(self, instant: datetime) -> bool:
        return bool(self._get("permitted", instant).get("permitted"))

    def next_permitted_instant(self, instant: datetime) -> datetime:
        data = self._get("next-permitted", instant)
        value = datetime.fromisoformat(data["instant"])
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        if value < instant:
            self.logger.warning(
                "Calendar returned an instant in the past, using requested instant",
                extra={"requested": instant.isoformat(), "returned": value.isoformat()},
            )
            return instant
        return value

    def close(self) -> None:
        self.client.close()

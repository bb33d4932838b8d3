"""Thin async HTTP connection used for login, metadata and log upload.

The background logger only relies on ``post_json(path, body)``; everything
else here serves the login handshake and metadata registration.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from spanlog.errors import TransportError, wrap_error

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 60.0


def _urljoin(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def check_response(resp: httpx.Response) -> httpx.Response:
    if resp.is_success:
        return resp
    raise TransportError(
        f"{resp.status_code}: {resp.reason_phrase}",
        status=resp.status_code,
        status_text=resp.reason_phrase,
        body=resp.text,
    )


class HTTPConnection:
    """Base URL plus bearer token; one short-lived ``httpx.AsyncClient`` per request.

    Per-request clients keep the connection usable from whichever event loop
    happens to be running (including the interpreter-exit flush).
    """

    def __init__(self, base_url: str, *, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.token: str | None = None
        self.headers: dict[str, str] = {}
        self._reset()

    def __repr__(self) -> str:
        return f"HTTPConnection({self.base_url!r}, authenticated={self.token is not None})"

    @staticmethod
    def sanitize_token(token: str) -> str:
        return token.strip()

    def set_token(self, token: str) -> None:
        self.token = self.sanitize_token(token)
        self._reset()

    def make_long_lived(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self.headers = {}
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"Accept": "application/json", **self.headers, **kwargs.pop("headers", {})}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, _urljoin(self.base_url, path), headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise wrap_error(exc) from exc
        return check_response(resp)

    async def ping(self) -> bool:
        try:
            resp = await self.get("ping")
        except TransportError:
            return False
        return resp.status_code == 200

    async def get(self, path: str, params: dict[str, str | None] | None = None) -> httpx.Response:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        return await self._request("GET", path, params=query)

    async def post(self, path: str, body: dict[str, Any] | str | None = None) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if isinstance(body, str):
            return await self._request("POST", path, content=body.encode("utf-8"), headers=headers)
        return await self._request("POST", path, json=body, headers=headers)

    async def get_json(
        self,
        path: str,
        args: dict[str, str | None] | None = None,
        retries: int = 0,
    ) -> Any:
        tries = retries + 1
        for i in range(tries):
            try:
                resp = await self.get(path, args)
                return resp.json()
            except TransportError as exc:
                if i < tries - 1:
                    logger.info("Retrying API request %s %s: %s", path, args, exc.describe())
                    continue
                raise
        return None

    async def post_json(self, path: str, body: dict[str, Any] | str | None = None) -> Any:
        resp = await self.post(path, body)
        if not resp.content:
            return None
        return resp.json()

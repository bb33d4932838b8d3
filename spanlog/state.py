"""Login/session state shared by loggers, experiments and spans.

A ``SessionState`` owns the connections and the one ``BackgroundLogger`` for
a set of credentials. Re-authenticating swaps the upload connection inside
the existing background logger instead of replacing the logger, so objects
that already hold a reference keep logging in order.
"""

from __future__ import annotations

import itertools
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from spanlog.background import BackgroundLogger
from spanlog.config import LoggerConfig, LoginSettings
from spanlog.connection import HTTPConnection
from spanlog.deferred import DeferredValue
from spanlog.errors import LoginError

if TYPE_CHECKING:
    from spanlog.logger import Experiment, Logger

logger = logging.getLogger(__name__)

_state_nonce = itertools.count()


class OrgInfo(BaseModel):
    """One organization entry from the API key login response."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    api_url: str | None = None
    git_metadata: dict[str, Any] | None = None


class SessionState:
    def __init__(
        self,
        settings: LoginSettings | None = None,
        *,
        config: LoggerConfig | None = None,
        exit_flush: bool = True,
    ) -> None:
        self.id = f"{datetime.now().isoformat()}-{next(_state_nonce)}"
        self._settings = settings or LoginSettings.from_env()
        self.current_experiment: Experiment | None = None
        self.current_logger: Logger | None = None

        self.app_url: str | None = None
        self.api_url: str | None = None
        self.login_token: str | None = None
        self.org_id: str | None = None
        self.org_name: str | None = None
        self.logged_in = False
        self.git_metadata_settings: dict[str, Any] | None = None
        self._app_conn: HTTPConnection | None = None
        self._api_conn: HTTPConnection | None = None

        self._bg_logger = BackgroundLogger(
            DeferredValue(self._default_log_conn),
            config,
            exit_flush=exit_flush,
        )

    def __repr__(self) -> str:
        return f"SessionState(id={self.id!r}, logged_in={self.logged_in}, org_name={self.org_name!r})"

    async def _default_log_conn(self) -> HTTPConnection:
        await self.login()
        return self.api_conn()

    def reset_login_info(self) -> None:
        self.app_url = None
        self.api_url = None
        self.login_token = None
        self.org_id = None
        self.org_name = None
        self.logged_in = False
        self.git_metadata_settings = None
        self._app_conn = None
        self._api_conn = None

    async def login(
        self,
        *,
        api_key: str | None = None,
        app_url: str | None = None,
        api_url: str | None = None,
        org_name: str | None = None,
        force_login: bool = False,
    ) -> None:
        """Populate login info; no-op when already logged in unless ``force_login``.

        With an explicit ``api_url`` the handshake is skipped and the key is
        used as the bearer token directly.
        """
        if self.logged_in and not force_login:
            return

        api_key = api_key or self._settings.api_key
        app_url = app_url or self._settings.app_url
        api_url = api_url or self._settings.api_url
        org_name = org_name or self._settings.org_name
        if not api_key:
            raise LoginError("No API key provided; pass api_key or set SPANLOG_API_KEY")

        self.reset_login_info()
        self.app_url = app_url
        app_conn = HTTPConnection(app_url)
        app_conn.set_token(api_key)

        if api_url:
            self.api_url = api_url
            self.org_name = org_name
        else:
            response = await app_conn.post_json("api/apikey/login", {"token": api_key})
            self._check_org_info((response or {}).get("org_info", []), org_name)

        self.login_token = api_key
        self._app_conn = app_conn
        api_conn = self.api_conn()
        api_conn.set_token(api_key)
        api_conn.make_long_lived()
        self.logged_in = True
        logger.debug("Logged in to %s (org=%s)", self.api_url, self.org_name)
        self.login_replace_api_conn(api_conn)

    def _check_org_info(self, org_info: list[dict[str, Any]], org_name: str | None) -> None:
        if not org_info:
            raise LoginError("This user is not part of any organizations.")
        try:
            orgs = [OrgInfo.model_validate(org) for org in org_info]
        except PydanticValidationError as exc:
            raise LoginError(f"Malformed organization info in login response: {exc}", original=exc) from exc

        for org in orgs:
            if org_name is None or org.name == org_name:
                self.org_id = org.id
                self.org_name = org.name
                self.api_url = org.api_url
                self.git_metadata_settings = org.git_metadata
                break

        if self.org_id is None:
            names = ", ".join(org.name for org in orgs)
            raise LoginError(f"Organization {org_name} not found. Must be one of {names}")
        if not self.api_url:
            raise LoginError(f"Organization {self.org_name} has no API URL configured")

    def app_conn(self) -> HTTPConnection:
        if self._app_conn is None:
            if not self.app_url:
                raise LoginError("Must initialize app_url before requesting app_conn")
            self._app_conn = HTTPConnection(self.app_url)
        return self._app_conn

    def api_conn(self) -> HTTPConnection:
        if self._api_conn is None:
            if not self.api_url:
                raise LoginError("Must initialize api_url before requesting api_conn")
            self._api_conn = HTTPConnection(self.api_url)
        return self._api_conn

    def bg_logger(self) -> BackgroundLogger:
        return self._bg_logger

    def login_replace_api_conn(self, api_conn: HTTPConnection) -> None:
        """Re-authentication hook: hot-swap the upload connection."""
        self._api_conn = api_conn
        self._bg_logger.internal_replace_api_conn(api_conn)


_global_state: SessionState | None = None


def get_global_state() -> SessionState:
    """Process-wide default state used when no ``state=`` is passed."""
    global _global_state  # noqa: PLW0603
    if _global_state is None:
        _global_state = SessionState()
    return _global_state


def set_global_state(state: SessionState | None) -> SessionState | None:
    """Replace the default state; returns the previous one."""
    global _global_state  # noqa: PLW0603
    previous = _global_state
    _global_state = state
    return previous

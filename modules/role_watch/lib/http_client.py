# role_watch/http_client.py
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import SourceFetchError

LOG = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "RoleWatch/0.1 (+https://example.invalid)"


class HttpClient:
    """Document source: one requests.Session with a timeout and optional retries."""

    def __init__(
        self,
        timeout: float = 15.0,
        retries: int = 0,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.timeout = float(timeout)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

        if retries > 0:
            retry = Retry(
                total=retries,
                backoff_factor=0.5,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=frozenset(["GET", "HEAD"]),
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)

    def fetch_text(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> str:
        """
        GET `url` and return the decoded body.

        Raises:
            SourceFetchError with the response status/reason on any non-2xx answer,
            or with status=None if the request never completed.
        """
        try:
            resp = self.session.get(url, headers=headers, timeout=timeout or self.timeout, **kwargs)
        except requests.RequestException as e:
            raise SourceFetchError(url, None, repr(e)) from e

        if not resp.ok:
            raise SourceFetchError(url, resp.status_code, resp.reason or "")
        if not resp.encoding and resp.apparent_encoding:
            resp.encoding = resp.apparent_encoding
        return resp.text

    def close(self) -> None:
        try:
            self.session.close()
        except Exception:
            LOG.debug("HttpClient.close() swallow", exc_info=True)

    def __enter__(self) -> HttpClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

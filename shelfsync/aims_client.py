"""
HTTP client for the AIMS (SoluM) electronic shelf label API.

Handles token login and caching per company, paged article reads, article
upserts and deletes, label link/unlink and a connectivity check. Every
failure surfaces as ``ExternalSystemError`` with ``transient`` set so callers
can decide between retrying and giving up.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from shelfsync.config import Settings
from shelfsync.errors import ExternalSystemError, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/common/api/v2/token"
ARTICLE_INFO_PATH = "/common/api/v2/common/config/article/info"
ARTICLES_PATH = "/common/api/v2/common/articles"
LABEL_LINK_PATH = "/common/api/v2/common/labels/link"
LABEL_UNLINK_PATH = "/common/api/v2/common/labels/unlink"

# AIMS rejects article POSTs larger than this.
ARTICLE_BATCH_SIZE = 500

TRANSIENT_STATUSES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class StoreConfig:
    store_id: int
    company_id: int
    base_url: str
    company_code: str
    store_code: str
    username: str
    password: str
    cluster: Optional[str] = None


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in TRANSIENT_STATUSES


class AimsClient:
    def __init__(
        self,
        timeout: float = 30.0,
        page_size: int = 100,
        max_pages: int = 50,
        token_ttl_buffer: float = 300.0,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._http = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self.page_size = page_size
        self.max_pages = max_pages
        self._token_ttl_buffer = token_ttl_buffer
        self._clock = clock
        self._tokens: dict[int, tuple[str, float]] = {}
        self._login_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None
    ) -> "AimsClient":
        return cls(
            timeout=settings.aims_timeout_seconds,
            page_size=settings.aims_page_size,
            max_pages=settings.aims_max_pages,
            token_ttl_buffer=settings.aims_token_ttl_buffer_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    # -- auth ---------------------------------------------------------------

    def _url(self, config: StoreConfig, path: str) -> str:
        prefix = "/c1" if config.cluster == "c1" else ""
        return f"{config.base_url.rstrip('/')}{prefix}{path}"

    def login(self, config: StoreConfig) -> tuple[str, float]:
        response = self._send(
            "POST",
            self._url(config, TOKEN_PATH),
            json={"username": config.username, "password": config.password},
        )
        if response.status_code >= 400:
            raise ExternalSystemError(
                f"AIMS login failed: {response.status_code}",
                transient=is_transient_status(response.status_code),
                http_status=response.status_code,
            )
        body = response.json().get("responseMessage") or {}
        access_token = body.get("access_token")
        if not access_token:
            raise ExternalSystemError("AIMS login returned no access token", transient=False)
        expires_in = float(body.get("expires_in") or 3600)
        return access_token, self._clock() + expires_in

    def _token(self, config: StoreConfig, refresh: bool = False) -> str:
        with self._login_lock:
            cached = self._tokens.get(config.company_id)
            if (
                not refresh
                and cached is not None
                and cached[1] > self._clock() + self._token_ttl_buffer
            ):
                return cached[0]
            token, expires_at = self.login(config)
            self._tokens[config.company_id] = (token, expires_at)
            return token

    def invalidate_token(self, company_id: int) -> None:
        with self._login_lock:
            self._tokens.pop(company_id, None)

    # -- transport ----------------------------------------------------------

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ExternalSystemError(f"AIMS request timed out: {method} {url}") from exc
        except httpx.TransportError as exc:
            raise ExternalSystemError(f"AIMS request failed: {exc}") from exc

    def _request(
        self,
        config: StoreConfig,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Any = None,
    ) -> httpx.Response:
        url = self._url(config, path)
        token = self._token(config)
        response = self._send(
            method, url, params=params, json=json, headers={"Authorization": f"Bearer {token}"}
        )
        if response.status_code in (401, 403):
            logger.info("AIMS rejected token for company %s, refreshing", config.company_id)
            token = self._token(config, refresh=True)
            response = self._send(
                method, url, params=params, json=json, headers={"Authorization": f"Bearer {token}"}
            )
        if response.status_code >= 400:
            raise ExternalSystemError(
                f"AIMS {method} {path} failed: {response.status_code} {response.text[:200]}",
                transient=is_transient_status(response.status_code),
                http_status=response.status_code,
            )
        return response

    def _store_params(self, config: StoreConfig) -> dict:
        return {"company": config.company_code, "store": config.store_code}

    # -- articles -----------------------------------------------------------

    def fetch_articles(self, config: StoreConfig) -> list[dict]:
        articles: list[dict] = []
        for page in range(self.max_pages):
            params = {**self._store_params(config), "page": page, "size": self.page_size}
            response = self._request(config, "GET", ARTICLE_INFO_PATH, params=params)
            if response.status_code == 204 or not response.content:
                break
            data = response.json()
            if isinstance(data, list):
                batch = data
            else:
                batch = data.get("articleList") or data.get("content") or data.get("data") or []
            articles.extend(batch)
            if len(batch) < self.page_size:
                break
        return articles

    def push_articles(self, config: StoreConfig, articles: list[dict]) -> None:
        for start in range(0, len(articles), ARTICLE_BATCH_SIZE):
            batch = articles[start : start + ARTICLE_BATCH_SIZE]
            self._request(
                config, "POST", ARTICLES_PATH, params=self._store_params(config), json=batch
            )

    def delete_articles(self, config: StoreConfig, article_ids: list[str]) -> None:
        if not article_ids:
            return
        self._request(
            config,
            "DELETE",
            ARTICLES_PATH,
            params=self._store_params(config),
            json={"articleDeleteList": article_ids},
        )

    # -- labels -------------------------------------------------------------

    def link_label(
        self,
        config: StoreConfig,
        label_code: str,
        article_ids: list[str],
        template_name: Optional[str] = None,
    ) -> None:
        entry: dict[str, Any] = {"labelCode": label_code, "articleIdList": article_ids}
        if template_name:
            entry["templateName"] = template_name
        self._request(
            config,
            "POST",
            LABEL_LINK_PATH,
            params=self._store_params(config),
            json={"assignList": [entry]},
        )

    def unlink_label(self, config: StoreConfig, label_code: str) -> None:
        self._request(
            config,
            "POST",
            LABEL_UNLINK_PATH,
            params=self._store_params(config),
            json={"unAssignList": [label_code]},
        )

    # -- contract used by the reconciliation engine ---------------------------

    def push_mutation(self, config: StoreConfig, action: str, payload: dict) -> None:
        if action in ("create", "update"):
            article = payload.get("article")
            if not article:
                raise ValidationError(f"{action} payload has no article")
            self.push_articles(config, [article])
        elif action == "delete":
            article_id = payload.get("articleId")
            if not article_id:
                raise ValidationError("delete payload has no articleId")
            self.delete_articles(config, [article_id])
        elif action == "link":
            label_code = payload.get("labelCode")
            article_ids = payload.get("articleIds") or (
                [payload["articleId"]] if payload.get("articleId") else []
            )
            if not label_code or not article_ids:
                raise ValidationError("link payload needs labelCode and articleId")
            self.link_label(config, label_code, article_ids, payload.get("templateName"))
        elif action == "unlink":
            label_code = payload.get("labelCode")
            if not label_code:
                raise ValidationError("unlink payload needs labelCode")
            self.unlink_label(config, label_code)
        else:
            raise ValidationError(f"unknown action: {action}")

    def check_health(self, config: StoreConfig) -> bool:
        try:
            self._token(config)
        except ExternalSystemError as exc:
            logger.warning("AIMS health check failed for store %s: %s", config.store_id, exc)
            return False
        return True

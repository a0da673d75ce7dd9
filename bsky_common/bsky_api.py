from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import requests

from bsky_common.config import Settings
from bsky_common.errors import BskyCommonError
from bsky_common.models import ProfileRecord
from bsky_common.modes import RelationKind


LOGGER = logging.getLogger(__name__)

_RESOLVE_HANDLE = "/xrpc/com.atproto.identity.resolveHandle"
_RELATION_ENDPOINTS: dict[RelationKind, tuple[str, str]] = {
  RelationKind.FOLLOWS: ("/xrpc/app.bsky.graph.getFollows", "follows"),
  RelationKind.FOLLOWERS: ("/xrpc/app.bsky.graph.getFollowers", "followers"),
}

_HANDLE_PATTERN = re.compile(r"[A-Za-z0-9.-]+")
_PROFILE_HOSTS = {"bsky.app", "www.bsky.app"}


class BskyApiError(BskyCommonError):
  """Raised when a Bluesky XRPC call fails at the transport or protocol level."""

  def __init__(self, message: str, *, status_code: int | None = None, error: str | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.error = error


@dataclass
class RelationPage:
  entries: list[ProfileRecord] = field(default_factory=list)
  cursor: str | None = None


def _as_str(value: Any) -> str | None:
  if isinstance(value, str):
    stripped = value.strip()
    return stripped or None
  return None


def normalize_handle(target: str) -> str | None:
  """Turn user input (``@alice.bsky.social``, a profile URL, a bare handle or DID) into a lookup key."""
  target = (target or "").strip()
  if not target:
    return None

  if "://" in target or target.lower().startswith(("bsky.app/", "www.bsky.app/")):
    parsed = urlparse(target if "://" in target else f"https://{target}")
    host = (parsed.hostname or "").lower()
    parts = [part for part in parsed.path.split("/") if part]
    if host not in _PROFILE_HOSTS or len(parts) < 2 or parts[0] != "profile":
      return None
    target = parts[1]

  if target.startswith("did:"):
    return target

  target = target.lstrip("@")
  return target.lower() if _HANDLE_PATTERN.fullmatch(target) else None


def normalize_profile_view(payload: Any) -> ProfileRecord | None:
  if not isinstance(payload, dict):
    return None
  did = _as_str(payload.get("did"))
  if not did:
    return None
  return ProfileRecord(
    did=did,
    handle=_as_str(payload.get("handle")) or did,
    display_name=_as_str(payload.get("displayName")),
    avatar=_as_str(payload.get("avatar")),
    description=_as_str(payload.get("description")),
  )


class BskyApiClient:
  def __init__(self, settings: Settings, *, session: requests.Session | None = None) -> None:
    self._settings = settings
    self._base_url = settings.api_url.rstrip("/")
    self._session = session or requests.Session()
    self._session.headers.update({"Accept": "application/json"})

  def _requests_proxies(self) -> dict[str, str] | None:
    proxy = self._settings.proxy_url
    if not proxy:
      return None
    return {"http": proxy, "https": proxy}

  def _request(self, path: str, params: dict[str, Any]) -> Any:
    url = f"{self._base_url}{path}"
    query = {key: value for key, value in params.items() if value is not None}

    try:
      response = self._session.get(
        url,
        params=query,
        timeout=self._settings.request_timeout or None,
        proxies=self._requests_proxies(),
      )
    except requests.RequestException as exc:
      raise BskyApiError(f"Bluesky request failed: {exc}") from exc

    if response.status_code != 200:
      error = None
      detail = None
      try:
        payload = response.json()
        if isinstance(payload, dict):
          error = _as_str(payload.get("error"))
          detail = _as_str(payload.get("message"))
      except ValueError:
        detail = response.text[:200]
      suffix = f" ({detail or error})" if (detail or error) else ""
      raise BskyApiError(
        f"Bluesky HTTP {response.status_code}{suffix}",
        status_code=response.status_code,
        error=error,
      )

    try:
      return response.json()
    except ValueError as exc:
      raise BskyApiError(f"Bluesky returned non-JSON response: {exc}") from exc

  def resolve_handle(self, handle: str) -> str:
    payload = self._request(_RESOLVE_HANDLE, {"handle": handle})
    did = _as_str(payload.get("did")) if isinstance(payload, dict) else None
    if not did:
      raise BskyApiError(f"resolveHandle returned no DID for {handle!r}.")
    return did

  def get_relation_page(
    self,
    actor: str,
    kind: RelationKind,
    *,
    cursor: str | None = None,
    limit: int = 100,
  ) -> RelationPage:
    path, list_key = _RELATION_ENDPOINTS[RelationKind(kind)]
    payload = self._request(path, {"actor": actor, "limit": limit, "cursor": cursor})
    if not isinstance(payload, dict):
      raise BskyApiError(f"Unexpected response format for {list_key} page.")

    raw_items = payload.get(list_key)
    if not isinstance(raw_items, list):
      raw_items = []
    entries = [record for record in (normalize_profile_view(item) for item in raw_items) if record is not None]
    skipped = len(raw_items) - len(entries)
    if skipped:
      LOGGER.debug("Skipped %d %s entries without a DID for %s", skipped, list_key, actor)
    return RelationPage(entries=entries, cursor=_as_str(payload.get("cursor")))

  def get_follows_page(self, actor: str, *, cursor: str | None = None, limit: int = 100) -> RelationPage:
    return self.get_relation_page(actor, RelationKind.FOLLOWS, cursor=cursor, limit=limit)

  def get_followers_page(self, actor: str, *, cursor: str | None = None, limit: int = 100) -> RelationPage:
    return self.get_relation_page(actor, RelationKind.FOLLOWERS, cursor=cursor, limit=limit)

from __future__ import annotations

import csv
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from bsky_common.bsky_api import BskyApiClient, BskyApiError
from bsky_common.collector import CancellationToken, PaginatedCollector, RateLimiter, RelationSource, build_rate_limiter
from bsky_common.config import Settings
from bsky_common.errors import HandleResolutionError, SubmissionInProgressError
from bsky_common.models import ProfileCollection, ProfileRecord
from bsky_common.modes import Mode, describe_result, mode_labels, mode_to_kinds


LOGGER = logging.getLogger(__name__)

_EXPORT_FIELDS = ["did", "handle", "display_name", "description", "avatar", "profile_url"]


class HandleSource(Protocol):
  def resolve_handle(self, handle: str) -> str:
    ...


class HandleResolver:
  """Maps a cleaned handle to a DID, reporting failure as ``None``."""

  def __init__(self, api: HandleSource) -> None:
    self.api = api

  def resolve(self, handle: str) -> str | None:
    if handle.startswith("did:"):
      return handle
    try:
      return self.api.resolve_handle(handle)
    except BskyApiError as exc:
      LOGGER.warning("Could not resolve handle %r: %s", handle, exc)
      return None


def intersect(viewer_profiles: ProfileCollection, target_profiles: ProfileCollection) -> ProfileCollection:
  """Keep viewer-side entries whose DID also appears on the target side.

  Order and profile payloads come from the viewer side, even when the target
  side fetched a fresher record for the same DID.
  """
  return {did: profile for did, profile in viewer_profiles.items() if did in target_profiles}


class IntersectionResolver:
  def __init__(self, collector: PaginatedCollector) -> None:
    self.collector = collector

  def collect_sides(
    self,
    viewer_id: str,
    target_id: str,
    mode: Mode,
    token: CancellationToken | None = None,
  ) -> tuple[ProfileCollection, ProfileCollection]:
    token = token or CancellationToken()
    viewer_kind, target_kind = mode_to_kinds(mode)
    viewer_profiles: ProfileCollection = {}
    target_profiles: ProfileCollection = {}

    # Passes run one after the other so only one request is ever in flight.
    self.collector.collect(viewer_id, viewer_kind, viewer_profiles, token)
    if token.cancelled:
      LOGGER.info("Stopped during the viewer pass; skipping the target pass")
      return viewer_profiles, target_profiles
    self.collector.collect(target_id, target_kind, target_profiles, token)
    return viewer_profiles, target_profiles

  def resolve(
    self,
    viewer_id: str,
    target_id: str,
    mode: Mode,
    token: CancellationToken | None = None,
  ) -> ProfileCollection:
    viewer_profiles, target_profiles = self.collect_sides(viewer_id, target_id, mode, token)
    return intersect(viewer_profiles, target_profiles)


@dataclass
class SubmissionResult:
  viewer: str
  target: str
  viewer_did: str
  target_did: str
  mode: Mode
  profiles: ProfileCollection = field(default_factory=dict)
  viewer_count: int = 0
  target_count: int = 0
  cancelled: bool = False

  @property
  def count(self) -> int:
    return len(self.profiles)

  @property
  def description(self) -> str:
    return describe_result(self.mode, self.viewer, self.target)

  def as_payload(self, *, base_url: str | None = None) -> dict[str, Any]:
    viewer_label, target_label = mode_labels(self.mode)
    kwargs = {"base_url": base_url} if base_url else {}
    return {
      "ok": True,
      "entity_type": "common_accounts",
      "mode": self.mode.value,
      "description": self.description,
      "viewer": {"label": viewer_label, "handle": self.viewer, "did": self.viewer_did, "collected": self.viewer_count},
      "target": {"label": target_label, "handle": self.target, "did": self.target_did, "collected": self.target_count},
      "cancelled": self.cancelled,
      "count": self.count,
      "profiles": [profile.as_dict(**kwargs) for profile in self.profiles.values()],
    }


def _slugify(text: str, *, default: str) -> str:
  slug = re.sub(r"[^A-Za-z0-9]+", "_", text).strip("_").lower()
  return slug[:80] or default


def _csv_cell(value: Any) -> str:
  if value is None:
    return ""
  return str(value).replace("\r\n", " ").replace("\n", " ")


class CommonOps:
  """Runs one submission at a time and owns its cancellation token."""

  def __init__(
    self,
    settings: Settings | None = None,
    *,
    api: BskyApiClient | RelationSource | None = None,
    rate_limiter: RateLimiter | None = None,
  ) -> None:
    self.settings = settings or Settings.load()
    self.api = api or BskyApiClient(self.settings)
    self.handles = HandleResolver(self.api)
    collector = PaginatedCollector(
      self.api,
      limit_total=self.settings.limit_total,
      page_size=self.settings.page_size,
      rate_limiter=rate_limiter or build_rate_limiter(self.settings),
    )
    self.resolver = IntersectionResolver(collector)
    self._lock = threading.Lock()
    self._active: CancellationToken | None = None
    self._started: CancellationToken | None = None

  @property
  def running(self) -> bool:
    with self._lock:
      return self._active is not None

  def request_stop(self) -> bool:
    """Cancel the running submission. Returns False when nothing is running."""
    with self._lock:
      token = self._active
    if token is None:
      return False
    token.cancel()
    LOGGER.info("Stop requested")
    return True

  def resolve_handle(self, handle: str) -> str | None:
    return self.handles.resolve(handle)

  def reserve(self) -> CancellationToken:
    """Claim the submission slot ahead of ``submit`` so ``request_stop`` can reach it at once."""
    token = CancellationToken()
    with self._lock:
      if self._active is not None:
        raise SubmissionInProgressError("A submission is already running.")
      self._active = token
    return token

  def release(self, token: CancellationToken) -> None:
    """Free a reserved slot whose submission never started."""
    with self._lock:
      if self._active is token and self._started is not token:
        self._active = None

  def submit(
    self,
    viewer: str,
    target: str,
    mode: Mode | str = Mode.FOLLOWERS,
    *,
    token: CancellationToken | None = None,
  ) -> SubmissionResult:
    if token is None:
      token = self.reserve()
    with self._lock:
      if self._active is not token:
        raise SubmissionInProgressError("Token does not hold the submission slot.")
      self._started = token
    try:
      return self._run(viewer, target, Mode.parse(mode), token)
    finally:
      with self._lock:
        self._active = None
        self._started = None

  def _run(self, viewer: str, target: str, mode: Mode, token: CancellationToken) -> SubmissionResult:
    viewer_did = self.handles.resolve(viewer)
    target_did = self.handles.resolve(target)
    if not viewer_did or not target_did:
      raise HandleResolutionError(viewer_failed=not viewer_did, target_failed=not target_did)

    LOGGER.info("Comparing %s (%s) and %s (%s) in %s mode", viewer, viewer_did, target, target_did, mode.value)
    viewer_profiles, target_profiles = self.resolver.collect_sides(viewer_did, target_did, mode, token)
    profiles = intersect(viewer_profiles, target_profiles)
    LOGGER.info(
      "Found %d in common (%d viewer side, %d target side)",
      len(profiles), len(viewer_profiles), len(target_profiles),
    )
    return SubmissionResult(
      viewer=viewer,
      target=target,
      viewer_did=viewer_did,
      target_did=target_did,
      mode=mode,
      profiles=profiles,
      viewer_count=len(viewer_profiles),
      target_count=len(target_profiles),
      cancelled=token.cancelled,
    )

  def export_collection(
    self,
    result: SubmissionResult,
    *,
    fmt: str,
    filename_hint: str | None = None,
    output_dir: Path | None = None,
  ) -> dict[str, Any]:
    fmt_text = fmt.strip().lower()
    if fmt_text not in {"csv", "json"}:
      return {"ok": False, "error": "invalid_format", "message": "Use csv or json."}

    base_url = self.settings.profile_url
    rows = [profile.as_dict(base_url=base_url) for profile in result.profiles.values()]

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    root = output_dir or self.settings.output_dir
    root.mkdir(parents=True, exist_ok=True)
    hint = filename_hint or f"{result.mode.value}_{result.viewer}_{result.target}"
    output_path = root / f"{_slugify(hint, default='export')}_{timestamp}.{fmt_text}"

    if fmt_text == "csv":
      with output_path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=_EXPORT_FIELDS)
        writer.writeheader()
        for row in rows:
          writer.writerow({key: _csv_cell(row.get(key)) for key in _EXPORT_FIELDS})
    else:
      payload = result.as_payload(base_url=base_url)
      payload["generated_at"] = datetime.now().isoformat(timespec="seconds")
      output_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    return {
      "ok": True,
      "format": fmt_text,
      "path": str(output_path),
      "row_count": len(rows),
      "filename_hint": hint,
    }

  @staticmethod
  def summarize_result(result: SubmissionResult) -> dict[str, Any]:
    return {
      "ok": True,
      "mode": result.mode.value,
      "viewer": result.viewer,
      "target": result.target,
      "count": result.count,
      "viewer_collected": result.viewer_count,
      "target_collected": result.target_count,
      "cancelled": result.cancelled,
    }


def sorted_profiles(profiles: ProfileCollection) -> list[ProfileRecord]:
  return sorted(profiles.values(), key=lambda item: item.handle.lower())

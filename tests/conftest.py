"""Shared fixtures: an in-memory Bluesky API and test settings."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Callable

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
  sys.path.insert(0, str(PROJECT_ROOT))

from bsky_common.bsky_api import BskyApiError, RelationPage  # noqa: E402
from bsky_common.config import Settings  # noqa: E402
from bsky_common.models import ProfileRecord  # noqa: E402
from bsky_common.modes import RelationKind  # noqa: E402


ENV_NAMES = [
  "BSKY_API_URL",
  "BSKY_PROFILE_URL",
  "BSKY_LIMIT_TOTAL",
  "BSKY_LIMIT_PER_REQUEST",
  "BSKY_REQUEST_DELAY_MS",
  "BSKY_REQUESTS_PER_SECOND",
  "BSKY_REQUEST_TIMEOUT",
  "BSKY_OUTPUT_DIR",
  "PROXY_URL",
  "DEBUG",
]


def profile(name: str, display_name: str | None = None) -> ProfileRecord:
  return ProfileRecord(
    did=f"did:plc:{name}",
    handle=f"{name}.bsky.social",
    display_name=display_name,
  )


class FakeBskyApi:
  """Serves canned pages; cursors are page indexes."""

  def __init__(
    self,
    handles: dict[str, str] | None = None,
    pages: dict[tuple[str, RelationKind], list[list[ProfileRecord]]] | None = None,
  ) -> None:
    self.handles = handles or {}
    self.pages = pages or {}
    self.resolve_calls: list[str] = []
    self.page_calls: list[tuple[str, RelationKind, str | None, int]] = []
    self.on_page: Callable[[int, str, RelationKind], None] | None = None

  def resolve_handle(self, handle: str) -> str:
    self.resolve_calls.append(handle)
    if handle not in self.handles:
      raise BskyApiError("Bluesky HTTP 400 (Unable to resolve handle)", status_code=400, error="InvalidRequest")
    return self.handles[handle]

  def get_relation_page(
    self,
    actor: str,
    kind: RelationKind,
    *,
    cursor: str | None = None,
    limit: int = 100,
  ) -> RelationPage:
    self.page_calls.append((actor, kind, cursor, limit))
    if self.on_page is not None:
      self.on_page(len(self.page_calls), actor, kind)
    pages = self.pages.get((actor, RelationKind(kind)), [])
    index = int(cursor) if cursor else 0
    if index >= len(pages):
      return RelationPage(entries=[], cursor=None)
    next_cursor = str(index + 1) if index + 1 < len(pages) else None
    return RelationPage(entries=list(pages[index][:limit]), cursor=next_cursor)

  def calls_for(self, actor: str) -> list[tuple[str, RelationKind, str | None, int]]:
    return [call for call in self.page_calls if call[0] == actor]


class EndlessApi:
  """Always returns a full page and a cursor; optionally repeats the same page."""

  def __init__(self, *, repeat: bool = False) -> None:
    self.repeat = repeat
    self.calls = 0

  def get_relation_page(
    self,
    actor: str,
    kind: RelationKind,
    *,
    cursor: str | None = None,
    limit: int = 100,
  ) -> RelationPage:
    self.calls += 1
    offset = 0 if self.repeat else (self.calls - 1) * limit
    entries = [profile(f"user{offset + i}") for i in range(limit)]
    return RelationPage(entries=entries, cursor=f"c{self.calls}")


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
  def factory(**overrides) -> Settings:
    values = {
      "loaded_env_files": [],
      "env_file": tmp_path / ".env",
      "request_delay_ms": 0,
      "output_dir": tmp_path / "output",
    }
    values.update(overrides)
    return Settings(**values)

  return factory


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
  """Isolate Settings.load() from the developer's shell and .env file."""
  for name in ENV_NAMES:
    # setenv first so monkeypatch restores the absence on teardown.
    monkeypatch.setenv(name, "")
    monkeypatch.delenv(name)
  env_file = tmp_path / "test.env"
  monkeypatch.setenv("BSKY_COMMON_ENV_FILE", str(env_file))
  return env_file


@pytest.fixture(autouse=True)
def reset_package_logger():
  yield
  logger = logging.getLogger("bsky_common")
  logger.handlers.clear()
  logger.setLevel(logging.NOTSET)
  logger.propagate = True

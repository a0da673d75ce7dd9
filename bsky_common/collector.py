"""Paginated relation collection with cooperative cancellation.

A collection pass pauses only while waiting on the rate limiter and while a page
request is in flight. Cancellation is observed at those points, and the pass
returns whatever it has merged so far.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Protocol

from bsky_common.bsky_api import RelationPage
from bsky_common.config import DEFAULT_LIMIT_PER_REQUEST, DEFAULT_LIMIT_TOTAL, Settings
from bsky_common.models import ProfileCollection
from bsky_common.modes import RelationKind


LOGGER = logging.getLogger(__name__)


class CancellationToken:
  """Stop signal shared by the passes of one submission."""

  def __init__(self) -> None:
    self._event = threading.Event()

  def cancel(self) -> None:
    self._event.set()

  @property
  def cancelled(self) -> bool:
    return self._event.is_set()

  def wait(self, seconds: float) -> bool:
    """Sleep up to ``seconds``; returns True as soon as the token is cancelled."""
    if seconds <= 0:
      return self._event.is_set()
    return self._event.wait(seconds)


class RateLimiter(Protocol):
  def acquire(self, token: CancellationToken) -> None:
    ...


class FixedDelayRateLimiter:
  """Waits a constant delay before every request."""

  def __init__(self, delay_seconds: float) -> None:
    self.delay_seconds = max(0.0, delay_seconds)

  def acquire(self, token: CancellationToken) -> None:
    token.wait(self.delay_seconds)


class TokenBucketRateLimiter:
  def __init__(
    self,
    rate: float,
    capacity: float = 1.0,
    *,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    if rate <= 0:
      raise ValueError("rate must be positive")
    self.rate = rate
    self.capacity = max(1.0, capacity)
    self._clock = clock
    self._tokens = self.capacity
    self._updated_at = clock()

  def _refill(self) -> None:
    now = self._clock()
    elapsed = max(0.0, now - self._updated_at)
    self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
    self._updated_at = now

  def acquire(self, token: CancellationToken) -> None:
    self._refill()
    while self._tokens < 1.0:
      if token.wait((1.0 - self._tokens) / self.rate):
        return
      self._refill()
    self._tokens -= 1.0


class NullRateLimiter:
  def acquire(self, token: CancellationToken) -> None:
    return None


def build_rate_limiter(settings: Settings) -> RateLimiter:
  if settings.requests_per_second > 0:
    return TokenBucketRateLimiter(settings.requests_per_second)
  return FixedDelayRateLimiter(settings.request_delay_seconds)


class RelationSource(Protocol):
  def get_relation_page(
    self,
    actor: str,
    kind: RelationKind,
    *,
    cursor: str | None = None,
    limit: int = 100,
  ) -> RelationPage:
    ...


class PaginatedCollector:
  def __init__(
    self,
    api: RelationSource,
    *,
    limit_total: int = DEFAULT_LIMIT_TOTAL,
    page_size: int = DEFAULT_LIMIT_PER_REQUEST,
    rate_limiter: RateLimiter | None = None,
  ) -> None:
    self.api = api
    self.limit_total = max(0, limit_total)
    self.page_size = max(1, page_size)
    self.rate_limiter = rate_limiter or NullRateLimiter()

  @classmethod
  def from_settings(cls, api: RelationSource, settings: Settings) -> "PaginatedCollector":
    return cls(
      api,
      limit_total=settings.limit_total,
      page_size=settings.page_size,
      rate_limiter=build_rate_limiter(settings),
    )

  @property
  def max_pages(self) -> int | None:
    if not self.limit_total:
      return None
    return math.ceil(self.limit_total / self.page_size)

  def _is_full(self, sink: ProfileCollection) -> bool:
    return bool(self.limit_total) and len(sink) >= self.limit_total

  def collect(
    self,
    account_id: str,
    kind: RelationKind,
    sink: ProfileCollection,
    token: CancellationToken | None = None,
  ) -> None:
    """Merge every ``kind`` relation of ``account_id`` into ``sink``.

    Stops when the token is cancelled, the cursor runs out, or the cap is hit.
    Transport errors propagate; pages already merged stay in ``sink``.
    """
    token = token or CancellationToken()
    max_pages = self.max_pages
    cursor: str | None = None
    pages = 0

    while not token.cancelled and not self._is_full(sink):
      self.rate_limiter.acquire(token)
      if token.cancelled:
        break

      page = self.api.get_relation_page(account_id, kind, cursor=cursor, limit=self.page_size)
      pages += 1
      for record in page.entries:
        if record.did not in sink and self._is_full(sink):
          continue
        sink[record.did] = record
      LOGGER.debug(
        "%s page %d for %s: %d entries, %d collected",
        kind.value, pages, account_id, len(page.entries), len(sink),
      )

      cursor = page.cursor
      if not cursor:
        break
      if max_pages is not None and pages >= max_pages:
        break

    LOGGER.info(
      "Collected %d %s for %s in %d page(s)%s",
      len(sink), kind.value, account_id, pages, " (cancelled)" if token.cancelled else "",
    )

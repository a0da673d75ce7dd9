"""Tests for the paginated collector, cancellation token and rate limiters."""
from __future__ import annotations

import math
import time

import pytest

from bsky_common.bsky_api import BskyApiError
from bsky_common.collector import (
  CancellationToken,
  FixedDelayRateLimiter,
  NullRateLimiter,
  PaginatedCollector,
  TokenBucketRateLimiter,
  build_rate_limiter,
)
from bsky_common.modes import RelationKind

from conftest import EndlessApi, FakeBskyApi, profile


ALICE = "did:plc:alice"


def _pages(*groups):
  return [[profile(name) for name in group] for group in groups]


# ==============================================================================
# Pagination
# ==============================================================================
class TestPagination:
  def test_follows_cursor_until_exhausted(self):
    api = FakeBskyApi(pages={(ALICE, RelationKind.FOLLOWS): _pages(["a", "b"], ["c"], ["d"])})
    sink = {}

    PaginatedCollector(api, page_size=2).collect(ALICE, RelationKind.FOLLOWS, sink)

    assert list(sink) == ["did:plc:a", "did:plc:b", "did:plc:c", "did:plc:d"]
    assert [call[2] for call in api.page_calls] == [None, "1", "2"]
    assert all(call[3] == 2 for call in api.page_calls)

  def test_empty_relation_makes_one_request(self):
    api = FakeBskyApi()
    sink = {}

    PaginatedCollector(api).collect(ALICE, RelationKind.FOLLOWERS, sink)

    assert sink == {}
    assert len(api.page_calls) == 1

  def test_duplicate_across_pages_keeps_later_record(self):
    """Same DID on two pages leaves one entry with the later attributes."""
    first = [profile("a", "Old Name"), profile("b")]
    second = [profile("a", "New Name")]
    api = FakeBskyApi(pages={(ALICE, RelationKind.FOLLOWS): [first, second]})
    sink = {}

    PaginatedCollector(api).collect(ALICE, RelationKind.FOLLOWS, sink)

    assert len(sink) == 2
    assert sink["did:plc:a"].display_name == "New Name"
    # Overwrite keeps the first insertion position.
    assert list(sink) == ["did:plc:a", "did:plc:b"]

  def test_transport_error_propagates_and_keeps_merged_pages(self):
    api = FakeBskyApi(pages={(ALICE, RelationKind.FOLLOWS): _pages(["a"], ["b"])})

    def fail_second(call_index, actor, kind):
      if call_index == 2:
        raise BskyApiError("Bluesky HTTP 502", status_code=502)

    api.on_page = fail_second
    sink = {}

    with pytest.raises(BskyApiError):
      PaginatedCollector(api).collect(ALICE, RelationKind.FOLLOWS, sink)
    assert list(sink) == ["did:plc:a"]


# ==============================================================================
# Total cap
# ==============================================================================
class TestTotalCap:
  @pytest.mark.parametrize("cap,page_size", [(100, 30), (10, 10), (7, 3), (250, 100)])
  def test_never_exceeds_cap_and_bounds_pages(self, cap, page_size):
    api = EndlessApi()
    sink = {}

    PaginatedCollector(api, limit_total=cap, page_size=page_size).collect(ALICE, RelationKind.FOLLOWERS, sink)

    assert len(sink) == cap
    assert api.calls <= math.ceil(cap / page_size)

  def test_repeating_upstream_still_terminates(self):
    """Pages that never add new DIDs stop at ceil(cap / page_size) requests."""
    api = EndlessApi(repeat=True)
    sink = {}

    PaginatedCollector(api, limit_total=100, page_size=30).collect(ALICE, RelationKind.FOLLOWERS, sink)

    assert len(sink) == 30
    assert api.calls == 4

  def test_zero_cap_means_unlimited(self):
    groups = [[f"u{page}_{i}" for i in range(5)] for page in range(30)]
    api = FakeBskyApi(pages={(ALICE, RelationKind.FOLLOWS): _pages(*groups)})
    sink = {}

    collector = PaginatedCollector(api, limit_total=0, page_size=5)
    collector.collect(ALICE, RelationKind.FOLLOWS, sink)

    assert collector.max_pages is None
    assert len(sink) == 150
    assert len(api.page_calls) == 30

  def test_full_sink_fetches_nothing(self):
    api = EndlessApi()
    sink = {f"did:plc:seed{i}": profile(f"seed{i}") for i in range(5)}

    PaginatedCollector(api, limit_total=5).collect(ALICE, RelationKind.FOLLOWS, sink)

    assert api.calls == 0


# ==============================================================================
# Cancellation
# ==============================================================================
class TestCancellation:
  def test_cancelled_before_start_fetches_nothing(self):
    api = FakeBskyApi(pages={(ALICE, RelationKind.FOLLOWS): _pages(["a"], ["b"])})
    token = CancellationToken()
    token.cancel()
    sink = {}

    PaginatedCollector(api).collect(ALICE, RelationKind.FOLLOWS, sink, token)

    assert sink == {}
    assert api.page_calls == []

  def test_cancel_after_n_pages_keeps_those_pages(self):
    api = FakeBskyApi(pages={(ALICE, RelationKind.FOLLOWS): _pages(["a"], ["b"], ["c"], ["d"])})
    token = CancellationToken()

    def stop_on_second(call_index, actor, kind):
      if call_index == 2:
        token.cancel()

    api.on_page = stop_on_second
    sink = {}

    PaginatedCollector(api).collect(ALICE, RelationKind.FOLLOWS, sink, token)

    assert list(sink) == ["did:plc:a", "did:plc:b"]
    assert len(api.page_calls) == 2

  def test_cancel_during_rate_limit_wait_skips_fetch(self):
    api = FakeBskyApi(pages={(ALICE, RelationKind.FOLLOWS): _pages(["a"])})
    token = CancellationToken()

    class CancellingLimiter:
      def acquire(self, token_arg):
        token_arg.cancel()

    sink = {}
    PaginatedCollector(api, rate_limiter=CancellingLimiter()).collect(ALICE, RelationKind.FOLLOWS, sink, token)

    assert api.page_calls == []

  def test_token_cancel_is_idempotent(self):
    token = CancellationToken()
    assert token.cancelled is False
    token.cancel()
    token.cancel()
    assert token.cancelled is True

  def test_wait_returns_immediately_when_cancelled(self):
    token = CancellationToken()
    token.cancel()
    started = time.monotonic()
    assert token.wait(5.0) is True
    assert time.monotonic() - started < 1.0

  def test_wait_zero_does_not_block(self):
    assert CancellationToken().wait(0) is False


# ==============================================================================
# Rate limiters
# ==============================================================================
class FakeClock:
  def __init__(self) -> None:
    self.now = 0.0

  def __call__(self) -> float:
    return self.now


class ClockToken(CancellationToken):
  """Token whose waits advance a fake clock instead of sleeping."""

  def __init__(self, clock: FakeClock) -> None:
    super().__init__()
    self.clock = clock
    self.waits: list[float] = []

  def wait(self, seconds: float) -> bool:
    self.waits.append(seconds)
    self.clock.now += seconds
    return self.cancelled


class TestRateLimiters:
  def test_fixed_delay_waits_configured_delay(self):
    token = ClockToken(FakeClock())
    FixedDelayRateLimiter(0.05).acquire(token)
    assert token.waits == [0.05]

  def test_fixed_delay_is_interrupted_by_cancel(self):
    token = CancellationToken()
    token.cancel()
    started = time.monotonic()
    FixedDelayRateLimiter(5.0).acquire(token)
    assert time.monotonic() - started < 1.0

  def test_token_bucket_allows_burst_then_paces(self):
    clock = FakeClock()
    token = ClockToken(clock)
    limiter = TokenBucketRateLimiter(rate=2.0, capacity=2, clock=clock)

    limiter.acquire(token)
    limiter.acquire(token)
    assert token.waits == []

    limiter.acquire(token)
    assert token.waits == [pytest.approx(0.5)]

  def test_token_bucket_refills_over_time(self):
    clock = FakeClock()
    token = ClockToken(clock)
    limiter = TokenBucketRateLimiter(rate=1.0, clock=clock)

    limiter.acquire(token)
    clock.now += 1.0
    limiter.acquire(token)
    assert token.waits == []

  def test_token_bucket_rejects_non_positive_rate(self):
    with pytest.raises(ValueError):
      TokenBucketRateLimiter(rate=0)

  def test_build_rate_limiter_picks_strategy(self, make_settings):
    assert isinstance(build_rate_limiter(make_settings(request_delay_ms=50)), FixedDelayRateLimiter)
    assert build_rate_limiter(make_settings(request_delay_ms=50)).delay_seconds == pytest.approx(0.05)
    assert isinstance(build_rate_limiter(make_settings(requests_per_second=3.0)), TokenBucketRateLimiter)

  def test_from_settings_uses_clamped_page_size(self, make_settings):
    collector = PaginatedCollector.from_settings(EndlessApi(), make_settings(limit_per_request=500, limit_total=42))
    assert collector.page_size == 100
    assert collector.limit_total == 42

  def test_null_rate_limiter_never_waits(self):
    token = ClockToken(FakeClock())
    NullRateLimiter().acquire(token)
    assert token.waits == []

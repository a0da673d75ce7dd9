from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from mcp.server.fastmcp import FastMCP

from bsky_common.bsky_api import normalize_handle
from bsky_common.collector import CancellationToken
from bsky_common.config import Settings
from bsky_common.errors import BskyCommonError, HandleResolutionError, SubmissionInProgressError
from bsky_common.logging_utils import configure_logging
from bsky_common.modes import Mode, mode_labels
from bsky_common.ops import CommonOps, SubmissionResult


@dataclass
class StoredResult:
  result_id: str
  created_at: str
  result: SubmissionResult
  summary: dict[str, Any]


class ResultStore:
  def __init__(self, *, max_items: int = 50) -> None:
    self._max_items = max(1, max_items)
    self._items: OrderedDict[str, StoredResult] = OrderedDict()

  def put(self, result: SubmissionResult, *, summary: dict[str, Any]) -> StoredResult:
    result_id = uuid4().hex[:12]
    item = StoredResult(
      result_id=result_id,
      created_at=datetime.now().isoformat(timespec="seconds"),
      result=result,
      summary=summary,
    )
    self._items[result_id] = item
    while len(self._items) > self._max_items:
      self._items.popitem(last=False)
    return item

  def get(self, result_id: str) -> StoredResult | None:
    return self._items.get(result_id.strip())

  def list(self, *, limit: int = 20) -> list[StoredResult]:
    safe_limit = max(1, min(limit, 100))
    items = list(self._items.values())
    return list(reversed(items[-safe_limit:]))


def _mcp_instructions() -> str:
  return (
    "Bluesky common-accounts MCP server. "
    "common_accounts compares two handles in one of three modes: "
    "'known' (accounts the first user follows that follow the second), "
    "'followers' (accounts following both) or 'follows' (accounts both follow). "
    "Large accounts take a while; call stop_current to end a running lookup early and get a partial result. "
    "Results get a result_id for read_result and export_result."
  )


def _error_payload(exc: Exception, **extra: Any) -> dict[str, Any]:
  return {"ok": False, "error": str(exc), **extra}


def create_mcp_server(settings: Settings | None = None, *, ops: CommonOps | None = None) -> FastMCP:
  runtime_settings = settings or Settings.load()
  ops = ops or CommonOps(runtime_settings)
  store = ResultStore()
  server = FastMCP(
    name="bsky-common",
    instructions=_mcp_instructions(),
    json_response=True,
  )

  def record(result: SubmissionResult) -> dict[str, Any]:
    stored = store.put(result, summary=ops.summarize_result(result))
    return {
      **result.as_payload(base_url=runtime_settings.profile_url),
      "result_id": stored.result_id,
      "created_at": stored.created_at,
    }

  def parse_request(viewer: str, target: str, mode: str) -> tuple[str, str, Mode] | dict[str, Any]:
    try:
      parsed_mode = Mode.parse(mode)
    except ValueError as exc:
      return _error_payload(exc)
    viewer_handle = normalize_handle(viewer)
    target_handle = normalize_handle(target)
    if not viewer_handle or not target_handle:
      return _error_payload(
        ValueError("Invalid handle"),
        viewer_invalid=not viewer_handle,
        target_invalid=not target_handle,
      )
    return viewer_handle, target_handle, parsed_mode

  def run_common(viewer: str, target: str, mode: Mode, token: CancellationToken) -> dict[str, Any]:
    try:
      result = ops.submit(viewer, target, mode, token=token)
    except HandleResolutionError as exc:
      viewer_label, target_label = mode_labels(mode)
      return _error_payload(
        exc,
        viewer_invalid=exc.viewer_failed,
        target_invalid=exc.target_failed,
        labels={"viewer": viewer_label, "target": target_label},
      )
    except BskyCommonError as exc:
      return _error_payload(exc)
    return record(result)

  @server.tool(description="Describe the server, API endpoint and pagination limits.")
  def server_info() -> dict[str, Any]:
    return {
      "ok": True,
      "server_name": "bsky-common",
      "transport": "stdio by default",
      "api_url": runtime_settings.api_url,
      "limit_total": runtime_settings.limit_total,
      "page_size": runtime_settings.page_size,
      "request_delay_ms": runtime_settings.request_delay_ms,
      "requests_per_second": runtime_settings.requests_per_second,
      "modes": [mode.value for mode in Mode],
      "running": ops.running,
    }

  @server.tool(description="Resolve a Bluesky handle or profile URL to its DID.")
  def resolve_handle(handle: str) -> dict[str, Any]:
    cleaned = normalize_handle(handle)
    did = ops.resolve_handle(cleaned) if cleaned else None
    if not did:
      return {"ok": False, "error": "invalid_handle", "handle": handle}
    return {"ok": True, "handle": cleaned, "did": did}

  @server.tool(
    description=(
      "List accounts two Bluesky users have in common. "
      "mode is 'known', 'followers' or 'follows'."
    ),
  )
  async def common_accounts(viewer: str, target: str, mode: str = "followers") -> dict[str, Any]:
    request = parse_request(viewer, target, mode)
    if isinstance(request, dict):
      return request
    try:
      token = ops.reserve()
    except SubmissionInProgressError as exc:
      return _error_payload(exc)
    try:
      # Off the event loop so stop_current can run meanwhile.
      return await asyncio.to_thread(run_common, *request, token)
    except asyncio.CancelledError:
      # The worker thread outlives the cancelled call; end its pass too.
      ops.request_stop()
      ops.release(token)
      raise

  @server.tool(description="Stop the running common_accounts lookup; it returns what was collected so far.")
  def stop_current() -> dict[str, Any]:
    return {"ok": True, "stopped": ops.request_stop()}

  @server.tool(description="List recent stored results.")
  def list_results(limit: int = 20) -> dict[str, Any]:
    items = store.list(limit=limit)
    return {
      "ok": True,
      "count": len(items),
      "results": [
        {
          "result_id": item.result_id,
          "created_at": item.created_at,
          "summary": item.summary,
        }
        for item in items
      ],
    }

  @server.tool(description="Read a stored result by result_id.")
  def read_result(result_id: str) -> dict[str, Any]:
    item = store.get(result_id)
    if item is None:
      return {"ok": False, "error": "unknown_result_id"}
    return {
      "ok": True,
      "result_id": item.result_id,
      "created_at": item.created_at,
      "summary": item.summary,
      "payload": item.result.as_payload(base_url=runtime_settings.profile_url),
    }

  @server.tool(description="Export a stored result by result_id to CSV or JSON.")
  def export_result(result_id: str, format: str, filename_hint: str | None = None) -> dict[str, Any]:
    item = store.get(result_id)
    if item is None:
      return {"ok": False, "error": "unknown_result_id"}
    return ops.export_collection(item.result, fmt=format, filename_hint=filename_hint)

  return server


def main() -> int:
  settings = Settings.load()
  configure_logging(settings.debug)
  server = create_mcp_server(settings)
  server.run(transport="stdio")
  return 0


if __name__ == "__main__":
  raise SystemExit(main())

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from bsky_common.bsky_api import normalize_handle
from bsky_common.config import Settings
from bsky_common.errors import BskyCommonError, HandleResolutionError
from bsky_common.modes import Mode, mode_labels
from bsky_common.ops import CommonOps, SubmissionResult, sorted_profiles


_CONSOLE = Console()


@dataclass
class SessionState:
  mode: Mode = Mode.FOLLOWERS
  render_mode: str = "rich"
  sort: str = "fetch"
  last_result: SubmissionResult | None = None


_ASCII_ART = r"""
 ___  ___ _  ____   __      ___ ___  __  __ __  __  ___  _  _
| _ )/ __| |/ /\ \ / /___  / __/ _ \|  \/  |  \/  |/ _ \| \| |
| _ \\__ \ ' <  \ V /|___|| (_| (_) | |\/| | |\/| | (_) | .` |
|___/|___/_|\_\  |_|       \___\___/|_|  |_|_|  |_|\___/|_|\_|
"""


def _default_render_mode() -> str:
  return "rich" if _CONSOLE.is_terminal else "plain"


def _print_banner(settings: Settings, state: SessionState) -> None:
  print(_ASCII_ART.rstrip())
  print("Type 'help' for commands. Type 'exit' to quit.\n")
  print(f"- API: {settings.api_url}")
  print(f"- Mode: {state.mode.value}")
  print(f"- Limit per side: {'unlimited' if settings.uncapped else settings.limit_total}")
  if settings.loaded_env_files:
    loaded = ", ".join(str(path) for path in settings.loaded_env_files)
    print(f"- Loaded .env: {loaded}")
  print("")


def _print_help() -> None:
  print(
    "\nCommands:\n"
    "- help: show this help\n"
    "- common <handle1> <handle2> [mode]: list accounts the two users have in common\n"
    "- <handle1> <handle2>: same as common, using the current mode\n"
    "- mode: show current mode\n"
    "- mode <known|followers|follows>: switch mode\n"
    "- sort <fetch|handle>: order of the rendered list\n"
    "- render <rich|plain>: switch output mode\n"
    "- last: print raw JSON for the last result\n"
    "- export <csv|json>: write the last result to the output directory\n"
    "- limits: show pagination limits\n"
    "- reload: reload env from files\n"
    "- exit | quit: close CLI\n"
    "\nModes:\n"
    "- known: accounts the viewer follows that also follow the target\n"
    "- followers: accounts that follow both users\n"
    "- follows: accounts both users follow\n"
    "\nPress Ctrl+C while a lookup runs to stop it and show what was collected.\n",
  )


def _print_limits(settings: Settings) -> None:
  print(f"limit per side: {'unlimited' if settings.uncapped else settings.limit_total}")
  print(f"page size: {settings.page_size}")
  if settings.requests_per_second > 0:
    print(f"throttle: token bucket, {settings.requests_per_second:g} req/s")
  else:
    print(f"throttle: {settings.request_delay_ms} ms between requests")
  print(f"request timeout: {settings.request_timeout:g}s\n")


def _command_arg(text: str) -> str:
  parts = text.split(maxsplit=1)
  return parts[1].strip() if len(parts) > 1 else ""


def run_submission(ops: CommonOps, viewer: str, target: str, mode: Mode, *, console: Console | None = None) -> SubmissionResult:
  """Run ``ops.submit`` in a worker thread so Ctrl+C can request a stop."""
  console = console or _CONSOLE
  outcome: dict[str, Any] = {}
  token = ops.reserve()

  def run() -> None:
    try:
      outcome["result"] = ops.submit(viewer, target, mode, token=token)
    except Exception as exc:
      outcome["error"] = exc

  worker = threading.Thread(target=run, daemon=True)
  try:
    worker.start()
  except RuntimeError:
    ops.release(token)
    raise
  with console.status(f"Collecting {mode.value} for @{viewer} and @{target} (Ctrl+C to stop)"):
    while worker.is_alive():
      try:
        worker.join(0.1)
      except KeyboardInterrupt:
        if ops.request_stop():
          console.print("Stopping, keeping what was collected...")

  if "error" in outcome:
    raise outcome["error"]
  return outcome["result"]


def print_resolution_error(exc: HandleResolutionError, mode: Mode, viewer: str, target: str) -> None:
  viewer_label, target_label = mode_labels(mode)
  if exc.viewer_failed:
    print(f"{viewer_label}: invalid handle @{viewer}")
  if exc.target_failed:
    print(f"{target_label}: invalid handle @{target}")
  print("Nothing was fetched.\n")


def print_result(result: SubmissionResult, settings: Settings, *, render_mode: str = "rich", sort: str = "fetch") -> None:
  profiles = sorted_profiles(result.profiles) if sort == "handle" else list(result.profiles.values())
  header = f"{result.description}: {result.count}"
  if result.cancelled:
    header += " (stopped early, partial result)"
  counts = f"collected {result.viewer_count} for @{result.viewer}, {result.target_count} for @{result.target}"

  if render_mode != "rich":
    print(f"\n[{header}]")
    print(counts)
    for profile in profiles:
      name = f" ({profile.display_name})" if profile.display_name else ""
      print(f"@{profile.handle}{name} {profile.profile_url(settings.profile_url)}")
      if profile.description:
        print(f"  {profile.description.splitlines()[0][:200]}")
    print("")
    return

  table = Table(title=header, caption=counts, show_lines=False, expand=True)
  table.add_column("Handle", no_wrap=True)
  table.add_column("Name")
  table.add_column("Description", ratio=2)
  for profile in profiles:
    link = profile.profile_url(settings.profile_url)
    table.add_row(
      f"[link={link}]@{escape(profile.handle)}[/link]",
      escape(profile.display_name or ""),
      escape((profile.description or "").replace("\n", " ")[:200]),
    )
  _CONSOLE.print(table)
  print("")


def _parse_common_args(text: str, default_mode: Mode) -> tuple[str, str, Mode]:
  parts = text.split()
  if len(parts) not in {2, 3}:
    raise ValueError("Usage: common <handle1> <handle2> [known|followers|follows]")
  mode = Mode.parse(parts[2]) if len(parts) == 3 else default_mode
  viewer = normalize_handle(parts[0])
  target = normalize_handle(parts[1])
  if not viewer or not target:
    bad = parts[0] if not viewer else parts[1]
    raise ValueError(f"Not a Bluesky handle or profile URL: {bad}")
  return viewer, target, mode


def _handle_common(text: str, state: SessionState, ops: CommonOps) -> None:
  try:
    viewer, target, mode = _parse_common_args(text, state.mode)
  except ValueError as exc:
    print(f"{exc}\n")
    return
  state.mode = mode
  try:
    result = run_submission(ops, viewer, target, mode)
  except HandleResolutionError as exc:
    print_resolution_error(exc, mode, viewer, target)
    return
  except BskyCommonError as exc:
    print(f"Error: {exc}\nNothing was fetched.\n")
    return
  state.last_result = result
  print_result(result, ops.settings, render_mode=state.render_mode, sort=state.sort)


def run_repl(settings: Settings, *, ops: CommonOps | None = None, mode: Mode = Mode.FOLLOWERS) -> int:
  state = SessionState(mode=mode, render_mode=_default_render_mode())
  ops = ops or CommonOps(settings)

  _print_banner(settings, state)

  while True:
    try:
      raw = input("bsky-common> ").strip()
    except (KeyboardInterrupt, EOFError):
      print("\nBye.")
      return 0

    if not raw:
      continue

    if raw in {"exit", "quit", "q"}:
      print("Bye.")
      return 0

    if raw in {"help", "?"}:
      _print_help()
      continue

    if raw == "mode":
      print(f"Current mode: {state.mode.value}\n")
      continue

    if raw.startswith("mode "):
      try:
        state.mode = Mode.parse(_command_arg(raw))
      except ValueError as exc:
        print(f"{exc}\n")
        continue
      print(f"Mode set to: {state.mode.value}\n")
      continue

    if raw.startswith("sort "):
      candidate = _command_arg(raw).lower()
      if candidate not in {"fetch", "handle"}:
        print("Usage: sort <fetch|handle>\n")
        continue
      state.sort = candidate
      print(f"Sort set to: {state.sort}\n")
      continue

    if raw.startswith("render "):
      candidate = _command_arg(raw).lower()
      if candidate not in {"rich", "plain"}:
        print("Usage: render <rich|plain>\n")
        continue
      state.render_mode = candidate
      print(f"Output mode set to: {state.render_mode}\n")
      continue

    if raw == "limits":
      _print_limits(ops.settings)
      continue

    if raw == "last":
      if state.last_result is None:
        print("No result yet.\n")
      else:
        print(json.dumps(state.last_result.as_payload(base_url=ops.settings.profile_url), ensure_ascii=False, indent=2))
        print("")
      continue

    if raw.startswith("export"):
      if state.last_result is None:
        print("No result to export yet.\n")
        continue
      exported = ops.export_collection(state.last_result, fmt=_command_arg(raw) or "csv")
      if exported.get("ok"):
        print(f"Exported {exported['row_count']} rows to {exported['path']}\n")
      else:
        print(f"{exported.get('message')}\n")
      continue

    if raw == "reload":
      settings = Settings.load()
      ops = CommonOps(settings)
      print("Environment reloaded.\n")
      continue

    if raw.startswith("common "):
      _handle_common(_command_arg(raw), state, ops)
      continue

    if len(raw.split()) == 2:
      _handle_common(raw, state, ops)
      continue

    print("Unknown command. Type 'help'.\n")


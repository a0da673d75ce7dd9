from __future__ import annotations

import argparse
import dataclasses

from bsky_common import __version__
from bsky_common.bsky_api import normalize_handle
from bsky_common.config import Settings
from bsky_common.errors import BskyCommonError, HandleResolutionError
from bsky_common.logging_utils import configure_logging
from bsky_common.modes import Mode
from bsky_common.ops import CommonOps
from bsky_common.repl import print_resolution_error, print_result, run_repl, run_submission


def _build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
    prog="bsky-common",
    description=(
      "List the Bluesky accounts two users have in common. "
      "Without handles, starts an interactive session."
    ),
  )
  parser.add_argument("viewer", nargs="?", help="First handle (viewer in known mode).")
  parser.add_argument("target", nargs="?", help="Second handle (target in known mode).")
  parser.add_argument(
    "--mode",
    default=Mode.FOLLOWERS.value,
    help="known, followers or follows (default: followers).",
  )
  parser.add_argument("--limit-total", type=int, help="Max accounts collected per side, 0 for unlimited.")
  parser.add_argument("--page-size", type=int, help="Accounts requested per page (1..100).")
  parser.add_argument("--delay-ms", type=int, help="Delay before each page request.")
  parser.add_argument("--rps", type=float, help="Use a token bucket at this many requests per second.")
  parser.add_argument("--sort", choices=["fetch", "handle"], default="fetch", help="Order of the printed list.")
  parser.add_argument("--plain", action="store_true", help="Plain text output instead of a table.")
  parser.add_argument("--export", choices=["csv", "json"], help="Also write the result to the output directory.")
  parser.add_argument("--debug", action="store_true", help="Verbose logging to stderr.")
  parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
  return parser


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
  overrides = {}
  if args.limit_total is not None:
    overrides["limit_total"] = args.limit_total
  if args.page_size is not None:
    overrides["limit_per_request"] = args.page_size
  if args.delay_ms is not None:
    overrides["request_delay_ms"] = max(0, args.delay_ms)
  if args.rps is not None:
    overrides["requests_per_second"] = max(0.0, args.rps)
  if args.debug:
    overrides["debug"] = True
  return dataclasses.replace(settings, **overrides) if overrides else settings


def _run_once(settings: Settings, args: argparse.Namespace, mode: Mode) -> int:
  viewer = normalize_handle(args.viewer)
  target = normalize_handle(args.target)
  for raw, cleaned in ((args.viewer, viewer), (args.target, target)):
    if not cleaned:
      print(f"Error: not a Bluesky handle or profile URL: {raw}")
      return 1

  ops = CommonOps(settings)
  try:
    result = run_submission(ops, viewer, target, mode)
  except HandleResolutionError as exc:
    print_resolution_error(exc, mode, viewer, target)
    return 1
  except BskyCommonError as exc:
    print(f"Error: {exc}\nNothing was fetched.")
    return 1

  print_result(result, settings, render_mode="plain" if args.plain else "rich", sort=args.sort)
  if args.export:
    exported = ops.export_collection(result, fmt=args.export)
    print(f"Exported {exported['row_count']} rows to {exported['path']}")
  return 0


def main(argv: list[str] | None = None) -> int:
  parser = _build_parser()
  args = parser.parse_args(argv)

  try:
    mode = Mode.parse(args.mode)
  except ValueError as exc:
    parser.error(str(exc))
  if bool(args.viewer) != bool(args.target):
    parser.error("Pass both handles, or none for the interactive session.")
  if args.limit_total is not None and args.limit_total < 0:
    parser.error("--limit-total must be 0 (unlimited) or a positive number.")

  settings = _apply_overrides(Settings.load(), args)
  configure_logging(settings.debug)

  if args.viewer:
    return _run_once(settings, args, mode)
  return run_repl(settings, mode=mode)


if __name__ == "__main__":
  raise SystemExit(main())

"""Console logging for the CLI and MCP entry points."""
from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(debug: bool = False, *, console: Console | None = None) -> None:
  # stderr keeps stdout clean for exports and the MCP stdio transport.
  handler = RichHandler(
    console=console or Console(stderr=True),
    show_path=debug,
    rich_tracebacks=debug,
    markup=False,
  )
  handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

  root = logging.getLogger("bsky_common")
  root.handlers.clear()
  root.addHandler(handler)
  root.setLevel(logging.DEBUG if debug else logging.WARNING)
  root.propagate = False

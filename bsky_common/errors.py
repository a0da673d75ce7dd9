from __future__ import annotations


class BskyCommonError(RuntimeError):
  """Base class for errors surfaced to the CLI and MCP callers."""


class HandleResolutionError(BskyCommonError):
  """One or both handles did not resolve to a DID."""

  def __init__(self, *, viewer_failed: bool, target_failed: bool) -> None:
    self.viewer_failed = viewer_failed
    self.target_failed = target_failed
    sides = [name for name, failed in (("viewer", viewer_failed), ("target", target_failed)) if failed]
    super().__init__(f"Invalid handle: {', '.join(sides) or 'unknown'}")


class SubmissionInProgressError(BskyCommonError):
  """A submission is already running on this instance."""

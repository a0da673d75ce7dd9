from __future__ import annotations

from enum import Enum


class RelationKind(str, Enum):
  FOLLOWS = "follows"
  FOLLOWERS = "followers"


class Mode(str, Enum):
  KNOWN = "known"
  FOLLOWERS = "followers"
  FOLLOWS = "follows"

  @classmethod
  def parse(cls, text: str | Mode) -> "Mode":
    if isinstance(text, Mode):
      return text
    key = (text or "").strip().lower()
    mode = _MODE_ALIASES.get(key)
    if mode is None:
      choices = ", ".join(item.value for item in cls)
      raise ValueError(f"Unknown mode {text!r}. Use one of: {choices}.")
    return mode


_MODE_ALIASES: dict[str, Mode] = {
  "known": Mode.KNOWN,
  "mutual": Mode.KNOWN,
  "followers": Mode.FOLLOWERS,
  "follower": Mode.FOLLOWERS,
  "follows": Mode.FOLLOWS,
  "following": Mode.FOLLOWS,
}

_MODE_KINDS: dict[Mode, tuple[RelationKind, RelationKind]] = {
  # Does anyone the viewer follows also follow the target?
  Mode.KNOWN: (RelationKind.FOLLOWS, RelationKind.FOLLOWERS),
  Mode.FOLLOWERS: (RelationKind.FOLLOWERS, RelationKind.FOLLOWERS),
  Mode.FOLLOWS: (RelationKind.FOLLOWS, RelationKind.FOLLOWS),
}


def mode_to_kinds(mode: Mode) -> tuple[RelationKind, RelationKind]:
  """Return ``(viewer_kind, target_kind)`` for a mode."""
  return _MODE_KINDS[Mode.parse(mode)]


def mode_labels(mode: Mode) -> tuple[str, str]:
  if Mode.parse(mode) is Mode.KNOWN:
    return "Viewer", "Target"
  return "User 1", "User 2"


def describe_result(mode: Mode, viewer: str, target: str) -> str:
  mode = Mode.parse(mode)
  if mode is Mode.KNOWN:
    return f"Accounts @{viewer} follows that follow @{target}"
  if mode is Mode.FOLLOWERS:
    return f"Accounts following both @{viewer} and @{target}"
  return f"Accounts followed by both @{viewer} and @{target}"

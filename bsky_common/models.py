from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from bsky_common.config import DEFAULT_PROFILE_URL


@dataclass(frozen=True)
class ProfileRecord:
  """Display attributes of one account, keyed everywhere by ``did``."""

  did: str
  handle: str
  display_name: str | None = None
  avatar: str | None = None
  description: str | None = None

  @property
  def label(self) -> str:
    return self.display_name or f"@{self.handle}"

  def profile_url(self, base_url: str = DEFAULT_PROFILE_URL) -> str:
    return f"{base_url.rstrip('/')}/{self.handle or self.did}"

  def as_dict(self, *, base_url: str = DEFAULT_PROFILE_URL) -> dict[str, Any]:
    payload = asdict(self)
    payload["profile_url"] = self.profile_url(base_url)
    return payload


# Insertion-ordered; reflects fetch order.
ProfileCollection = dict[str, ProfileRecord]

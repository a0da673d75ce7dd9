from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


DEFAULT_API_URL = "https://public.api.bsky.app"
DEFAULT_PROFILE_URL = "https://bsky.app/profile"
DEFAULT_LIMIT_TOTAL = 10_000
DEFAULT_LIMIT_PER_REQUEST = 100
DEFAULT_REQUEST_DELAY_MS = 50
DEFAULT_REQUEST_TIMEOUT = 25.0

# getFollows/getFollowers reject limits above this.
MAX_LIMIT_PER_REQUEST = 100


def _env_bool(name: str, default: bool = False) -> bool:
  raw = os.getenv(name)
  if raw is None:
    return default
  return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
  raw = os.getenv(name)
  if raw is None or not raw.strip():
    return default
  try:
    value = int(raw.strip())
  except ValueError:
    return default
  return value if value >= minimum else default


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
  raw = os.getenv(name)
  if raw is None or not raw.strip():
    return default
  try:
    value = float(raw.strip())
  except ValueError:
    return default
  return value if value >= minimum else default


def get_project_root() -> Path:
  return Path(__file__).resolve().parent.parent


def get_env_file_path() -> Path:
  override = os.getenv("BSKY_COMMON_ENV_FILE")
  if override:
    return Path(override).expanduser().resolve()
  return (get_project_root() / ".env").resolve()


def load_env_file() -> list[Path]:
  env_path = get_env_file_path()
  loaded: list[Path] = []
  if env_path.exists():
    # Own .env wins over inherited shell values.
    load_dotenv(env_path, override=True)
    loaded.append(env_path)
  return loaded


@dataclass(frozen=True)
class Settings:
  loaded_env_files: list[Path]
  env_file: Path

  api_url: str = DEFAULT_API_URL
  profile_url: str = DEFAULT_PROFILE_URL
  limit_total: int = DEFAULT_LIMIT_TOTAL
  limit_per_request: int = DEFAULT_LIMIT_PER_REQUEST
  request_delay_ms: int = DEFAULT_REQUEST_DELAY_MS
  requests_per_second: float = 0.0
  request_timeout: float = DEFAULT_REQUEST_TIMEOUT
  proxy_url: str | None = None
  output_dir: Path = Path("output")
  debug: bool = False

  @property
  def page_size(self) -> int:
    return max(1, min(self.limit_per_request, MAX_LIMIT_PER_REQUEST))

  @property
  def request_delay_seconds(self) -> float:
    return max(0, self.request_delay_ms) / 1000.0

  @property
  def uncapped(self) -> bool:
    return self.limit_total <= 0

  @classmethod
  def load(cls) -> "Settings":
    loaded_env_files = load_env_file()
    env_file = get_env_file_path()
    return cls(
      loaded_env_files=loaded_env_files,
      env_file=env_file,
      api_url=os.getenv("BSKY_API_URL", DEFAULT_API_URL),
      profile_url=os.getenv("BSKY_PROFILE_URL", DEFAULT_PROFILE_URL),
      limit_total=_env_int("BSKY_LIMIT_TOTAL", DEFAULT_LIMIT_TOTAL),
      limit_per_request=_env_int("BSKY_LIMIT_PER_REQUEST", DEFAULT_LIMIT_PER_REQUEST, minimum=1),
      request_delay_ms=_env_int("BSKY_REQUEST_DELAY_MS", DEFAULT_REQUEST_DELAY_MS),
      requests_per_second=_env_float("BSKY_REQUESTS_PER_SECOND", 0.0),
      request_timeout=_env_float("BSKY_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
      proxy_url=os.getenv("PROXY_URL") or None,
      output_dir=Path(os.getenv("BSKY_OUTPUT_DIR", "output")).expanduser(),
      debug=_env_bool("DEBUG", default=False),
    )

"""Minimal .env support so local runs and tests share one configuration source."""

from __future__ import annotations

import os
from pathlib import Path

ENV_FILE_VARIABLE = "BARBERBELL_ENV_FILE"


def default_env_path() -> Path:
  """Resolve the .env file, honouring an explicit override before the repo root default."""
  explicit = (os.getenv(ENV_FILE_VARIABLE) or "").strip()
  if explicit:
    return Path(explicit).expanduser()

  return Path(__file__).resolve().parents[2] / ".env"


def _parse_line(raw_line: str) -> tuple[str, str] | None:
  line = raw_line.strip()
  if not line or line.startswith("#"):
    return None

  if line.startswith("export "):
    line = line[len("export ") :].lstrip()

  key, separator, value = line.partition("=")
  key = key.strip()
  if not separator or not key:
    return None

  value = value.strip()
  # Strip matching quotes so values copied from shell exports keep working.
  if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
    value = value[1:-1]

  return key, value


def load_env_file(path: Path, *, override: bool = False) -> list[str]:
  """Export key=value pairs from ``path`` and return the keys that were applied."""
  if not path.is_file():
    return []

  applied: list[str] = []
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    parsed = _parse_line(raw_line)
    if parsed is None:
      continue

    key, value = parsed
    if not override and key in os.environ:
      continue

    os.environ[key] = value
    applied.append(key)

  return applied

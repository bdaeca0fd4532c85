import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .manifest import DEFAULT_MANIFEST_NAME

CONFIG_FILENAME = "assetsplit.yml"
DEFAULT_MAX_CHUNK_SIZE = 20 * 1024 * 1024

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([a-zA-Z]*)\s*$")
_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "kib": 1024,
    "m": 1024**2,
    "mb": 1024**2,
    "mib": 1024**2,
    "g": 1024**3,
    "gb": 1024**3,
    "gib": 1024**3,
}


def parse_size(value: Any) -> int:
    """Convert ``20971520``, ``"20MiB"`` or ``"512kb"`` into a byte count.

    Unit suffixes are binary multiples regardless of spelling, matching the
    way static hosts document their limits.
    """
    if isinstance(value, bool):
        raise ValueError("Size must be an integer or a string such as '20MiB'.")
    if isinstance(value, int):
        size = value
    else:
        match = _SIZE_PATTERN.match(str(value))
        if not match:
            raise ValueError(f"Unrecognized size: {value!r}")
        number, unit = match.groups()
        multiplier = _SIZE_UNITS.get(unit.lower())
        if multiplier is None:
            raise ValueError(f"Unknown size unit '{unit}' in {value!r}")
        size = int(number) * multiplier
    if size <= 0:
        raise ValueError("Size must be positive.")
    return size


class RuntimeConfig(BaseModel):
    """Options for resolving split assets against a published site."""

    site_url: str = Field(
        default="http://127.0.0.1:8000/",
        description="Absolute URL of the published root (where the manifest lives).",
    )
    asset_path: str = Field(
        default="libreoffice-wasm/",
        description="Path (relative to the site root) holding the engine assets.",
    )
    timeout: float = Field(
        default=60.0,
        gt=0,
        description="Overall deadline in seconds for resolving one asset before falling back.",
    )
    max_concurrent_fetches: int = Field(
        default=1,
        ge=1,
        le=32,
        description="Number of chunk requests allowed in flight for one asset (1 = sequential).",
    )

    @field_validator("site_url", "asset_path")
    def _ensure_trailing_slash(cls, value: str) -> str:
        text = value.strip()
        if text and not text.endswith("/"):
            text = f"{text}/"
        return text


class Config(BaseModel):
    project_name: str = Field(default="assetsplit project")
    root_dir: Path = Field(default=Path("dist"))
    manifest_name: str = Field(default=DEFAULT_MANIFEST_NAME)
    max_chunk_size: int = Field(
        default=DEFAULT_MAX_CHUNK_SIZE,
        description="Files strictly larger than this many bytes are split.",
    )
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @field_validator("root_dir", mode="before")
    def _ensure_path(cls, value: Any) -> Path:
        return Path(value)

    @field_validator("max_chunk_size", mode="before")
    def _parse_size(cls, value: Any) -> int:
        return parse_size(value)

    @field_validator("manifest_name")
    def _normalize_manifest_name(cls, value: str) -> str:
        text = value.strip().replace("\\", "/").lstrip("/")
        if not text:
            raise ValueError("manifest_name must not be empty.")
        return text

    @property
    def manifest_path(self) -> Path:
        return self.root_dir / self.manifest_name


def load_config(path: str | Path) -> Config:
    """Load configuration and resolve relative paths based on the config location.

    ``path`` may point to a file (e.g. ``/site/assetsplit.yml``) or to a
    directory containing that file. A directory without a config file yields
    the defaults anchored to that directory.
    """
    candidate = Path(path)
    data: dict[str, Any] = {}
    base_dir: Path
    if candidate.is_dir():
        config_file = candidate / CONFIG_FILENAME
        if config_file.exists():
            with config_file.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        base_dir = candidate.resolve()
    else:
        if not candidate.exists():
            raise FileNotFoundError(candidate)
        with candidate.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        base_dir = candidate.parent.resolve()

    if not isinstance(data, dict):
        raise ValueError(f"Configuration at {candidate} must be a mapping.")

    cfg = Config(**data)
    if not cfg.root_dir.is_absolute():
        cfg.root_dir = (base_dir / cfg.root_dir).resolve()
    return cfg

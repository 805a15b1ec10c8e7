from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1
DEFAULT_URL_PREFIX = "https://us-central.manta.mnx.io/Joyent_Dev/public/SmartOS/"
DEFAULT_DIGEST_ALGORITHM = "md5"
# Image server retired long ago; configs that still name it are discarded.
STALE_HOSTS = ("us-east.manta.joyent.com",)

ENV_DIGEST_ALGORITHM = "BOOTPOOL_DIGEST_ALGORITHM"
ENV_SUM_URL = "BOOTPOOL_SUM_URL"
ENV_NO_SUM = "BOOTPOOL_NO_SUM"
ENV_URL_PREFIX = "BOOTPOOL_URL_PREFIX"


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext == "json":
        return "json"
    return "yaml"


@dataclass(frozen=True)
class Settings:
    raw: Dict[str, Any]

    @property
    def digest_algorithm(self) -> str:
        return str(self.raw.get("digest_algorithm") or DEFAULT_DIGEST_ALGORITHM)

    @property
    def skip_checksum(self) -> bool:
        value = self.raw.get("skip_checksum", False)
        if isinstance(value, bool):
            return value
        return str(value).strip() == "1"

    @property
    def url_prefix(self) -> str:
        prefix = str(self.raw.get("url_prefix") or DEFAULT_URL_PREFIX)
        return prefix if prefix.endswith("/") else prefix + "/"

    @property
    def sum_url(self) -> Optional[str]:
        return self.raw.get("sum_url") or None

    @property
    def is_default_prefix(self) -> bool:
        return self.url_prefix == DEFAULT_URL_PREFIX


def default_config() -> Dict[str, Any]:
    return {
        "version": CONFIG_VERSION,
        "digest_algorithm": DEFAULT_DIGEST_ALGORITHM,
        "skip_checksum": False,
    }


def _parse(p: Path) -> Any:
    text = p.read_text(encoding="utf-8")
    if any(host in text for host in STALE_HOSTS):
        raise ValueError("references a retired image server")
    if _detect_format(p) == "json":
        return json.loads(text)
    return yaml.safe_load(text)


def save_config(path: str, cfg: Mapping[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    if _detect_format(p) == "json":
        p.write_text(json.dumps(dict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    else:
        p.write_text(yaml.safe_dump(dict(cfg), sort_keys=False), encoding="utf-8")


def _write_defaults(path: str) -> Dict[str, Any]:
    cfg = default_config()
    try:
        save_config(path, cfg)
    except OSError as e:
        logger.warning("Cannot write %s (%s); using defaults", path, e)
    return cfg


def load_config(path: str) -> Dict[str, Any]:
    """Load the persisted configuration, regenerating it when unusable.

    A missing file is created with defaults. Unparseable content, a
    non-mapping document, an unknown version, or a reference to a retired
    image server is discarded with a warning and replaced by defaults.
    An unwritable location only costs the persisted copy.
    """

    p = Path(path)
    if not p.exists():
        logger.info("Creating %s", path)
        return _write_defaults(path)

    reason: Optional[str] = None
    try:
        data = _parse(p)
    except (OSError, ValueError, yaml.YAMLError) as e:
        data = None
        reason = str(e)
    else:
        if not isinstance(data, dict):
            reason = f"expected a mapping, got {type(data).__name__}"
        elif str(data.get("version")) != str(CONFIG_VERSION):
            reason = f"unsupported config version {data.get('version')!r}"

    if reason is not None:
        logger.warning("Discarding configuration %s (%s); regenerating defaults", path, reason)
        return _write_defaults(path)

    logger.info("Version %s of %s", CONFIG_VERSION, path)
    return data


def apply_env_overrides(cfg: Dict[str, Any], environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Environment variables win over the persisted values."""

    env = os.environ if environ is None else environ
    out = dict(cfg)
    if env.get(ENV_DIGEST_ALGORITHM):
        out["digest_algorithm"] = env[ENV_DIGEST_ALGORITHM]
    if env.get(ENV_NO_SUM):
        out["skip_checksum"] = env[ENV_NO_SUM].strip() == "1"
    if env.get(ENV_URL_PREFIX):
        out["url_prefix"] = env[ENV_URL_PREFIX]
    if env.get(ENV_SUM_URL):
        out["sum_url"] = env[ENV_SUM_URL]
    return out


def load_settings(
    path: Optional[str],
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from the persisted file (when path is given) plus environment."""

    cfg = load_config(path) if path else default_config()
    return Settings(raw=apply_env_overrides(cfg, environ))

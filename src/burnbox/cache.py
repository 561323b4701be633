"""Shared compiler cache (sccache) directory, environment and statistics.

One cache directory serves every compile in the image: the warm-up build,
interactive notebook cells and manual builds. Provisioning creates it once
and never recreates it; sccache does its own locking inside it.
"""

from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from burnbox.config import Settings
from burnbox.errors import ProvisionError
from burnbox.logger import logger

COMPILER_WRAPPER = "sccache"

_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def parse_size(size: str) -> int:
    """Convert an sccache size string (``10G``, ``512M``, ``1024``) to bytes."""
    text = size.strip().upper()
    unit = text[-1:] if text[-1:] in ("K", "M", "G", "T") else ""
    number = text[: len(text) - len(unit)]
    if not number.isdigit():
        raise ValueError(f"Invalid cache size: {size!r}")
    return int(number) * _SIZE_UNITS[unit]


def cache_env(settings: Settings) -> dict[str, str]:
    """Variables that route rustc through the shared cache."""
    return {
        "SCCACHE_DIR": str(settings.cache_dir),
        "SCCACHE_CACHE_SIZE": settings.cache_size,
        "RUSTC_WRAPPER": COMPILER_WRAPPER,
    }


def ensure_cache_dir(settings: Settings) -> bool:
    """Create the cache directory if missing. Returns True if it was created.

    Services run under different users than the image build, so the
    directory is world-writable. An existing directory is left as is.
    """
    path = settings.cache_dir
    if path.is_dir():
        logger.debug("Cache directory already present", path=str(path))
        return False
    path.mkdir(parents=True, exist_ok=True)
    # mkdir's mode is filtered by the umask
    os.chmod(path, 0o777)
    logger.info("Created compiler cache directory", path=str(path), size=settings.cache_size)
    return True


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def _count(value: Any) -> int:
    """sccache reports counters either as ints or as per-language count maps."""
    if isinstance(value, int):
        return value
    if isinstance(value, dict):
        counts = value.get("counts", value)
        return sum(v for v in counts.values() if isinstance(v, int))
    return 0


@dataclass(frozen=True)
class CacheStats:
    compile_requests: int = 0
    hits: int = 0
    misses: int = 0
    cache_size: int = 0
    max_cache_size: int = 0

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> CacheStats:
        stats = payload.get("stats", {})
        return cls(
            compile_requests=_count(stats.get("compile_requests", 0)),
            hits=_count(stats.get("cache_hits", 0)),
            misses=_count(stats.get("cache_misses", 0)),
            cache_size=payload.get("cache_size") or 0,
            max_cache_size=payload.get("max_cache_size") or 0,
        )

    def since(self, earlier: CacheStats) -> CacheStats:
        """Counter deltas between two snapshots of the same cache server."""
        return CacheStats(
            compile_requests=self.compile_requests - earlier.compile_requests,
            hits=self.hits - earlier.hits,
            misses=self.misses - earlier.misses,
            cache_size=self.cache_size,
            max_cache_size=self.max_cache_size,
        )


def show_stats(settings: Settings, env: Mapping[str, str] | None = None) -> CacheStats:
    """Query the running sccache server for its counters.

    ``env`` is the environment to look the binary up in (defaults to ours).
    """
    try:
        result = subprocess.run(
            [COMPILER_WRAPPER, "--show-stats", "--stats-format=json"],
            capture_output=True,
            text=True,
            env={**(os.environ if env is None else env), **cache_env(settings)},
            timeout=60,
        )
    except FileNotFoundError as exc:
        raise ProvisionError("cache-stats", f"{COMPILER_WRAPPER} not found on PATH") from exc
    if result.returncode != 0:
        raise ProvisionError(
            "cache-stats",
            "sccache --show-stats failed",
            returncode=result.returncode,
            stderr=result.stderr[-500:],
        )
    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ProvisionError("cache-stats", f"unreadable sccache output: {exc}") from exc
    return CacheStats.from_json(payload)

"""
harvester.config.loader

Load source seed file(s): YAML or JSON, one file or a glob.

Supports:
- file contains a single object  -> one SourceConfig
- file contains a list of objects -> many SourceConfig
- file contains {"sources": [...]}

Never raises on bad entries; problems are reported in LoadResult.errors.
"""

from __future__ import annotations

import glob
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from harvester.errors import ConfigError

from .schema import FetchStrategy, SourceConfig

JsonDict = dict[str, Any]


@dataclass(frozen=True)
class LoadResult:
    sources: list[SourceConfig]
    files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def load_sources(path_or_glob: str | Path) -> LoadResult:
    """Load and validate every source in the matching file(s)."""
    paths = _resolve_paths(path_or_glob)
    warnings: list[str] = []
    errors: list[str] = []
    raw: list[tuple[str, JsonDict]] = []

    for p in paths:
        try:
            data = _read(p)
        except (OSError, ValueError, yaml.YAMLError) as e:
            errors.append(f"{p}: cannot parse: {e}")
            continue

        if isinstance(data, dict) and isinstance(data.get("sources"), list):
            data = data["sources"]
        if isinstance(data, dict):
            raw.append((str(p), data))
        elif isinstance(data, list):
            for i, item in enumerate(data):
                if isinstance(item, dict):
                    raw.append((str(p), item))
                else:
                    errors.append(f"{p}[{i}]: source entry must be an object")
        else:
            errors.append(f"{p}: must contain an object or a list of objects")

    sources: list[SourceConfig] = []
    seen_urls: set[str] = set()
    for origin, d in raw:
        label = d.get("name") or d.get("url") or "<unnamed>"
        try:
            cfg = SourceConfig.model_validate(d)
        except ValidationError as ve:
            errors.append(f"{origin}: {label}: {ve.error_count()} validation error(s): {ve}")
            continue

        if cfg.url in seen_urls:
            warnings.append(f"{origin}: {label}: duplicate url {cfg.url}, keeping first")
            continue
        seen_urls.add(cfg.url)

        if cfg.fetch_strategy == FetchStrategy.rendered and not cfg.hints.selectors:
            warnings.append(
                f"{origin}: {label}: rendered source without selectors relies on generic DOM heuristics"
            )
        sources.append(cfg)

    return LoadResult(
        sources=sources,
        files=[str(p) for p in paths],
        warnings=warnings,
        errors=errors,
    )


def _resolve_paths(path_or_glob: str | Path) -> list[Path]:
    s = str(path_or_glob)
    if any(ch in s for ch in "*?["):
        paths = [Path(p) for p in sorted(glob.glob(s))]
    else:
        paths = [Path(s)]
    missing = [p for p in paths if not p.is_file()]
    if missing or not paths:
        raise ConfigError(f"source file(s) not found: {s}")
    return paths


def _read(p: Path) -> Any:
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() == ".json":
        return json.loads(text)
    return yaml.safe_load(text)

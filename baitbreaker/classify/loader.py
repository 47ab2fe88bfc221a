from __future__ import annotations

import copy
import logging
from pathlib import Path

import yaml


logger = logging.getLogger(__name__)


def read_rules_file(path: Path) -> dict:
    """Parsed YAML mapping, or {} when the file does not exist."""
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"rules file must contain a mapping: {path}")
    return data


def _pattern_name(entry) -> str:
    if isinstance(entry, dict):
        return str(entry.get("name") or entry.get("regex") or "")
    return str(entry)


def merge_rules(base: dict, overrides: dict) -> dict:
    """Overlay ``overrides`` on ``base``.

    Confidence settings merge key by key. A pattern whose name already
    exists replaces the base one in place; new names are appended. Names
    listed under ``disabled`` are dropped from the result.
    """
    out = copy.deepcopy(base)

    confidence = dict(out.get("confidence") or {})
    for key, value in (overrides.get("confidence") or {}).items():
        if value is not None:
            confidence[key] = value
    if confidence:
        out["confidence"] = confidence

    patterns = list(out.get("patterns") or [])
    index = {_pattern_name(p): i for i, p in enumerate(patterns)}
    for entry in overrides.get("patterns") or []:
        name = _pattern_name(entry)
        if name in index:
            patterns[index[name]] = copy.deepcopy(entry)
        else:
            index[name] = len(patterns)
            patterns.append(copy.deepcopy(entry))

    disabled = {str(n) for n in overrides.get("disabled") or []}
    if disabled:
        patterns = [p for p in patterns if _pattern_name(p) not in disabled]
        logger.info("rules: disabled patterns %s", sorted(disabled))
    if patterns or "patterns" in out:
        out["patterns"] = patterns
    return out


def load_rules(base_path: Path, overrides_path: Path) -> dict:
    return merge_rules(read_rules_file(base_path), read_rules_file(overrides_path))

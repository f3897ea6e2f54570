from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from hashlib import sha256

MAIN_CONFIG_KEY = "neo4j.conf"
STARTUP_SCRIPT_KEY = "startup.sh"
HEALTH_SCRIPT_KEY = "health.sh"

# Order is part of the fingerprint; do not reorder.
KNOWN_ARTIFACT_KEYS: tuple[str, ...] = (MAIN_CONFIG_KEY, STARTUP_SCRIPT_KEY, HEALTH_SCRIPT_KEY)

FINGERPRINT_LENGTH = 16

RUNTIME_PLACEHOLDER = "# Runtime variable excluded from hash"
NO_SEMANTIC_DIFFERENCE = "hash changed but no semantic differences detected"

_RUNTIME_MARKERS = ("POD_ORDINAL", "HOSTNAME", "$(date", "timestamp")
_NON_RESTART_PATTERNS = (NO_SEMANTIC_DIFFERENCE, "Runtime variable excluded from hash")


@dataclass(frozen=True)
class ChangeClassification:
    """Outcome of comparing two artifact sets.

    An empty ``changes`` list means the sets were identical.  A list holding
    only :data:`NO_SEMANTIC_DIFFERENCE` means the raw content differed but
    nothing survived normalization.
    """

    changes: list[str] = field(default_factory=list)
    requires_restart: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def normalize_main_config(content: str) -> str:
    """Strip lines and drop repeated ``key=value`` keys, keeping the first occurrence."""
    seen: set[str] = set()
    normalized: list[str] = []
    for raw_line in content.split("\n"):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            normalized.append(line)
            continue
        if "=" in line:
            key = line.split("=", 1)[0].strip()
            if key in seen:
                continue
            seen.add(key)
        normalized.append(line)
    return "\n".join(normalized)


def normalize_startup_script(content: str) -> str:
    """Replace per-pod and per-run lines with a fixed placeholder."""
    normalized = []
    for line in content.split("\n"):
        if any(marker in line for marker in _RUNTIME_MARKERS):
            normalized.append(RUNTIME_PLACEHOLDER)
        else:
            normalized.append(line)
    return "\n".join(normalized)


def normalize_artifact(key: str, value: str) -> str:
    if key == MAIN_CONFIG_KEY:
        return normalize_main_config(value)
    if key == STARTUP_SCRIPT_KEY:
        return normalize_startup_script(value)
    return value


def fingerprint(artifacts: Mapping[str, str]) -> str:
    """Return a short, order-independent digest of the known artifacts.

    Keys are visited in :data:`KNOWN_ARTIFACT_KEYS` order rather than the
    mapping's own order, and unknown keys never contribute.
    """
    hasher = sha256()
    for key in KNOWN_ARTIFACT_KEYS:
        value = artifacts.get(key)
        if value is None:
            continue
        hasher.update(key.encode("utf-8"))
        hasher.update(normalize_artifact(key, value).encode("utf-8"))
    return hasher.hexdigest()[:FINGERPRINT_LENGTH]


def parse_properties(content: str) -> dict[str, str]:
    """Parse ``key=value`` lines; later duplicates are ignored, as in the normalized form."""
    properties: dict[str, str] = {}
    for raw_line in content.split("\n"):
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        properties.setdefault(key.strip(), value.strip())
    return properties


def diff_properties(old_content: str, new_content: str) -> list[str]:
    old_props = parse_properties(old_content)
    new_props = parse_properties(new_content)

    changes: list[str] = []
    for key, value in new_props.items():
        if key not in old_props:
            changes.append(f"added property {key}={value}")
        elif old_props[key] != value:
            changes.append(f"modified property {key}: {old_props[key]} -> {value}")
    for key in old_props:
        if key not in new_props:
            changes.append(f"removed property {key}")
    return changes


def requires_restart(changes: list[str]) -> bool:
    """True unless every change is on the non-disruptive allow-list."""
    for change in changes:
        if not any(pattern in change for pattern in _NON_RESTART_PATTERNS):
            return True
    return False


def classify(old: Mapping[str, str], new: Mapping[str, str]) -> ChangeClassification:
    if dict(old) == dict(new):
        return ChangeClassification(changes=[], requires_restart=False)

    changes: list[str] = []
    for key in KNOWN_ARTIFACT_KEYS:
        old_value = old.get(key)
        new_value = new.get(key)
        if old_value is None and new_value is not None:
            changes.append(f"added {key}")
        elif old_value is not None and new_value is None:
            changes.append(f"removed {key}")
        elif old_value is not None and new_value is not None:
            old_normalized = normalize_artifact(key, old_value)
            new_normalized = normalize_artifact(key, new_value)
            if old_normalized == new_normalized:
                continue
            changes.append(f"modified {key}")
            if key == MAIN_CONFIG_KEY:
                changes.extend(diff_properties(old_normalized, new_normalized))

    if not changes:
        changes.append(NO_SEMANTIC_DIFFERENCE)

    return ChangeClassification(changes=changes, requires_restart=requires_restart(changes))

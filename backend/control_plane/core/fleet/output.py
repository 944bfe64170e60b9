"""
Order Output Parsing
====================

Extracts structured data from runner order reports:
- JSON objects embedded in stdout (keyed by "capabilities", "service", ...)
- Capability detection from well-known tool version banners
- The bracketed playbook key in order descriptions
- HTTPS_STATUS markers printed by proxy configure scripts
- Software versions for the installed-capability summary
"""

import json
import re
from typing import Any, Iterable, Optional

import structlog

from control_plane.core.models import CapabilityValue

logger = structlog.get_logger()


# ==========================================================================
# Pattern Tables
# ==========================================================================

# capability key -> stdout patterns that prove it is installed
CAPABILITY_PATTERNS: dict[str, list[str]] = {
    "docker.installed": [
        r"Docker version [\d.]+",
        r'"docker":\s*"installed"',
    ],
    "docker.compose.installed": [
        r"Docker Compose version v?[\d.]+",
        r"docker-compose version [\d.]+",
        r'"docker\.compose":\s*"installed"',
    ],
    "node.installed": [
        r"\bnode(?:\.js)?\s+v?\d+\.\d+\.\d+",
        r'"node":\s*"installed"',
    ],
    "npm.installed": [
        r"\bnpm\s+v?\d+\.\d+\.\d+",
        r'"npm":\s*"installed"',
    ],
    "git.installed": [
        r"git version \d+\.\d+",
        r'"git":\s*"installed"',
    ],
    "caddy.installed": [
        r"\bCaddy\s+v?\d+\.\d+",
        r"\bv2\.\d+\.\d+ h1:",
        r'"caddy":\s*"installed"',
    ],
    "nginx.installed": [
        r"nginx version: nginx/\d+\.\d+",
        r'"nginx":\s*"installed"',
    ],
    "redis.installed": [
        r"Redis server v=[\d.]+",
        r'"redis":\s*"installed"',
    ],
    "certbot.installed": [
        r"certbot \d+\.\d+",
    ],
    "python.installed": [
        r"Python \d+\.\d+\.\d+",
    ],
    "prometheus.installed": [
        r"prometheus, version \d+\.\d+",
        r'"prometheus":\s*"installed"',
    ],
    "node_exporter.installed": [
        r"node_exporter, version \d+\.\d+",
        r'"node_exporter":\s*"installed"',
    ],
}

_COMPILED_PATTERNS = {
    key: [re.compile(p, re.IGNORECASE) for p in patterns]
    for key, patterns in CAPABILITY_PATTERNS.items()
}

PLAYBOOK_KEY_PATTERN = re.compile(r"^\s*\[([A-Za-z0-9_.\-]+)\]")
HTTPS_STATUS_PATTERN = re.compile(r"^HTTPS_STATUS=(\w+)\s*$", re.MULTILINE)
VERSION_PATTERN = re.compile(r"v?(\d+\.\d+(?:\.\d+)?)")

_INSTALLED_WORDS = {"installed", "verified", "ok", "present", "running", "true", "yes"}
_NOT_INSTALLED_WORDS = {"not_installed", "missing", "absent", "failed", "false", "no"}


# ==========================================================================
# JSON Extraction
# ==========================================================================

def iter_json_objects(text: Optional[str]) -> Iterable[dict[str, Any]]:
    """Yield every top-level JSON object embedded in free-form text."""
    if not text:
        return
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            obj, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(obj, dict):
            yield obj
        index = text.find("{", end)


def extract_json_object(text: Optional[str], keys: Iterable[str] = ("capabilities", "service")) -> Optional[dict[str, Any]]:
    """
    Find the structured result object printed by a command.

    Scripts print their summary last, so the last object carrying one of
    `keys` wins.
    """
    wanted = tuple(keys)
    found = None
    for obj in iter_json_objects(text):
        if any(k in obj for k in wanted):
            found = obj
    return found


# ==========================================================================
# Capabilities
# ==========================================================================

def normalize_capability_value(value: Any) -> CapabilityValue:
    """Map a reported value onto the tri-state capability value."""
    if isinstance(value, CapabilityValue):
        return value
    if isinstance(value, bool):
        return CapabilityValue.INSTALLED if value else CapabilityValue.NOT_INSTALLED
    if isinstance(value, dict):
        for field in ("status", "installed"):
            if field in value:
                return normalize_capability_value(value[field])
        return CapabilityValue.UNKNOWN
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _INSTALLED_WORDS:
            return CapabilityValue.INSTALLED
        if word in _NOT_INSTALLED_WORDS:
            return CapabilityValue.NOT_INSTALLED
        # Scripts often report a version string for installed software
        if VERSION_PATTERN.fullmatch(word):
            return CapabilityValue.INSTALLED
    return CapabilityValue.UNKNOWN


def normalize_capability_map(raw: Any) -> dict[str, CapabilityValue]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): normalize_capability_value(v) for k, v in raw.items()}


def detect_capabilities(stdout: Optional[str]) -> dict[str, CapabilityValue]:
    """Capabilities proven by version banners in stdout."""
    if not stdout:
        return {}
    detected = {}
    for key, patterns in _COMPILED_PATTERNS.items():
        if any(p.search(stdout) for p in patterns):
            detected[key] = CapabilityValue.INSTALLED
    return detected


# ==========================================================================
# Order Metadata
# ==========================================================================

def extract_playbook_key(description: Optional[str]) -> Optional[str]:
    """Return 'docker.install_engine' from '[docker.install_engine] Install Docker'."""
    if not description:
        return None
    match = PLAYBOOK_KEY_PATTERN.match(description)
    return match.group(1) if match else None


def parse_https_status(stdout: Optional[str]) -> Optional[str]:
    """
    Read the HTTPS verdict of a proxy configure script.

    Returns 'ok', 'provisioning', 'failed' or None when the output carries
    neither a HTTPS_STATUS marker nor a JSON https_ready flag.
    """
    if not stdout:
        return None
    markers = HTTPS_STATUS_PATTERN.findall(stdout)
    if markers:
        return markers[-1].lower()
    obj = extract_json_object(stdout, keys=("https_ready",))
    if obj is not None:
        return "ok" if obj.get("https_ready") is True else "provisioning"
    return None


def extract_version(stdout: Optional[str], result: Optional[dict[str, Any]]) -> Optional[str]:
    if result:
        if result.get("version"):
            return str(result["version"])
        caps = result.get("capabilities")
        if isinstance(caps, dict):
            for value in caps.values():
                if isinstance(value, str) and VERSION_PATTERN.match(value):
                    return value
    if stdout:
        match = VERSION_PATTERN.search(stdout)
        if match:
            return match.group(1)
    return None

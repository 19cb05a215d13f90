from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from astropy.io import fits

MASTER_EXTENSIONS = {".xisf", ".fits", ".fit"}
FITS_EXTENSIONS = {".fits", ".fit"}

# Ha first so "FILTER-Ha" is never read as a plain channel
CHANNEL_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("Ha", re.compile(r"(?:FILTER[-_]?Ha|[-_]Ha[-_.]|^Ha[-_.])", re.IGNORECASE)),
    ("L", re.compile(r"(?:FILTER[-_]?L\b|[-_]L[-_.]|^L[-_.])", re.IGNORECASE)),
    ("R", re.compile(r"(?:FILTER[-_]?R\b|[-_]R[-_.]|^R[-_.])", re.IGNORECASE)),
    ("G", re.compile(r"(?:FILTER[-_]?[GV]\b|[-_][GV][-_.]|^[GV][-_.])", re.IGNORECASE)),
    ("B", re.compile(r"(?:FILTER[-_]?B\b|[-_]B[-_.]|^B[-_.])", re.IGNORECASE)),
]

_FILTER_HEADER_ALIASES = {
    "HA": "Ha", "H-ALPHA": "Ha", "HALPHA": "Ha", "H_ALPHA": "Ha",
    "L": "L", "LUM": "L", "LUMINANCE": "L",
    "R": "R", "RED": "R",
    "G": "G", "V": "G", "GREEN": "G",
    "B": "B", "BLUE": "B",
}


@dataclass
class ScanIssue:
    severity: str  # "error" | "warning"
    code: str
    message: str


def _list_master_files(folder: Path) -> list[Path]:
    files = [p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in MASTER_EXTENSIONS]
    files.sort(key=lambda p: p.name)
    return files


def detect_channel_from_name(name: str) -> str | None:
    for channel, pattern in CHANNEL_PATTERNS:
        if pattern.search(name):
            return channel
    return None


def detect_channel_from_header(path: Path) -> str | None:
    hdr = fits.getheader(str(path), ext=0)
    value = hdr.get("FILTER")
    if not isinstance(value, str) or not value.strip():
        return None
    return _FILTER_HEADER_ALIASES.get(value.strip().upper())


def scan_channels(folder: str) -> dict[str, Any]:
    """
    List master files in a folder and assign each to a channel (Ha, L, R, G, B).

    The file name decides first; FITS files without a telling name fall back to
    their FILTER header keyword.
    """
    issues: list[ScanIssue] = []
    in_dir = Path(folder).expanduser()
    if not in_dir.exists() or not in_dir.is_dir():
        return {
            "ok": False,
            "errors": [{"severity": "error", "code": "folder_not_found", "message": f"not a directory: {folder}"}],
            "warnings": [],
        }

    files = _list_master_files(in_dir)
    entries: list[dict[str, Any]] = []
    assignments: dict[str, str] = {}

    for p in files:
        channel = detect_channel_from_name(p.name)
        source = "name" if channel else None
        if channel is None and p.suffix.lower() in FITS_EXTENSIONS:
            try:
                channel = detect_channel_from_header(p)
            except OSError as e:
                issues.append(ScanIssue("warning", "fits_read_error", f"failed to read FITS header for {p.name}: {e}"))
            source = "header" if channel else None

        entries.append({"file_name": p.name, "abs_path": str(p.resolve()), "channel": channel, "source": source})
        if channel is None:
            issues.append(ScanIssue("warning", "channel_unknown", f"cannot tell the channel of {p.name}"))
        elif channel in assignments:
            issues.append(
                ScanIssue("warning", "channel_ambiguous",
                          f"{p.name} and {Path(assignments[channel]).name} both look like channel {channel}")
            )
        else:
            assignments[channel] = str(p.resolve())

    if not files:
        issues.append(ScanIssue("error", "no_master_files", f"no {sorted(MASTER_EXTENSIONS)} files in {folder}"))

    return {
        "ok": not any(i.severity == "error" for i in issues),
        "folder": str(in_dir.resolve()),
        "totalFiles": len(files),
        "files": entries,
        "assignments": assignments,
        "errors": [i.__dict__ for i in issues if i.severity == "error"],
        "warnings": [i.__dict__ for i in issues if i.severity == "warning"],
    }

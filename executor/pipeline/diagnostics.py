from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple

# (predicate over stderr, user-facing reason); first match wins.
_Rule = Tuple[Callable[[str], bool], str]

_RULES: Dict[str, List[_Rule]] = {
    "ffmpeg": [
        (lambda s: "Media type mismatch" in s,
         "ffmpeg filter graph mixes audio and video chains; build separate video and audio chains"),
        (lambda s: "do not match" in s and "SAR" in s,
         "ffmpeg concat inputs differ in sample aspect ratio; normalize it first (e.g. setsar=1)"),
        (lambda s: "do not match" in s and ("size" in s or "rate" in s),
         "ffmpeg concat inputs differ; normalize resolution, pixel aspect, frame rate and sample rate before concatenating"),
        (lambda s: "Error reinitializing filters" in s,
         "ffmpeg failed to configure the filter graph; check the normalization applied before concat"),
        (lambda s: "Invalid argument" in s,
         "ffmpeg rejected an argument; check the generated command arguments"),
        (lambda s: "No such file or directory" in s,
         "ffmpeg input file does not exist or its path is unusable"),
    ],
    "magick": [
        (lambda s: "no decode delegate" in s,
         "ImageMagick does not recognize the input format; check the file type"),
        (lambda s: "unable to open image" in s,
         "ImageMagick could not open the input file"),
    ],
    "sox": [
        (lambda s: "no handler for file extension" in s,
         "SoX does not support this file extension or the codec is missing"),
        (lambda s: "can't open input file" in s,
         "SoX could not open the input file"),
    ],
}


def truncate_tail(text: str, limit: int) -> str:
    # Tools print the fatal line last; keep the end.
    if limit <= 0 or len(text) <= limit:
        return text
    return "..." + text[-limit:]


def classify_stderr(tool: str, stderr: str, returncode: Optional[int], limit: int = 2000) -> str:
    """Shape the user-facing failure reason. Never influences control flow."""
    message = (stderr or "").strip()
    if not message:
        return f"{tool} exited with code {returncode if returncode is not None else 'unknown'}"
    for matches, reason in _RULES.get(tool, []):
        if matches(message):
            return reason
    return truncate_tail(message, limit)

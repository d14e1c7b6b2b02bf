from __future__ import annotations

from typing import Iterable

COMMAND_SCHEMA = (
    '{"steps":[{"tool":"ffmpeg|magick|sox","args":["..."],'
    '"inputFileIds":["file-1"],"outputExt":"..."}]}'
)


def build_system_prompt(available_ids: Iterable[str]) -> str:
    ids = ", ".join(available_ids)
    return (
        "You generate multimedia commands. Output JSON only, following this schema:\n"
        f"{COMMAND_SCHEMA}\n"
        "Rules:\n"
        "1) Every step's args must contain the {output} placeholder exactly once.\n"
        "2) Every step's args must contain one or more {input:<file-id>} placeholders.\n"
        "3) A step may use an earlier step's output as {input:step-1}, {input:step-2}; "
        "step 1 cannot reference step-1.\n"
        "4) Do not output any explanatory text.\n"
        "5) outputExt must be a sensible extension such as mp4, mp3, wav, png or jpg.\n"
        "6) Only use the provided file ids or already generated step ids. Never write "
        "absolute paths, home paths or '..'.\n"
        "7) Before concatenating videos, normalize resolution, sample aspect ratio, frame "
        "rate and audio sample rate (e.g. scale+pad+fps+aresample), otherwise concat fails.\n"
        "8) To add text or subtitles (including CJK), prefer ffmpeg drawtext with UTF-8 and "
        "a font name (font='Noto Sans CJK SC'); for subtitle files add -sub_charenc UTF-8.\n"
        f"9) Available file ids: {ids}"
    )


# Sent as an extra message after an unparseable reply.
STRICT_REMINDER = (
    "Your previous reply could not be parsed. Reply with a single JSON object of the form "
    f"{COMMAND_SCHEMA} and nothing else: no markdown fences, no comments, no prose."
)

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from executor import settings
from executor.pipeline.errors import GeneratorError, GeneratorMalformedOutput
from executor.pipeline.model import PipelineCommand
from media_json import JSONParser

from .parsing import ParseError, parse_generator_reply
from .prompts import STRICT_REMINDER, build_system_prompt

log = logging.getLogger(__name__)


def _pick(value: Optional[str], fallback: str) -> str:
    v = (value or "").strip()
    return v or fallback


async def _chat(
    client: httpx.AsyncClient,
    base_url: str,
    api_key: str,
    model: str,
    messages: List[Dict[str, str]],
) -> str:
    url = base_url.rstrip("/") + "/chat/completions"
    payload = {"model": model, "messages": messages, "temperature": 0.2}
    try:
        r = await client.post(url, json=payload, headers={"Authorization": f"Bearer {api_key}"})
    except httpx.HTTPError as ex:
        log.error("generator.http_error url=%s err=%r", url, ex)
        raise GeneratorError(f"generator request failed: {ex}") from ex
    if r.status_code < 200 or r.status_code >= 300:
        log.error("generator.http_status url=%s status=%d body=%s", url, r.status_code, (r.text or "")[:500])
        raise GeneratorError(f"generator request failed (HTTP {r.status_code}): {(r.text or '').strip()[:500]}")
    parser = JSONParser()
    body = parser.parse(r.text or "", {"choices": [{"message": {"content": str}}]})
    choices = body.get("choices") or []
    content = choices[0].get("message", {}).get("content") if choices and isinstance(choices[0], dict) else ""
    if not isinstance(content, str) or not content.strip():
        raise GeneratorError("generator returned empty content")
    return content


async def generate_command(
    prompt: str,
    files: Sequence[Dict[str, Any]],
    *,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    model: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> PipelineCommand:
    """
    Ask an OpenAI-compatible chat model for a pipeline command.

    `files` are `{"id", "name", "type"}` descriptors of everything the command
    may reference. A reply that does not parse gets one retry with a stricter
    reminder; the second failure raises GeneratorMalformedOutput. The returned
    command is unvalidated.
    """
    key = _pick(api_key, settings.AI_API_KEY)
    if not key:
        raise GeneratorError("missing AI_API_KEY: set it in the environment or pass apiKey")
    base = _pick(base_url, settings.AI_BASE_URL)
    mdl = _pick(model, settings.AI_MODEL)

    ids = [str(f.get("id")) for f in files]
    user = {"prompt": prompt, "files": list(files), "availableIds": ids}
    messages: List[Dict[str, str]] = [
        {"role": "system", "content": build_system_prompt(ids)},
        {"role": "user", "content": json.dumps(user, ensure_ascii=False)},
    ]

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=settings.GENERATOR_TIMEOUT_SEC, trust_env=False)
    try:
        log.info("generator.request model=%s ids=%s", mdl, ids)
        content = await _chat(client, base, key, mdl, messages)
        parsed = parse_generator_reply(content)
        if isinstance(parsed, ParseError):
            log.warning("generator.reparse reason=%s", parsed.reason)
            messages += [
                {"role": "assistant", "content": content},
                {"role": "user", "content": STRICT_REMINDER},
            ]
            content = await _chat(client, base, key, mdl, messages)
            parsed = parse_generator_reply(content)
            if isinstance(parsed, ParseError):
                log.error("generator.malformed reason=%s content=%s", parsed.reason, content[:500])
                raise GeneratorMalformedOutput(f"could not parse the generated command: {parsed.reason}")
    finally:
        if own_client:
            await client.aclose()

    command = parsed.command
    log.info("generator.command steps=%d", len(command.steps))
    return command

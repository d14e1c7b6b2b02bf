from __future__ import annotations

import json
import logging
import unicodedata
from typing import Any, Dict, List, Optional, get_args, get_origin

log = logging.getLogger(__name__)


class JSONParser:
    """
    Tolerant JSON reader for text produced by language models.

    Ordering:
    1) dict/list input is returned as-is (then coerced).
    2) str input goes through json.loads before ANY repair.
    3) Only when json.loads fails: strip fences, collect balanced {...}/[...]
       segments, apply deterministic repairs and keep the best candidate.

    `parse` always returns something shaped like `expected_structure`.
    `extract` returns None when no JSON value could be recovered at all, which
    is what callers need when "unparseable" must stay distinguishable from
    "parsed but empty".
    """

    def __init__(self) -> None:
        self.errors: List[str] = []
        self.repairs: List[str] = []

    # ---------------- public API ----------------

    def parse(self, source: Any, expected_structure: Any) -> Any:
        raw = self.extract(source, expected_structure)
        if raw is None:
            return self._default_for_schema(expected_structure)
        return self._coerce_node(raw, expected_structure)

    def extract(self, source: Any, expected_structure: Any = None) -> Optional[Any]:
        if isinstance(source, (dict, list)):
            return source
        if isinstance(source, (bytes, bytearray)):
            source = bytes(source).decode("utf-8", errors="replace")
        if not isinstance(source, str):
            self._err(f"unsupported_source:{type(source).__name__}")
            return None
        obj = self._try_json_loads(source, "json.loads.raw")
        if obj is not None:
            return obj
        return self._parse_raw_from_text(source, expected_structure)

    # ---------------- text raw parsing ----------------

    def _parse_raw_from_text(self, text: str, expected_structure: Any) -> Optional[Any]:
        s = self._strip_fence_tokens(self._normalize_text(text))
        if not s:
            return None

        best_obj: Any = None
        best_score = -1
        for seg in self._collect_balanced_segments(s):
            obj = self._try_json_loads(seg, "json.loads.segment")
            if obj is None:
                obj = self._try_json_loads(self._repair_json_text(seg), "json.loads.segment.repaired")
            if obj is None:
                continue
            score = self._score_candidate(obj, expected_structure)
            if score > best_score:
                best_score = score
                best_obj = obj
        if best_obj is not None:
            return best_obj

        # Unterminated object (model output cut off mid-stream).
        start = s.find("{")
        if start != -1:
            obj = self._try_json_loads(self._repair_json_text(s[start:]), "json.loads.repaired_tail")
            if isinstance(obj, (dict, list)):
                return obj
        return None

    def _try_json_loads(self, s: str, tag: str) -> Optional[Any]:
        try:
            return json.loads(s)
        except (ValueError, TypeError) as exc:
            self._err(f"{tag}:{type(exc).__name__}:{exc}")
            return None

    # ---------------- normalization ----------------

    def _normalize_text(self, s: str) -> str:
        out = unicodedata.normalize("NFKC", s)
        out = out.replace("\u201c", '"').replace("\u201d", '"')
        out = out.replace("\u2018", "'").replace("\u2019", "'")
        out = out.replace("\u200b", "").replace("\u2060", "").replace("\ufeff", "")
        out = out.replace("\r\n", "\n").replace("\r", "\n")
        return out.strip()

    def _strip_fence_tokens(self, s: str) -> str:
        out = s.replace("```json", "").replace("```JSON", "").replace("```", "")
        kept = [line for line in out.splitlines() if line.strip().lower() != "json"]
        return "\n".join(kept).strip()

    # ---------------- balanced extraction ----------------

    def _collect_balanced_segments(self, s: str) -> List[str]:
        segs = self._collect_balanced_for_delims(s, "{", "}")
        segs.extend(self._collect_balanced_for_delims(s, "[", "]"))
        segs.sort(key=len, reverse=True)
        return segs

    def _collect_balanced_for_delims(self, s: str, start: str, end: str) -> List[str]:
        out: List[str] = []
        in_string = False
        escape = False
        quote = ""
        depth = 0
        start_idx = -1
        for i, ch in enumerate(s):
            if in_string:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == quote:
                    in_string = False
                continue
            if ch == '"' or (ch == "'" and depth > 0):
                # An apostrophe outside any bracket is prose.
                in_string = True
                quote = ch
            elif ch == start:
                if depth == 0:
                    start_idx = i
                depth += 1
            elif ch == end and depth > 0:
                depth -= 1
                if depth == 0 and start_idx != -1:
                    out.append(s[start_idx : i + 1])
                    start_idx = -1
        return out

    # ---------------- deterministic repair ----------------

    def _repair_json_text(self, s: str) -> str:
        out = s.strip()
        for name, fn in (
            ("remove_trailing_commas", self._remove_trailing_commas),
            ("normalize_python_constants", self._normalize_python_constants),
            ("single_to_double_quotes", self._single_quotes_to_double_quotes),
            ("close_unbalanced", self._close_unbalanced),
        ):
            fixed = fn(out)
            if fixed != out:
                self.repairs.append(name)
                out = fixed
        return out

    def _remove_trailing_commas(self, s: str) -> str:
        out: List[str] = []
        in_string = False
        escape = False
        quote = ""
        i = 0
        while i < len(s):
            ch = s[i]
            if in_string:
                out.append(ch)
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == quote:
                    in_string = False
                i += 1
                continue
            if ch in ('"', "'"):
                in_string = True
                quote = ch
            elif ch == ",":
                j = i + 1
                while j < len(s) and s[j] in (" ", "\t", "\n"):
                    j += 1
                if j < len(s) and s[j] in ("}", "]"):
                    i += 1
                    continue
            out.append(ch)
            i += 1
        return "".join(out)

    def _normalize_python_constants(self, s: str) -> str:
        out: List[str] = []
        in_string = False
        escape = False
        quote = ""
        i = 0
        while i < len(s):
            ch = s[i]
            if in_string:
                out.append(ch)
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == quote:
                    in_string = False
                i += 1
                continue
            if ch in ('"', "'"):
                in_string = True
                quote = ch
                out.append(ch)
                i += 1
                continue
            if ch.isalpha():
                j = i
                while j < len(s) and (s[j].isalnum() or s[j] == "_"):
                    j += 1
                token = s[i:j]
                out.append({"True": "true", "False": "false", "None": "null"}.get(token, token))
                i = j
                continue
            out.append(ch)
            i += 1
        return "".join(out)

    def _single_quotes_to_double_quotes(self, s: str) -> str:
        out: List[str] = []
        in_string = False
        escape = False
        quote = ""
        for ch in s:
            if in_string:
                if escape:
                    out.append(ch)
                    escape = False
                elif ch == "\\":
                    out.append(ch)
                    escape = True
                elif ch == quote:
                    out.append('"')
                    in_string = False
                elif quote == "'" and ch == '"':
                    out.append('\\"')
                else:
                    out.append(ch)
                continue
            if ch in ('"', "'"):
                in_string = True
                quote = ch
                out.append('"')
                continue
            out.append(ch)
        if in_string and quote == "'":
            out.append('"')
        return "".join(out)

    def _close_unbalanced(self, s: str) -> str:
        in_string = False
        escape = False
        quote = ""
        stack: List[str] = []
        for ch in s:
            if in_string:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == quote:
                    in_string = False
                continue
            if ch in ('"', "'"):
                in_string = True
                quote = ch
            elif ch in ("{", "["):
                stack.append("}" if ch == "{" else "]")
            elif ch in ("}", "]") and stack and stack[-1] == ch:
                stack.pop()
        if in_string:
            s = s + quote
        return s + "".join(reversed(stack))

    # ---------------- coercion ----------------

    def _coerce_node(self, data: Any, expected: Any) -> Any:
        origin = get_origin(expected)
        if origin is list:
            args = get_args(expected)
            return self._coerce_node(data, [args[0] if args else Any])
        if origin is dict:
            return dict(data) if isinstance(data, dict) else {}

        if isinstance(expected, list):
            if not isinstance(data, list):
                data = [] if data is None else [data]
            if not expected:
                return data
            return [self._coerce_node(item, expected[0]) for item in data]

        if isinstance(expected, dict):
            src = data if isinstance(data, dict) else ({} if data is None else {"_raw": data})
            out: Dict[str, Any] = dict(src)  # preserve extras
            for key, schema in expected.items():
                out[key] = self._coerce_node(src[key], schema) if key in src else self._default_for_schema(schema)
            return out

        return self._coerce_scalar(data, expected)

    def _default_for_schema(self, schema: Any) -> Any:
        if isinstance(schema, dict) or get_origin(schema) is dict:
            return {}
        if isinstance(schema, list) or get_origin(schema) is list:
            return []
        if schema is bool:
            return False
        if schema is int:
            return 0
        if schema is float:
            return 0.0
        if schema is str:
            return ""
        return None

    def _coerce_scalar(self, value: Any, schema: Any) -> Any:
        if schema is None or schema is Any or schema is object:
            return value
        if value is None:
            return self._default_for_schema(schema)
        try:
            if schema is bool:
                if isinstance(value, str):
                    return value.strip().lower() in ("1", "true", "yes", "on")
                return bool(value)
            if schema is int:
                return int(float(value)) if isinstance(value, str) else int(value)
            if schema is float:
                return float(value)
            if schema is str:
                return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            self._err(f"coerce_scalar:{type(exc).__name__}:{exc}")
            return self._default_for_schema(schema)
        return value

    # ---------------- scoring ----------------

    def _score_candidate(self, candidate: Any, expected: Any) -> int:
        if isinstance(expected, dict):
            if not isinstance(candidate, dict):
                return 0
            score = sum(2 for k in expected if k in candidate)
            return score + min(len(candidate), 50)
        if isinstance(expected, list):
            if isinstance(candidate, list):
                return len(candidate) + 1
            return 1 if isinstance(candidate, dict) else 0
        # No schema: prefer objects, then bigger ones.
        if isinstance(candidate, dict):
            return 100 + min(len(candidate), 50)
        if isinstance(candidate, list):
            return 1 + min(len(candidate), 50)
        return 0

    def _err(self, msg: str) -> None:
        self.errors.append(msg)
        log.debug("json_parser.%s", msg)

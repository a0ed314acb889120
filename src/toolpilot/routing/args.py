"""
ToolPilot Argument Extraction

Per-tool extractors that turn an utterance into an argument dict, or
None when the text does not carry the tool's minimal argument shape.
Every extractor is a pure function of its input text.

Also home to the clause splitter the planner uses to break a
multi-step utterance into single-intent fragments.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

Extractor = Callable[[str], dict[str, Any] | None]

_JSON_DECODER = json.JSONDecoder()

_QUOTED_RE = re.compile(r"""(?:(?<=[\s=(:])|^)(["'])(.+?)\1(?=[\s,.;:!?)]|$)""")
_URL_RE = re.compile(r"""https?://[^\s'"<>]+""", re.IGNORECASE)
_PATH_EXT_RE = re.compile(r"\.[A-Za-z0-9]{1,8}$")
_TRAILING_PUNCT = ".,;:!?)"


# ─── Primitives ──────────────────────────────────────────────


def quoted(text: str) -> str | None:
    """First single- or double-quoted string in ``text``, without the quotes."""
    match = _QUOTED_RE.search(text)
    return match.group(2) if match else None


def _quoted_spans(text: str) -> list[tuple[int, int]]:
    return [m.span() for m in _QUOTED_RE.finditer(text)]


def _json_spans(text: str) -> list[tuple[int, int, Any]]:
    spans = []
    i = 0
    while i < len(text):
        if text[i] in "{[":
            try:
                value, end = _JSON_DECODER.raw_decode(text, i)
            except json.JSONDecodeError:
                i += 1
                continue
            spans.append((i, end, value))
            i = end
        else:
            i += 1
    return spans


def find_json_literal(text: str) -> Any | None:
    """First JSON object or array embedded in ``text``, decoded.

    Bare scalars are ignored; only ``{...}`` and ``[...]`` count.
    """
    spans = _json_spans(text)
    return spans[0][2] if spans else None


def find_url(text: str) -> str | None:
    """First http(s) URL in ``text`` with trailing punctuation removed."""
    match = _URL_RE.search(text)
    if not match:
        return None
    return match.group(0).rstrip(_TRAILING_PUNCT)


def looks_like_path(token: str) -> bool:
    """Heuristic: separators, a home/relative prefix, or a file extension."""
    if not token or _URL_RE.match(token):
        return False
    if "/" in token or "\\" in token:
        return True
    if token.startswith("~") or token in (".", ".."):
        return True
    return bool(_PATH_EXT_RE.search(token))


def _clean(token: str) -> str:
    return token.strip().rstrip(_TRAILING_PUNCT).strip("\"'")


def _path_after(text: str, start: int) -> str | None:
    """Quoted string, or the first path-looking token, at or after ``start``.

    A bare word directly after "file" is accepted too ("read the file notes").
    """
    rest = text[start:]
    q = _QUOTED_RE.search(rest)
    tokens = list(re.finditer(r"\S+", rest))
    for i, raw in enumerate(tokens):
        if q and raw.start() >= q.start():
            return q.group(2)
        token = _clean(raw.group(0))
        if looks_like_path(token):
            return token
        if token.lower() == "file" and i + 1 < len(tokens) and not q:
            candidate = _clean(tokens[i + 1].group(0))
            if candidate and candidate.lower() not in _VERBS:
                return candidate
    return q.group(2) if q else None


# ─── Extractors ──────────────────────────────────────────────

_READ_VERB = re.compile(r"\b(?:read|view|open|load|show|display|cat)\b", re.IGNORECASE)
_WRITE_VERB = re.compile(r"\b(?:write|save|create|overwrite)\b", re.IGNORECASE)
_WRITE_TARGET = re.compile(r"\b(?:to|into|as)\s+(?:the\s+)?(?:file\s+)?", re.IGNORECASE)
_WRITE_CONTENT = re.compile(
    r"\b(?:with\s+content|with\s+the\s+content|content\s+is|containing|saying)\s+(.+)$",
    re.IGNORECASE | re.DOTALL,
)
_SEARCH_VERB = re.compile(
    r"\b(?:search|find|look\s+for|look\s+up|query|google)\b(?:\s+for)?\s+(.+)$",
    re.IGNORECASE | re.DOTALL,
)
_MAX_RESULTS = re.compile(r"[,\s]*\b(?:limit|max|top)\s+(\d+)(?:\s+results?)?\b", re.IGNORECASE)
_HTTP_METHOD = re.compile(r"\b(GET|POST|PUT|DELETE|PATCH)\b", re.IGNORECASE)
_API_BODY = re.compile(r"\b(?:with\s+data|data\s+is|body\s+is|with\s+body)\s+(.+)$", re.IGNORECASE)
_RUN_VERB = re.compile(
    r"\b(?:run|execute|launch)\b\s+(?:the\s+)?(?:shell\s+)?(?:command\s+)?(.+)$",
    re.IGNORECASE | re.DOTALL,
)
_SHELL_BUILTIN = re.compile(r"^\s*(?:ls|mkdir|rm|cp|mv|grep|echo|pwd)\b", re.IGNORECASE)
_RUN_IN = re.compile(
    r"^(.*?)\s+(?:in|from|inside)\s+(?:the\s+)?(?:directory\s+|dir\s+|folder\s+)?(\S+|\"[^\"]+\"|'[^']+')\s*$",
    re.IGNORECASE | re.DOTALL,
)


def read_file_args(text: str) -> dict[str, Any] | None:
    verb = _READ_VERB.search(text)
    if not verb:
        return None
    path = _path_after(text, verb.end())
    return {"path": path} if path else None


def write_file_args(text: str) -> dict[str, Any] | None:
    verb = _WRITE_VERB.search(text)
    if not verb:
        return None

    content = ""
    body_match = _WRITE_CONTENT.search(text, verb.end())
    head = text[: body_match.start()] if body_match else text
    if body_match:
        content = _clean_content(body_match.group(1))

    # "write X to PATH" names the target after the preposition
    for target in _WRITE_TARGET.finditer(head, verb.end()):
        path = _path_after(head, target.end())
        if path:
            if not body_match:
                payload = head[verb.end() : target.start()].strip()
                content = _clean_content(payload)
            return {"path": path, "content": content}

    path = _path_after(head, verb.end())
    if not path:
        return None
    return {"path": path, "content": content}


def _clean_content(raw: str) -> str:
    raw = raw.strip()
    inner = quoted(raw)
    if inner is not None and raw in (f'"{inner}"', f"'{inner}'"):
        return inner
    return raw


def search_args(text: str) -> dict[str, Any] | None:
    match = _SEARCH_VERB.search(text)
    if not match:
        return None
    query = match.group(1)
    args: dict[str, Any] = {}
    limit = _MAX_RESULTS.search(query)
    if limit:
        args["max_results"] = int(limit.group(1))
        query = query[: limit.start()] + query[limit.end() :]
    query = query.strip().rstrip(_TRAILING_PUNCT).strip()
    inner = quoted(query)
    if inner is not None and query in (f'"{inner}"', f"'{inner}'"):
        query = inner
    if not query:
        return None
    args["query"] = query
    return args


def api_call_args(text: str) -> dict[str, Any] | None:
    url = find_url(text)
    if not url:
        return None
    without_url = text.replace(url, " ")
    method = _HTTP_METHOD.search(without_url)
    args: dict[str, Any] = {"url": url, "method": method.group(1).upper() if method else "GET"}
    body = find_json_literal(without_url)
    if body is None:
        body_match = _API_BODY.search(without_url)
        if body_match:
            body = _clean_content(body_match.group(1))
    if body is not None:
        args["body"] = body
    return args


def command_args(text: str) -> dict[str, Any] | None:
    match = _RUN_VERB.search(text)
    if match:
        rest = match.group(1).strip()
    elif _SHELL_BUILTIN.match(text):
        rest = text.strip()
    else:
        return None

    working_dir = None
    located = _RUN_IN.match(rest)
    if located:
        raw_dir = located.group(2)
        candidate = _clean(raw_dir)
        if raw_dir[:1] in "\"'" or "/" in candidate or "\\" in candidate or candidate.startswith(("~", ".")):
            working_dir = candidate
            rest = located.group(1).strip()

    inner = quoted(rest)
    if inner is not None and rest in (f'"{inner}"', f"'{inner}'"):
        rest = inner
    command = rest.strip().rstrip(".")
    if not command:
        return None
    args: dict[str, Any] = {"command": command}
    if working_dir:
        args["working_dir"] = working_dir
    return args


ARG_SPEC: dict[str, Extractor] = {
    "read_file": read_file_args,
    "write_file": write_file_args,
    "search": search_args,
    "api_call": api_call_args,
    "execute_command": command_args,
}


def extract_args(tool: str, text: str) -> dict[str, Any] | None:
    """Run the extractor registered for ``tool``; None if there is none."""
    extractor = ARG_SPEC.get(tool)
    if extractor is None:
        return None
    return extractor(text)


# ─── Clause splitting ────────────────────────────────────────

SEQUENCING_CONNECTORS = frozenset({
    "then",
    "and then",
    "after that",
    "afterwards",
    "next",
    "finally",
    "followed by",
})

_VERBS = frozenset({
    "read", "view", "open", "load", "show", "display", "cat",
    "write", "save", "create", "overwrite",
    "search", "find", "look", "query", "google",
    "call", "fetch", "get", "post", "put", "delete", "patch", "request",
    "run", "execute", "launch", "list",
    "ls", "mkdir", "rm", "cp", "mv", "grep", "echo", "pwd",
})

_BOUNDARY_RE = re.compile(
    r"(?P<seq>,?\s*\b(?:and\s+then|after\s+that|afterwards|followed\s+by|then)\b,?)"
    r"|(?P<soft_seq>[,;]?\s*\b(?:next|finally)\b,?)"
    r"|(?P<soft>\s+and\b|\s*[,;])",
    re.IGNORECASE,
)
_LEADING_WORD = re.compile(r"\s*([A-Za-z]+)")


@dataclass(frozen=True)
class Clause:
    """One fragment of an utterance and the connector that introduced it."""

    text: str
    connector: str | None = None

    @property
    def sequential(self) -> bool:
        return self.connector in SEQUENCING_CONNECTORS


def _mask(text: str) -> str:
    chars = list(text)
    spans = [(s, e) for s, e in _quoted_spans(text)] + [(s, e) for s, e, _ in _json_spans(text)]
    for start, end in spans:
        for i in range(start, end):
            chars[i] = "\x00"
    return "".join(chars)


def _starts_with_verb(fragment: str) -> bool:
    word = _LEADING_WORD.match(fragment)
    return bool(word) and word.group(1).lower() in _VERBS


def _normalize_connector(raw: str) -> str:
    return " ".join(raw.strip(" ,;").lower().split()) or raw.strip()


def split_clauses(text: str) -> list[Clause]:
    """Split an utterance on sequencing connectors and verb-led conjunctions.

    "and", "," and ";" only split when the following fragment starts with
    an action verb, so "read a.txt and b.txt" stays a single clause.
    Quoted strings and JSON literals are never split.
    """
    if not text or not text.strip():
        return []

    masked = _mask(text)
    clauses: list[Clause] = []
    start = 0
    pending: str | None = None

    for match in _BOUNDARY_RE.finditer(masked):
        following = masked[match.end():]
        if match.lastgroup != "seq" and not _starts_with_verb(following):
            continue
        fragment = text[start : match.start()].strip(" ,;")
        connector = _normalize_connector(match.group(0))
        if fragment:
            clauses.append(Clause(fragment, pending))
        pending = connector
        start = match.end()

    tail = text[start:].strip(" ,;")
    if tail:
        clauses.append(Clause(tail, pending))
    return clauses

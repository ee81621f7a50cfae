"""Gitignore-style path patterns with support for exclusions and parent results."""

from __future__ import annotations

import enum
import os
import re
from collections import deque
from dataclasses import dataclass
from itertools import accumulate
from typing import Iterable, Optional


class _MatchType(enum.Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    REGEXP = "regexp"


@dataclass(frozen=True)
class MatchInfo:
    """Per-pattern match results of a parent directory.

    The empty value means nothing is known about the parent.
    """

    parent_matched: tuple[bool, ...] = ()


def _clean(pattern: str) -> str:
    cleaned = os.path.normpath(pattern)
    if os.sep == "/" and cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


class _Pattern:
    """One compiled pattern."""

    def __init__(self, cleaned: str, exclusion: bool) -> None:
        self.cleaned = cleaned
        self.exclusion = exclusion
        self._regex: Optional[re.Pattern[str]] = None
        self._kind = self._compile()

    def _compile(self) -> _MatchType:
        sep = os.sep
        esc_sep = re.escape(sep)
        parts: list[str] = []
        kind = _MatchType.EXACT
        chars = deque(self.cleaned)
        first = True
        in_class = False

        while chars:
            ch = chars.popleft()
            if in_class:
                if ch == "]":
                    parts.append("]")
                    in_class = False
                elif ch == "\\" and chars:
                    parts.append(re.escape(chars.popleft()))
                elif ch in "[\\":
                    parts.append("\\" + ch)
                else:
                    parts.append(ch)
            elif ch == "*":
                if chars and chars[0] == "*":
                    chars.popleft()
                    if chars and chars[0] == sep:
                        chars.popleft()
                    if not chars:
                        if kind is _MatchType.EXACT:
                            kind = _MatchType.PREFIX
                        else:
                            parts.append(".*")
                            kind = _MatchType.REGEXP
                    else:
                        parts.append(f"(.*{esc_sep})?")
                        kind = _MatchType.REGEXP
                    if first:
                        kind = _MatchType.SUFFIX
                else:
                    parts.append(f"[^{esc_sep}]*")
                    kind = _MatchType.REGEXP
            elif ch == "?":
                parts.append(f"[^{esc_sep}]")
                kind = _MatchType.REGEXP
            elif ch == "\\":
                parts.append(re.escape(chars.popleft()) if chars else re.escape("\\"))
            elif ch == "[":
                parts.append("[")
                in_class = True
                kind = _MatchType.REGEXP
            elif ch == "]":
                parts.append(re.escape(ch))
                kind = _MatchType.REGEXP
            else:
                parts.append(re.escape(ch))
            first = False

        if in_class:
            raise ValueError(f"syntax error in pattern: {self.cleaned!r}")
        try:
            compiled = re.compile("".join(parts))
        except re.error as exc:
            raise ValueError(f"syntax error in pattern: {self.cleaned!r}") from exc
        if kind is _MatchType.REGEXP:
            self._regex = compiled
        return kind

    def match(self, path: str) -> bool:
        if self._kind is _MatchType.EXACT:
            return path == self.cleaned
        if self._kind is _MatchType.PREFIX:
            return path.startswith(self.cleaned[:-2])
        if self._kind is _MatchType.SUFFIX:
            suffix = self.cleaned[2:]
            if path.endswith(suffix):
                return True
            return suffix.startswith(os.sep) and path == suffix[1:]
        return self._regex is not None and self._regex.fullmatch(path) is not None


class PatternMatcher:
    """Matches paths against an ordered list of patterns.

    A pattern starting with ``!`` re-includes paths matched by earlier ones;
    the last pattern that matches decides.
    """

    def __init__(self, patterns: Iterable[str]) -> None:
        self._patterns: list[_Pattern] = []
        for raw in patterns:
            text = raw.strip()
            if not text:
                continue
            text = _clean(text)
            exclusion = False
            if text.startswith("!"):
                if len(text) == 1:
                    raise ValueError('illegal exclusion pattern: "!"')
                exclusion = True
                text = text[1:]
            self._patterns.append(_Pattern(text, exclusion))

    def matches_using_parent_results(
        self, path: str, parent_info: MatchInfo = MatchInfo()
    ) -> tuple[bool, MatchInfo]:
        """Match ``path`` reusing the results computed for its parent directory.

        Returns whether the path matches and the info to pass for its children.
        """
        parent_matched = parent_info.parent_matched
        if parent_matched and len(parent_matched) != len(self._patterns):
            raise ValueError("wrong number of values in parentMatched")

        path = path.replace("/", os.sep)
        matched = False
        results: list[bool] = []
        for pattern, parent_hit in zip(
            self._patterns, parent_matched or [False] * len(self._patterns)
        ):
            match = parent_hit
            if not match:
                if pattern.exclusion != matched:
                    results.append(False)
                    continue
                match = pattern.match(path)
                if not match and not parent_matched:
                    parent = os.path.dirname(path)
                    if parent not in ("", "."):
                        match = any(
                            pattern.match(prefix)
                            for prefix in accumulate(
                                parent.split(os.sep), lambda a, b: a + os.sep + b
                            )
                        )
            results.append(match)
            if match:
                matched = not pattern.exclusion
        return matched, MatchInfo(tuple(results))
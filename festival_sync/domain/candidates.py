from __future__ import annotations

import re
from typing import Iterable, List, Mapping, Optional, Union


DEFAULT_NOISE_KEYWORDS = (
    "VANS", "NOV", "BEATBOX", "EARGASM",
    "PRESENTS", "PRESENTED BY", "SPONSORED BY", "STAGE",
)

MIN_CANDIDATE_LENGTH = 3

_DIGIT_RUN = r"[0-9]{2}"
# Bullet, asterisk, comma, hyphen, or two or more whitespace characters
_SPLIT_PATTERN = re.compile(r"[•*,\-]|\s{2,}")
_EDGE_PATTERN = re.compile(r"^[•*,\-\s]+|[•*,\-\s]+$")


class NoiseRule:
    """Case-insensitive filter for poster text that is not an artist name.

    A text is noise when it is exactly one of the keywords, or when it contains
    two consecutive digits (dates, times, years).
    """

    def __init__(self, keywords: Iterable[str] = DEFAULT_NOISE_KEYWORDS):
        self.keywords = tuple(k.strip() for k in keywords if k and k.strip())
        if self.keywords:
            alternation = "|".join(re.escape(k) for k in self.keywords)
            pattern = rf"^(?:{alternation})$|{_DIGIT_RUN}"
        else:
            pattern = _DIGIT_RUN
        self._regex = re.compile(pattern, re.IGNORECASE)

    def matches(self, text: str) -> bool:
        return bool(self._regex.search(text))

    @classmethod
    def from_config(cls, values: Union[Iterable[str], Mapping[str, str]]) -> NoiseRule:
        """Build a rule from a keyword list or a `keyword -> "exclude"` mapping."""
        if isinstance(values, Mapping):
            keywords = [k for k, effect in values.items()
                        if str(effect).strip().lower() == "exclude"]
        else:
            keywords = list(values)
        return cls(keywords)

    def __repr__(self) -> str:
        return f"NoiseRule(keywords={list(self.keywords)!r})"


DEFAULT_NOISE_RULE = NoiseRule()


def _clean_fragment(fragment: str) -> str:
    return _EDGE_PATTERN.sub("", fragment.strip())


def extract_candidates(raw_text: Union[str, bytes, None],
                       noise_rule: Optional[NoiseRule] = None) -> List[str]:
    """Turn raw OCR text into candidate artist names.

    Whole lines are filtered against the noise rule first; surviving lines are split
    on bullets, asterisks, commas, hyphens and wide gaps, and each cleaned fragment
    is filtered again. Results keep first-seen order with exact duplicates removed.
    """
    rule = noise_rule or DEFAULT_NOISE_RULE
    if not raw_text:
        return []
    if isinstance(raw_text, bytes):
        raw_text = raw_text.decode("utf-8", errors="replace")

    # dict keeps insertion order
    candidates: dict = {}
    for line in raw_text.split("\n"):
        trimmed = line.strip()
        if len(trimmed) < MIN_CANDIDATE_LENGTH:
            continue
        if rule.matches(trimmed):
            continue

        for fragment in _SPLIT_PATTERN.split(trimmed):
            name = _clean_fragment(fragment)
            if len(name) >= MIN_CANDIDATE_LENGTH and not rule.matches(name):
                candidates.setdefault(name, None)

    return list(candidates)

"""Text normalization for crisis keyword matching.

Keyword sets are written in plain Portuguese, but users type with or
without accents, in any case, and occasionally with styled unicode,
invisible characters or letter-by-letter spelling. Both the keywords and
the message go through the same normalizer so matching is done on one
canonical form.
"""
import logging
import re
import unicodedata
from typing import Dict, FrozenSet

logger = logging.getLogger(__name__)


# Digits and symbols that stand in for letters inside words (m0rrer, $uicidio)
LEETSPEAK_MAP: Dict[str, str] = {
    "0": "o",
    "1": "i",
    "3": "e",
    "4": "a",
    "5": "s",
    "7": "t",
    "@": "a",
    "$": "s",
}

# Mathematical/styled letter ranges mapped back to ASCII
UNICODE_LETTER_RANGES: Dict[str, tuple] = {
    "math_bold_upper": (0x1D400, 0x1D419, ord("A")),
    "math_bold_lower": (0x1D41A, 0x1D433, ord("a")),
    "math_italic_upper": (0x1D434, 0x1D44D, ord("A")),
    "math_italic_lower": (0x1D44E, 0x1D467, ord("a")),
    "math_double_upper": (0x1D538, 0x1D551, ord("A")),
    "math_double_lower": (0x1D552, 0x1D56B, ord("a")),
    "circled_upper": (0x24B6, 0x24CF, ord("A")),
    "circled_lower": (0x24D0, 0x24E9, ord("a")),
    "fullwidth_upper": (0xFF21, 0xFF3A, ord("A")),
    "fullwidth_lower": (0xFF41, 0xFF5A, ord("a")),
}

STRIP_CHARS: FrozenSet[str] = frozenset({
    "\u200b",  # Zero-width space
    "\u200c",  # Zero-width non-joiner
    "\u200d",  # Zero-width joiner
    "\ufeff",  # Byte order mark
    "\u00ad",  # Soft hyphen
    "\u2060",  # Word joiner
})


class TextNormalizer:
    """Folds text into the canonical form used for keyword matching.

    Handles:
    - Zero-width characters
    - Styled unicode letters and accents (suicídio → suicidio)
    - Leetspeak inside words (m0rrer → morrer)
    - Separated letters (m.o.r.r.e.r → morrer)
    - Case and repeated whitespace
    """

    def __init__(self):
        self._leet_pattern = re.compile(
            r"(?<=[a-zA-Z])[%s]|[%s](?=[a-zA-Z])"
            % (re.escape("".join(LEETSPEAK_MAP)), re.escape("".join(LEETSPEAK_MAP)))
        )
        # A run of single letters joined by punctuation or line breaks
        self._separated_run = re.compile(r"\b[a-zA-Z](?:[\.\-_\n\r]+[a-zA-Z]\b)+")

        logger.info(
            "TEXT_NORMALIZER_INITIALIZED",
            extra={
                "leetspeak_mappings": len(LEETSPEAK_MAP),
                "unicode_ranges": len(UNICODE_LETTER_RANGES),
            }
        )

    def normalize(self, text: str) -> str:
        """Normalize text for matching.

        Applies in order: strip invisible characters, fold unicode and
        accents to ASCII, convert leetspeak, join separated letters,
        collapse whitespace, lowercase.

        Args:
            text: Raw input text

        Returns:
            Canonical text; empty string for empty or non-string input
        """
        if not text or not isinstance(text, str):
            return ""

        result = "".join(c for c in text if c not in STRIP_CHARS)
        result = self._normalize_unicode(result)
        result = self._leet_pattern.sub(lambda m: LEETSPEAK_MAP[m.group(0)], result)
        result = self._remove_letter_separators(result)
        result = " ".join(result.split())
        return result.lower()

    def _normalize_unicode(self, text: str) -> str:
        result = []
        for char in text:
            code_point = ord(char)
            for start, end, base in UNICODE_LETTER_RANGES.values():
                if start <= code_point <= end:
                    result.append(chr(base + (code_point - start)))
                    break
            else:
                decomposed = unicodedata.normalize("NFKD", char)
                ascii_only = "".join(
                    c for c in decomposed
                    if unicodedata.category(c) != "Mn" and ord(c) < 128
                )
                result.append(ascii_only if ascii_only else char)
        return "".join(result)

    def _remove_letter_separators(self, text: str) -> str:
        # m.o.r.r.e.r → morrer
        return self._separated_run.sub(
            lambda m: "".join(c for c in m.group(0) if c.isalpha()), text
        )


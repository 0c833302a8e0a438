"""Bib number parsing rules."""

import re

_NUMBER_PATTERN = re.compile(r"\b\d{1,5}\b")
_MAX_BIB = 99999
_YEAR_RANGE = range(1900, 2101)


def parse_bib_numbers(text: str) -> list[str]:
    """Extract plausible bib numbers from a line of detected text.

    Years are excluded because race banners and shirts print them often.
    """
    numbers: list[str] = []
    for match in _NUMBER_PATTERN.findall(text):
        value = int(match)
        if value < 1 or value > _MAX_BIB or value in _YEAR_RANGE:
            continue
        numbers.append(str(value))
    return numbers


def normalize_bib(value: str) -> str:
    """Normalize a roster or detected bib number for comparison."""
    stripped = value.strip()
    if stripped.isdigit():
        return str(int(stripped))
    return stripped

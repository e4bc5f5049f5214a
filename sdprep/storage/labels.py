"""FAT volume label sanitizer.

FAT short labels are at most 11 characters. Only upper-case letters, digits,
space, underscore and hyphen are kept so a label is always safe to hand to
``mkfs.fat -n`` as a single argument.
"""

import re

from sdprep.config.settings import DEFAULT_LABEL

MAX_LABEL_LENGTH = 11
_INVALID_CHARS = re.compile(r"[^A-Z0-9_\- ]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_fat_label(text, fallback: str = DEFAULT_LABEL) -> str:
    """Return a FAT-safe label for ``text``, or ``fallback`` when nothing survives.

    >>> sanitize_fat_label("my sd card!!")
    'MY SD CARD'
    """
    if not isinstance(text, str):
        text = ""
    label = _WHITESPACE.sub(" ", text.upper())
    label = _INVALID_CHARS.sub("", label)
    label = _WHITESPACE.sub(" ", label).strip()
    label = label[:MAX_LABEL_LENGTH].rstrip()
    if label:
        return label
    if fallback == DEFAULT_LABEL:
        return DEFAULT_LABEL
    return sanitize_fat_label(fallback)

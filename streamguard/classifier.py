# streamguard/classifier.py

import re
from typing import Tuple

# Patterns matched in order - first match wins
PLATFORM_PATTERNS: list[Tuple[str, re.Pattern]] = [
    # TV platforms
    ("Android TV", re.compile(r"Android\s?TV|Shield|Chromecast|Google\s?TV", re.IGNORECASE)),
    ("Fire TV", re.compile(r"Fire\s?TV|AFT[A-Z]", re.IGNORECASE)),
    ("tvOS", re.compile(r"Apple\s?TV|tvOS", re.IGNORECASE)),
    ("Roku", re.compile(r"Roku", re.IGNORECASE)),
    ("webOS", re.compile(r"webOS|LG", re.IGNORECASE)),
    ("Tizen", re.compile(r"Tizen|Samsung", re.IGNORECASE)),
    ("Console", re.compile(r"PlayStation|Xbox", re.IGNORECASE)),

    # Mobile
    ("Android", re.compile(r"Android", re.IGNORECASE)),
    ("iOS", re.compile(r"iPhone|iPad|iOS", re.IGNORECASE)),

    # Desktop apps and browsers
    ("Windows", re.compile(r"Windows", re.IGNORECASE)),
    ("macOS", re.compile(r"Macintosh|macOS|OSX|Mac\s?OS", re.IGNORECASE)),
    ("Linux", re.compile(r"Linux", re.IGNORECASE)),
    ("Web", re.compile(r"Web|Chrome|Firefox|Safari|Edge", re.IGNORECASE)),
]


def classify_platform(*hints: str) -> str:
    """
    Normalize free-form player hints (product, device, platform) into a platform name.

    Hints are tried in the order given; returns "unknown" if nothing matches.
    """
    for hint in hints:
        if not hint:
            continue
        for platform, pattern in PLATFORM_PATTERNS:
            if pattern.search(hint):
                return platform

    return "unknown"


# Quick lookup for known hint combinations (faster than regex)
KNOWN_PLATFORMS: dict[Tuple[str, ...], str] = {}


def classify_platform_cached(*hints: str) -> str:
    """
    Classify with caching for repeated player hints.
    """
    key = tuple(hints)
    if key in KNOWN_PLATFORMS:
        return KNOWN_PLATFORMS[key]

    platform = classify_platform(*hints)

    # Cache if we haven't exceeded limit (prevent memory issues)
    if len(KNOWN_PLATFORMS) < 10000:
        KNOWN_PLATFORMS[key] = platform

    return platform

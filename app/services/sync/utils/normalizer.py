"""Key normalization for cross-source device and software matching.

Handles common variations across sources:
- Serial padding and case: " hkxrgk2 " → "HKXRGK2"
- Site-prefixed directory names: "atl-HKXRGK2" → serial "HKXRGK2"
- Truncated or punctuated device names: "ATL-HKXRGK2.corp" vs "atl hkxrgk2"
- Versioned/edition software titles: "7-Zip 24.01 (x64)" and "7 Zip 23.0 x64" → "7zip"

Every function here is total: None and empty input give an empty key (or None
where "no value" is meaningful) and nothing raises.
"""
import re
from typing import Optional

# Version substrings, optionally "v"-prefixed: 24.01, v1.2.3
VERSION_PATTERN = re.compile(r'\s*\bv?\d+\.\d+(?:\.\d+)*', re.IGNORECASE)

_ARCH_TOKEN = r'(?:x64|x86|amd64|arm64|64[\s\-]?bit|32[\s\-]?bit)'
PAREN_ARCH_PATTERN = re.compile(r'\(\s*' + _ARCH_TOKEN + r'\s*\)', re.IGNORECASE)
BARE_ARCH_PATTERN = re.compile(r'\b' + _ARCH_TOKEN + r'\b', re.IGNORECASE)

# Anything that is not a letter or digit (underscore included)
NON_ALNUM_PATTERN = re.compile(r'[\W_]+', re.UNICODE)

ARCHITECTURE_ALIASES = {
    'x64': 'x64',
    'amd64': 'x64',
    '64bit': 'x64',
    'x86': 'x86',
    '32bit': 'x86',
    'arm64': 'arm64',
}

# Shortest key allowed to match by containment; shorter keys must be equal
MIN_CONTAINMENT_KEY_LENGTH = 4


def normalize_serial(raw: Optional[str]) -> str:
    """
    Canonical serial number: trimmed and uppercased.

    Idempotent: normalize_serial(normalize_serial(s)) == normalize_serial(s).

    Examples:
        >>> normalize_serial(" hkxrgk2 ")
        'HKXRGK2'
        >>> normalize_serial(None)
        ''
    """
    if not raw:
        return ""
    return str(raw).strip().upper()


def extract_serial(device_name: Optional[str]) -> Optional[str]:
    """
    Extract the serial from a "<site-prefix>-<serial>" directory device name.

    Splits on the first hyphen and keeps everything after it, so serials that
    themselves contain hyphens survive intact.

    Args:
        device_name: Directory display name

    Returns:
        Uppercased serial, or None when there is no hyphen or nothing follows it

    Examples:
        >>> extract_serial("atl-HKXRGK2")
        'HKXRGK2'
        >>> extract_serial("nyc-ab-12")
        'AB-12'
        >>> extract_serial("nohyphen") is None
        True
    """
    if not device_name or '-' not in device_name:
        return None
    serial = normalize_serial(device_name.split('-', 1)[1])
    return serial or None


def normalize_software_name(raw: Optional[str]) -> str:
    """
    Grouping key for a software title regardless of version or edition text.

    Steps:
    1. Strip version numbers (24.01, v1.2.3)
    2. Strip architecture tokens, parenthesized or bare (x64, 32-bit, amd64, ...)
    3. Collapse whitespace and lowercase
    4. Drop every separator and non-alphanumeric character

    Examples:
        >>> normalize_software_name("7-Zip 24.01 (x64)")
        '7zip'
        >>> normalize_software_name("7 Zip 23.0 x64")
        '7zip'
    """
    if not raw:
        return ""
    name = VERSION_PATTERN.sub(' ', str(raw))
    name = PAREN_ARCH_PATTERN.sub(' ', name)
    name = BARE_ARCH_PATTERN.sub(' ', name)
    name = ' '.join(name.split()).lower()
    return NON_ALNUM_PATTERN.sub('', name)


def extract_architecture(raw: Optional[str]) -> Optional[str]:
    """
    Classify the architecture/edition token in a software title.

    Returns:
        'x64', 'x86' or 'arm64'; None if the title carries no token
    """
    if not raw:
        return None
    match = BARE_ARCH_PATTERN.search(str(raw))
    if not match:
        return None
    token = NON_ALNUM_PATTERN.sub('', match.group(0).lower())
    return ARCHITECTURE_ALIASES.get(token)


def name_key(raw: Optional[str]) -> str:
    """Case- and punctuation-insensitive device name key."""
    if not raw:
        return ""
    return NON_ALNUM_PATTERN.sub('', str(raw).lower())


def names_match(left: Optional[str], right: Optional[str]) -> bool:
    """
    Loose device name comparison: equal keys, or one key contained in the other.

    Containment needs the shorter key to be at least MIN_CONTAINMENT_KEY_LENGTH
    characters so tiny names like "pc" do not match everything.
    """
    return keys_match(name_key(left), name_key(right))


def keys_match(left_key: str, right_key: str) -> bool:
    """names_match() for keys already built with name_key()."""
    if not left_key or not right_key:
        return False
    if left_key == right_key:
        return True
    shorter, longer = sorted((left_key, right_key), key=len)
    if len(shorter) < MIN_CONTAINMENT_KEY_LENGTH:
        return False
    return shorter in longer

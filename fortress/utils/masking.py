"""
Masking of sensitive data in log and error messages.
"""

import re
from typing import Iterable


MASK = '********'

# Patterns that indicate sensitive data follows
SENSITIVE_PATTERNS = [
    # Passwords
    re.compile(r'BORG_(?:NEW_)?PASSPHRASE=\S+', re.IGNORECASE),
    re.compile(r'RESTIC_PASSWORD=\S+', re.IGNORECASE),
    re.compile(r'password\s*=\s*[\'"]?[^\s\'"]+[\'"]?', re.IGNORECASE),
    re.compile(r'--password[=\s]+[\'"]?[^\s\'"]+[\'"]?', re.IGNORECASE),

    # Keys
    re.compile(r'-----BEGIN [A-Z ]*PRIVATE KEY-----.*?(?:-----END [A-Z ]*PRIVATE KEY-----|$)', re.DOTALL),
    re.compile(r'private[\s_-]?key\s*[:=]\s*[^\n]+', re.IGNORECASE),
    re.compile(r'secret[\s_-]?key\s*[:=]\s*[\'"]?[^\s\'"]+[\'"]?', re.IGNORECASE),
    re.compile(r'access[\s_-]?key\s*[:=]\s*[\'"]?[^\s\'"]+[\'"]?', re.IGNORECASE),
    re.compile(r'api[\s_-]?key\s*[:=]\s*[\'"]?[^\s\'"]+[\'"]?', re.IGNORECASE),
    re.compile(r'account[\s_-]?key\s*[:=]\s*[\'"]?[^\s\'"]+[\'"]?', re.IGNORECASE),

    # Tokens
    re.compile(r'token\s*[:=]\s*[\'"]?[^\s\'"]{20,}[\'"]?', re.IGNORECASE),
    re.compile(r'bearer\s+\S+', re.IGNORECASE),

    # Cloud credentials
    re.compile(r'AWS_SECRET_ACCESS_KEY=\S+', re.IGNORECASE),
    re.compile(r'AWS_ACCESS_KEY_ID=\S+', re.IGNORECASE),
    re.compile(r'B2_ACCOUNT_(?:ID|KEY)=\S+', re.IGNORECASE),
    re.compile(r'AZURE_ACCOUNT_KEY=\S+', re.IGNORECASE),
]


def _mask_match(match: re.Match) -> str:
    """Keep the key part of a match, mask the value."""
    text = match.group(0)

    if text.startswith('-----BEGIN'):
        return MASK

    eq_index = text.find('=')
    colon_index = text.find(':')
    space_index = text.find(' ')

    separator = -1
    if eq_index > 0:
        separator = eq_index
    elif colon_index > 0:
        separator = colon_index
    elif space_index > 0 and text.lower().startswith(('bearer', '--password')):
        separator = space_index

    if separator > 0:
        return text[:separator + 1] + MASK
    return MASK


def mask_sensitive_data(message: str, secrets: Iterable[str] = ()) -> str:
    """
    Mask sensitive data in a message.

    Args:
        message: Text to mask
        secrets: Literal secret values that must never appear in the output

    Returns:
        Masked message
    """
    masked = message

    # Longest first so a secret containing another is masked whole
    for secret in sorted({s for s in secrets if s}, key=len, reverse=True):
        masked = masked.replace(secret, MASK)

    for pattern in SENSITIVE_PATTERNS:
        masked = pattern.sub(_mask_match, masked)

    return masked


def contains_sensitive_data(message: str) -> bool:
    """Check if a message matches any sensitive data pattern."""
    return any(pattern.search(message) for pattern in SENSITIVE_PATTERNS)

"""Cheap content fingerprint used to detect genuine edits."""

_MASK = 0xFFFFFFFF


def content_hash(content: str) -> str:
    """32-bit rolling hash of ``content`` rendered as 8 hex digits.

    Not cryptographic; it only has to tell "changed since last sync" from
    "typed and undid" without diffing full text.
    """
    h = 0
    for ch in content:
        h = (h * 31 + ord(ch)) & _MASK
    return f"{h:08x}"

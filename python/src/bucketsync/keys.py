"""Mapping between logical keys and backend storage names.

Backend names are ``{prefix}/{key}``. Prefix matching for listing and
prefix removal is a literal string-prefix test against the stored name:
a name ``"abc123"`` matches a query for ``"abc"``.
"""

import re

SEPARATOR = "/"

_DUPLICATE_SEPARATORS = re.compile(r"/{2,}")


def join(prefix: str, key: str) -> str:
    """Join two key segments with a single separator."""
    if not prefix:
        return _DUPLICATE_SEPARATORS.sub(SEPARATOR, key)
    return _DUPLICATE_SEPARATORS.sub(SEPARATOR, f"{prefix}{SEPARATOR}{key}")


def normalize(prefix: str, key: str) -> str:
    """Return the backend name for a logical key.

    An empty key maps to the bare prefix.
    """
    if key == "":
        return prefix
    return join(prefix, key)


def denormalize(prefix: str, name: str) -> str:
    """Return the logical key for a backend name.

    Names that do not start with ``prefix + "/"`` are returned unchanged.
    """
    anchor = prefix + SEPARATOR
    if prefix and len(name) > len(anchor) and name.startswith(anchor):
        return name[len(anchor):]
    return name


def matches_prefix(name: str, normalized_prefix: str) -> bool:
    """Literal string-prefix test used by listing."""
    return name.startswith(normalized_prefix)


def relative_to(remote: str, key: str) -> str:
    """Strip a remote sync prefix, then one leading separator, from a key.

    Like listing, this is a string operation: with ``remote="abc"`` the
    key ``"abc123/x"`` becomes ``"123/x"``.
    """
    if remote and key.startswith(remote):
        key = key[len(remote):]
    if key.startswith(SEPARATOR):
        key = key[1:]
    return key

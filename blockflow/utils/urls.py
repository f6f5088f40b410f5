"""Resolve backend names and connection URLs to a backend key."""

from __future__ import annotations

from typing import Mapping, NamedTuple


class BackendTarget(NamedTuple):
    backend: str
    url: str
    location: str


def resolve_backend(value: str, schemes: Mapping[str, str]) -> BackendTarget:
    """Map ``value`` onto one of the backends in ``schemes``.

    ``value`` is either a bare name (``redis``) or a URL whose scheme picks the
    backend (``redis://cache:6379/1``, ``postgresql://db/blockflow``). For a
    URL, ``location`` is everything after ``://``; for a bare name it is empty.

    Raises:
        ValueError: If the name or scheme is not in ``schemes``.
    """
    scheme, separator, location = value.strip().partition("://")
    backend = schemes.get(scheme.lower())
    if backend is None:
        raise ValueError(f"Unsupported backend: {value}")
    return BackendTarget(backend, value if separator else "", location)

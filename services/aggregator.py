from __future__ import annotations

from typing import Dict, Iterable, List

from services.models import Extension


def aggregate(extensions: Iterable[Extension]) -> List[Extension]:
    """
    Drop duplicate identities, keeping the first occurrence whole.

    Callers pass every Marketplace entry before any Open VSX entry, which is
    what makes the Marketplace record win a tie. Relative order of the kept
    entries is preserved.
    """
    seen: Dict[str, Extension] = {}
    out: List[Extension] = []
    for ext in extensions:
        key = ext.identity_key
        if key in seen:
            continue
        seen[key] = ext
        out.append(ext)
    return out

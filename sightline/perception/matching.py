"""Name and type matching shared by the plausibility filter and the fuser."""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

# synonym sets; the group name itself is a member
TYPE_GROUPS: Dict[str, FrozenSet[str]] = {
    "seat": frozenset({"seat", "chair", "bench", "stool", "sofa", "couch"}),
    "door": frozenset({"door", "gate", "entrance", "exit"}),
    "container": frozenset({"container", "box", "chest", "drawer", "cabinet"}),
    "display": frozenset({"display", "screen", "monitor", "terminal"}),
}


def normalize_name(name: Optional[str]) -> str:
    if not name:
        return ""
    return name.casefold().replace(" ", "").replace("_", "").replace("-", "")


def names_similar(a: Optional[str], b: Optional[str]) -> bool:
    """Substring containment either way after normalization."""
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return False
    return na in nb or nb in na


def type_group(type_name: Optional[str]) -> Optional[str]:
    """Synonym group whose name equals, or one of whose members occurs in, the type."""
    t = (type_name or "").strip().casefold()
    if not t:
        return None
    for group, members in TYPE_GROUPS.items():
        if t == group or any(member in t for member in members):
            return group
    return None


def types_equivalent(a: Optional[str], b: Optional[str]) -> bool:
    """Same type (case-insensitive) or same synonym group."""
    ta, tb = (a or "").strip().casefold(), (b or "").strip().casefold()
    if not ta or not tb:
        return False
    if ta == tb:
        return True
    ga = type_group(ta)
    return ga is not None and ga == type_group(tb)

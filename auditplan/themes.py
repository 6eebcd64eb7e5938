from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, NewType, Optional, Sequence

from .policy_defaults import SYSTEM_THEME_NAMES


ThemeId = NewType("ThemeId", str)


class UnknownThemeError(LookupError):
    """Raised when a selected theme id is missing from the catalogue."""

    def __init__(self, theme_id: str) -> None:
        super().__init__(f"Unknown theme '{theme_id}'.")
        self.theme_id = theme_id


@dataclass(frozen=True)
class ThemeRef:
    id: ThemeId
    name: str
    description: str = ""


def normalize_theme_name(name: Optional[str]) -> str:
    return " ".join((name or "").split()).casefold()


def is_system_theme(name: Optional[str], system_names: Iterable[str] = SYSTEM_THEME_NAMES) -> bool:
    target = normalize_theme_name(name)
    if not target:
        return False
    return any(normalize_theme_name(candidate) == target for candidate in system_names)


def as_theme_ref(theme: Any) -> ThemeRef:
    """Accept an ORM row, a mapping or a ThemeRef and return a ThemeRef."""
    if isinstance(theme, ThemeRef):
        return theme
    if isinstance(theme, dict):
        theme_id = theme.get("id")
        name = theme.get("name")
        description = theme.get("description") or ""
    else:
        theme_id = getattr(theme, "id", None)
        name = getattr(theme, "name", None)
        description = getattr(theme, "description", "") or ""
    if theme_id is None or not name:
        raise ValueError("Themes need both an id and a name.")
    return ThemeRef(id=ThemeId(str(theme_id)), name=str(name), description=str(description))


def theme_catalog(themes: Iterable[Any]) -> Dict[ThemeId, ThemeRef]:
    catalog: Dict[ThemeId, ThemeRef] = {}
    for theme in themes or []:
        ref = as_theme_ref(theme)
        catalog[ref.id] = ref
    return catalog


def lookup_theme(catalog: Dict[ThemeId, ThemeRef], theme_id: str) -> ThemeRef:
    ref = catalog.get(ThemeId(str(theme_id)))
    if ref is None:
        raise UnknownThemeError(str(theme_id))
    return ref


def schedulable_theme_ids(
    themes: Iterable[Any],
    system_names: Sequence[str] = SYSTEM_THEME_NAMES,
) -> List[ThemeId]:
    """Ids of every catalogue theme that deserves an interview slot."""
    return [ref.id for ref in theme_catalog(themes).values() if not is_system_theme(ref.name, system_names)]

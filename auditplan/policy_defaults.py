from __future__ import annotations

import copy
from typing import Any, Dict, List


def _meeting_config(
    title: str,
    *,
    description: str = "",
    location: str = "",
    minutes: int | None = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "title": title,
        "description": description,
        "location": location,
    }
    if minutes is not None:
        payload["minutes"] = max(0, int(minutes))
    return payload


SYSTEM_THEME_NAMES: List[str] = ["ADMIN", "Cloture"]

WORKING_HOURS: Dict[str, str] = {
    "start": "09:00",
    "end": "18:00",
}

BREAK_WINDOWS: Dict[str, Dict[str, Any]] = {
    "morning_break": {"start": "10:00", "minutes": 15},
    "lunch": {"start": "12:00", "minutes": 60},
    "afternoon_break": {"start": "16:00", "minutes": 15},
}

MEETINGS: Dict[str, Dict[str, Any]] = {
    "opening": _meeting_config(
        "Réunion d'ouverture",
        description="Présentation de l'audit et des objectifs",
        location="Salle de réunion principale",
        minutes=60,
    ),
    "closing": _meeting_config(
        "Réunion de clôture",
        description="Présentation des conclusions préliminaires",
        location="Salle de réunion principale",
        minutes=60,
    ),
    "morning_break": _meeting_config("Pause café", description="Pause du matin"),
    "lunch": _meeting_config("Pause déjeuner", description="Pause déjeuner"),
    "afternoon_break": _meeting_config("Pause café", description="Pause de l'après-midi"),
    "interview": _meeting_config(
        "Interview: {theme}",
        description="Entretien sur la thématique: {theme}",
        location="À déterminer",
    ),
}

CALENDAR_DEFAULTS: Dict[str, Any] = {
    "working_hours": WORKING_HOURS,
    "breaks": BREAK_WINDOWS,
    # Closing sits right after the afternoon break on the last selected day.
    "closing_start": "16:15",
    "default_theme_minutes": 60,
    "min_adjusted_minutes": 30,
    "max_hours_per_day": 8,
}


BASELINE_POLICY: Dict[str, Any] = {
    "name": "Standard Audit Calendar",
    "description": "Seeded calendar used to lay out interviews across the audit days.",
    "calendar": CALENDAR_DEFAULTS,
    "meetings": MEETINGS,
    "system_themes": SYSTEM_THEME_NAMES,
}


DEFAULT_THEMES: List[Dict[str, str]] = [
    {"name": "ADMIN", "description": "Tâches administratives de l'audit"},
    {"name": "Cloture", "description": "Clôture et synthèse de l'audit"},
    {"name": "Gouvernance", "description": "Politiques, rôles et responsabilités"},
    {"name": "Gestion des actifs", "description": "Inventaire et classification des actifs"},
    {"name": "Contrôle d'accès", "description": "Gestion des identités et des habilitations"},
    {"name": "Sécurité réseau", "description": "Segmentation, filtrage et supervision"},
    {"name": "Sécurité physique", "description": "Accès aux locaux et protection des équipements"},
    {"name": "Continuité d'activité", "description": "Sauvegardes, PCA et PRA"},
    {"name": "Gestion des incidents", "description": "Détection, réponse et retour d'expérience"},
    {"name": "Relations fournisseurs", "description": "Sécurité de la chaîne d'approvisionnement"},
]


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)

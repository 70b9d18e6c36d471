from dataclasses import dataclass

@dataclass(frozen=True)
class IncidentType:
    id: str
    label: str
    priority: int  # 1 = low, 5 = critical
    urgent: bool
    category: str
    description: str | None = None

BASE_INCIDENT_TYPES = (
    IncidentType("amenaza", "Threat", 3, False, "violence"),
    IncidentType("asalto", "Assault", 5, True, "violence"),
    IncidentType("disturbio", "Disturbance", 2, False, "disturbance"),
    IncidentType("hurto", "Theft", 3, False, "theft"),
    IncidentType("otro", "Other", 1, False, "other"),
    IncidentType("robo", "Robbery", 4, True, "theft"),
    IncidentType("sospechoso", "Suspicious Activity", 2, False, "suspicious"),
    IncidentType("vandalismo", "Vandalism", 2, False, "property"),
    IncidentType("violencia", "Violence", 5, True, "violence"),
)

REGIONAL_INCIDENT_TYPES = {
    "general": (),
    "argentina": (
        IncidentType("motochorro", "Motochorro", 5, True, "theft", "Robbery carried out from a motorcycle"),
    ),
    "mexico": (
        IncidentType("secuestro_express", "Express Kidnapping", 5, True, "violence", "Short-duration kidnapping for extortion"),
        IncidentType("extorsion", "Extortion", 4, True, "violence"),
    ),
    "colombia": (
        IncidentType("atraco", "Armed Robbery", 5, True, "theft"),
        IncidentType("cosquilleo", "Pickpocketing", 3, False, "theft"),
    ),
    "chile": (
        IncidentType("lanza", "Lanza", 3, False, "theft"),
        IncidentType("portonazo", "Home Invasion Robbery", 4, True, "theft"),
    ),
}

class IncidentTypeCatalog:
    """The closed vocabulary incidents are validated against."""

    def __init__(self, types):
        self._types = {t.id: t for t in types}

    @classmethod
    def for_region(cls, region: str = "general") -> "IncidentTypeCatalog":
        if region not in REGIONAL_INCIDENT_TYPES:
            raise ValueError(f"unknown incident region {region!r}")
        return cls(BASE_INCIDENT_TYPES + REGIONAL_INCIDENT_TYPES[region])

    def __contains__(self, type_id: str) -> bool:
        return type_id in self._types

    def get(self, type_id: str) -> IncidentType | None:
        return self._types.get(type_id)

    def ids(self) -> list[str]:
        return sorted(self._types)

    def __iter__(self):
        return iter(sorted(self._types.values(), key=lambda t: (-t.priority, t.id)))


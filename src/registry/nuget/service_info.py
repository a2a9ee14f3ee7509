"""Mapping of v3 service index ``@type`` values to service kinds and preferences."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class ServiceType(Enum):
    """Logical services a v3 feed can advertise."""
    QUERY = "Query"
    AUTOCOMPLETE = "AutoComplete"
    REGISTRATIONS = "Registrations"
    FILES = "Files"
    REPORT_ABUSE = "ReportAbuse"


# Services whose equal-preference endpoints are mirrors of one logical feed
MIRRORABLE_SERVICES = frozenset({ServiceType.QUERY, ServiceType.REGISTRATIONS, ServiceType.AUTOCOMPLETE})


@dataclass(frozen=True)
class ServiceInfo:
    """Service kind and preference for one ``@type``; higher preference wins."""
    service_type: ServiceType
    preference: int
    url: Optional[str] = None

    def with_url(self, url: str) -> "ServiceInfo":
        return ServiceInfo(self.service_type, self.preference, url)


_SERVICE_TYPES: Dict[str, ServiceInfo] = {
    "searchqueryservice": ServiceInfo(ServiceType.QUERY, 0),
    "searchqueryservice/3.0.0-beta": ServiceInfo(ServiceType.QUERY, 1),
    "searchqueryservice/3.0.0-rc": ServiceInfo(ServiceType.QUERY, 2),
    "searchautocompleteservice": ServiceInfo(ServiceType.AUTOCOMPLETE, 0),
    "searchautocompleteservice/3.0.0-beta": ServiceInfo(ServiceType.AUTOCOMPLETE, 1),
    "searchautocompleteservice/3.0.0-rc": ServiceInfo(ServiceType.AUTOCOMPLETE, 2),
    "registrationsbaseurl": ServiceInfo(ServiceType.REGISTRATIONS, 0),
    "registrationsbaseurl/versioned": ServiceInfo(ServiceType.REGISTRATIONS, 1),
    "registrationsbaseurl/3.0.0-beta": ServiceInfo(ServiceType.REGISTRATIONS, 2),
    "registrationsbaseurl/3.4.0": ServiceInfo(ServiceType.REGISTRATIONS, 3),
    "registrationsbaseurl/3.6.0": ServiceInfo(ServiceType.REGISTRATIONS, 4),
    "packagebaseaddress/3.0.0": ServiceInfo(ServiceType.FILES, 0),
    "reportabuseuritemplate/3.0.0-beta": ServiceInfo(ServiceType.REPORT_ABUSE, 0),
    "reportabuseuritemplate/3.0.0-rc": ServiceInfo(ServiceType.REPORT_ABUSE, 1),
}


def lookup_service(type_name: Optional[str]) -> Optional[ServiceInfo]:
    """Return the ServiceInfo for an ``@type`` string, or None if unrecognized."""
    if not type_name:
        return None
    return _SERVICE_TYPES.get(type_name.strip().lower())

"""NuGet feed support.

- discovery.py: probes a source and builds its ResourceCollection (local, v2 or v3)
- feeds_v2.py / feeds_v3.py: protocol adapters (packages, query, files, autocomplete)
- converters.py: v3 JSON, v2 Atom and nuspec documents to PackageBase
- filters.py: client-side name, tag, contains and version filters
- local.py: folder and single-file repositories
- client.py: parallel per-source find/search plus install/download entry points
"""

from .client import NuGetClient  # noqa: F401
from .discovery import DiscoveryCache, ResourceCollection, discover  # noqa: F401
from .local import LocalPackageRepository  # noqa: F401

__all__ = [
    "NuGetClient",
    "DiscoveryCache",
    "ResourceCollection",
    "discover",
    "LocalPackageRepository",
]

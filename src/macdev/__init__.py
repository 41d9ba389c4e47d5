from ._version import __version__
from .environment import EnvironmentManager, ReconcileResult
from .errors import MacdevError
from .homebrew import Homebrew, PackageManager
from .manifest import GlobalManifest, LocalManifest, ManifestStore
from .package_spec import PackageSpec, parse_package_spec

__all__ = [
    "EnvironmentManager",
    "GlobalManifest",
    "Homebrew",
    "LocalManifest",
    "MacdevError",
    "ManifestStore",
    "PackageManager",
    "PackageSpec",
    "ReconcileResult",
    "__version__",
    "parse_package_spec",
]

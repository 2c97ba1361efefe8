from importlib.metadata import PackageNotFoundError, version

from trackdiff.diff import diff
from trackdiff.host.document import HostDocument
from trackdiff.models import ApplyResult, DiffOp, DiffOpKind, Granularity
from trackdiff.redline.fallback import FallbackController

try:
    __version__ = version("trackdiff")
except PackageNotFoundError:
    # Running from a source checkout without an installed distribution.
    __version__ = "0.0.0-dev"

__all__ = [
    "FallbackController",
    "HostDocument",
    "ApplyResult",
    "DiffOp",
    "DiffOpKind",
    "Granularity",
    "diff",
    "__version__",
]

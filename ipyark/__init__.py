from importlib.metadata import PackageNotFoundError, version
from .kernel import Kernel, run_kernel

try:
    __version__ = version("ipyark")
except PackageNotFoundError:  # pragma: no cover - local editable without metadata
    __version__ = "0.0.0+local"

__all__ = ["Kernel", "run_kernel", "__version__"]

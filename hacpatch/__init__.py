from importlib.metadata import PackageNotFoundError, version

from .nsp import PackageHandle  # noqa
from .pipeline import Patcher  # noqa

try:
    __version__ = version("hacpatch")
except PackageNotFoundError:
    __version__ = None

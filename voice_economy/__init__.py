"""voice-economy — Voice presence accrual engine."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("voice-economy")
except PackageNotFoundError:
    __version__ = "0.0.0"

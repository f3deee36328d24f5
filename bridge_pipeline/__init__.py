"""Bridge Pipeline - resumable ingestion of mod-loader porting documentation."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("bridge-pipeline")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for development without install

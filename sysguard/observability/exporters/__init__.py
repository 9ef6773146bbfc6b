"""Journal exporters."""

from sysguard.observability.exporters.file_exporter import FileExporter
from sysguard.observability.exporters.stdout_exporter import StdoutExporter

__all__ = [
    "StdoutExporter",
    "FileExporter",
]

"""Format id -> formatter or connector lookup.

Build one registry at startup with build_default_registry() and pass it to
the orchestrator. Registration happens before first use; afterwards the
registry is only read.
"""

from dataclasses import dataclass

from connectors import Connector, default_connectors
from formatters import Formatter, default_formatters
from stores import SecretStore


@dataclass
class FormatInfo:
    format_id: str
    name: str
    version: str
    family: str


class ExportRegistry:
    def __init__(self):
        self._formatters: dict[str, Formatter] = {}
        self._connectors: dict[str, Connector] = {}

    def _check_free(self, format_id: str) -> None:
        if format_id in self._formatters or format_id in self._connectors:
            raise ValueError(f"Format id '{format_id}' is already registered")

    def register_formatter(self, formatter: Formatter) -> None:
        self._check_free(formatter.id)
        self._formatters[formatter.id] = formatter

    def register_connector(self, connector: Connector) -> None:
        self._check_free(connector.id)
        self._connectors[connector.id] = connector

    def get_formatter(self, format_id: str) -> Formatter | None:
        return self._formatters.get(format_id)

    def get_connector(self, format_id: str) -> Connector | None:
        return self._connectors.get(format_id)

    def get(self, format_id: str) -> Formatter | Connector | None:
        """Formatters win over connectors."""
        return self.get_formatter(format_id) or self.get_connector(format_id)

    def __contains__(self, format_id: str) -> bool:
        return self.get(format_id) is not None

    def available_formats(self) -> list[FormatInfo]:
        entries = list(self._formatters.values()) + list(self._connectors.values())
        return [FormatInfo(e.id, e.name, e.version, e.family) for e in entries]


def build_default_registry(secrets: SecretStore, client_options: dict | None = None) -> ExportRegistry:
    """Registry with every installed formatter and connector."""
    registry = ExportRegistry()
    for formatter in default_formatters():
        registry.register_formatter(formatter)
    for connector in default_connectors(secrets, client_options):
        registry.register_connector(connector)
    return registry

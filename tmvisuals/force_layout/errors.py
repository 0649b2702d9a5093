from __future__ import annotations

from typing import Any


class LayoutError(Exception):
    """Base class for layout engine failures."""


class ConfigurationError(LayoutError):
    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        summary = "; ".join(self.errors) if self.errors else "invalid configuration"
        super().__init__(summary)


class UnknownNodeError(LayoutError):
    def __init__(self, node_id: Any, operation: str) -> None:
        self.node_id = str(node_id)
        self.operation = str(operation)
        super().__init__(f"{self.operation}: unknown node id {self.node_id!r}")


class ViewportUnavailableError(LayoutError):
    def __init__(self, reason: str) -> None:
        self.reason = str(reason)
        super().__init__(self.reason)


class ResourceExhaustion(LayoutError):
    def __init__(self, resource: str, observed: float, limit: float) -> None:
        self.resource = str(resource)
        self.observed = float(observed)
        self.limit = float(limit)
        super().__init__(
            f"{self.resource} limit breached: {self.observed:.2f} > {self.limit:.2f}"
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "observed": round(self.observed, 4),
            "limit": round(self.limit, 4),
        }

"""
Execution error taxonomy.

Every failure that can leave the execution core is an ExecutionError
subclass carrying a category and an HTTP-equivalent status, so entry
adapters (API, CLI) can always answer with a structured payload.
"""

from __future__ import annotations

from typing import Any


class ExecutionError(Exception):
    """Base class for structured execution failures."""

    category = "execution_error"
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "category": self.category}
        if self.details:
            payload["details"] = self.details
        return payload


class InputMissingError(ExecutionError):
    """Required request or identity fields are absent."""

    category = "input_missing"
    http_status = 400

    def __init__(self, missing_fields: list[str], message: str | None = None):
        fields = [str(item) for item in missing_fields]
        super().__init__(
            message or f"Missing required fields: {', '.join(fields)}",
            {"missingFields": fields},
        )
        self.missing_fields = fields


class GraphError(ExecutionError):
    """Target node or workflow cannot be located."""

    category = "graph_not_found"
    http_status = 404


class AgentDefinitionNotFoundError(GraphError):
    category = "agent_definition_not_found"


class TransportError(ExecutionError):
    """Generation-service call failed before producing a text payload.

    `kind` is one of: http_status, html_body, timeout, network,
    context_length, bad_payload.
    """

    category = "transport_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        kind: str = "network",
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged = {"kind": kind, **(details or {})}
        if status_code is not None:
            merged["statusCode"] = status_code
        super().__init__(message, merged)
        self.kind = kind
        self.status_code = status_code


class ParseError(ExecutionError):
    """Generated text is not parseable JSON. Absorbed into quality fields."""

    category = "parse_error"
    http_status = 422


class SchemaError(ExecutionError):
    """Parsed JSON does not satisfy the output-kind schema. Absorbed into quality fields."""

    category = "schema_error"
    http_status = 422

    def __init__(self, message: str, issues: list[Any] | None = None):
        super().__init__(message)
        self.issues: list[Any] = list(issues or [])


class PersistenceError(ExecutionError):
    """Run record write or read-back verification failed."""

    category = "persistence_error"
    http_status = 500


class ConfigurationError(ExecutionError):
    category = "configuration_error"
    http_status = 500

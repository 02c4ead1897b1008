from dataclasses import dataclass


@dataclass
class RequestContext:
    """Per-request values shared by middleware, auth and handlers."""

    request_id: str
    correlation_id: str
    user_id: str | None

"""Request context management for observability.

Context variables carry request-scoped identifiers across async boundaries so
that JSONFormatter can attach them to every log line.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# User ID - authenticated caller, or webhook subject while processing an event
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

# Webhook provider currently being processed (revenuecat / stripe)
provider_var: ContextVar[str] = ContextVar("provider", default="")

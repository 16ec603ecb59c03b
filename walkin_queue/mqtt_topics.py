"""MQTT topic helpers.

We keep topic construction in one place so server and clients agree on naming.

Topic layout under a configurable namespace (default: `walkin/v1`):

Request/response:
- `<ns>/queue/requests`
    Customers and staff publish requests here.
- `<ns>/queue/responses/<client_id>`
    The server replies on the requester's own topic (`reply_to`).

Streaming/broadcast:
- `<ns>/queue/events`
    One message per committed queue change.
- `<ns>/customers/<customer_id>/events`
    The same events, filtered to one customer.
- `<ns>/status/updates`
    Periodic snapshots of the active queue and staff statistics.
"""

from __future__ import annotations

from .settings import DEFAULT_NAMESPACE


def queue_requests(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/queue/requests"


def queue_responses(client_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/queue/responses/{client_id}"


def queue_events(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/queue/events"


def customer_events(customer_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/customers/{customer_id}/events"


def status_updates(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/status/updates"

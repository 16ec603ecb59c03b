from __future__ import annotations

# Staff (operator) client.
#
# One request per invocation, like the customer client, but every request
# carries the operator token. The token comes from --operator-token or the
# WALKIN_OPERATOR_TOKEN environment variable.

import argparse
import logging
import os
import time
from typing import Any

from .mqtt_client import MqttClient
from .mqtt_topics import queue_requests, queue_responses
from .settings import OPERATOR_TOKEN_ENV, add_mqtt_args


def staff_request(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    operator_token: str | None,
    message: dict[str, Any],
    timeout: float = 5.0,
) -> dict[str, Any]:
    client_id = f"staff-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()

    reply_topic = queue_responses(client_id, namespace)
    mqtt.subscribe(reply_topic)

    try:
        return mqtt.request(
            request_topic=queue_requests(namespace),
            response_topic=reply_topic,
            message={**message, "operator_token": operator_token, "client_id": client_id},
            timeout=timeout,
        )
    finally:
        mqtt.stop()


def format_entry(entry: dict[str, Any]) -> str:
    return f"#{entry['position']} {entry['name']} ({entry['status']}, id {entry['id']})"


def format_response(resp: dict[str, Any]) -> str:
    rtype = resp.get("type")
    if rtype == "error":
        hint = " (try again)" if resp.get("retryable") else ""
        details = "; ".join(resp.get("details", []))
        return f"error {resp['code']}: {resp['message']}{hint}" + (f" [{details}]" if details else "")
    if rtype == "joined":
        return f"walk-in added at position {resp['position']} (customer id {resp['customer_id']})"
    if rtype == "now_serving":
        return f"now serving {format_entry(resp['entry'])}"
    if rtype == "service_completed":
        return f"completed {resp['entry']['name']}"
    if rtype == "cancelled":
        return f"cancelled {resp['entry']['name']}"
    if rtype in ("admin_queue", "renumbered"):
        lines = [format_entry(e) for e in resp["queue"]] or ["(queue is empty)"]
        return "\n".join([f"{resp['total']} in queue", *lines])
    if rtype == "admin_stats":
        return (
            f"in queue: {resp['total_in_queue']}, served today: {resp['total_served_today']}, "
            f"avg service: {resp['avg_service_minutes']} min, estimated wait: {resp['estimated_wait_minutes']} min"
        )
    return str(resp)


def main() -> None:
    parser = argparse.ArgumentParser(description="Staff client (MQTT)")
    add_mqtt_args(parser)
    parser.add_argument("--operator-token", default=os.environ.get(OPERATOR_TOKEN_ENV))
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_walk = sub.add_parser("walk-in", help="add a walk-in customer")
    p_walk.add_argument("--name", required=True)
    p_walk.add_argument("--phone", default=None)
    p_walk.add_argument("--estimated-minutes", type=int, default=None)

    sub.add_parser("call-next", help="start serving the next customer")

    p_done = sub.add_parser("complete", help="finish serving a customer")
    p_done.add_argument("--entry-id", required=True)
    p_done.add_argument("--duration", type=int, default=None, help="service duration in minutes")

    p_cancel = sub.add_parser("cancel", help="cancel a waiting customer")
    p_cancel.add_argument("--entry-id", required=True)

    sub.add_parser("queue", help="list the active queue")
    sub.add_parser("stats", help="show today's statistics")
    sub.add_parser("renumber", help="force a renumbering pass")

    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    message: dict[str, Any]
    if args.cmd == "walk-in":
        message = {"type": "add_walk_in", "name": args.name, "phone": args.phone}
        if args.estimated_minutes is not None:
            message["estimated_service_minutes"] = args.estimated_minutes
    elif args.cmd == "call-next":
        message = {"type": "call_next"}
    elif args.cmd == "complete":
        message = {"type": "complete_service", "entry_id": args.entry_id, "duration_minutes": args.duration}
    elif args.cmd == "cancel":
        message = {"type": "cancel_entry", "entry_id": args.entry_id}
    elif args.cmd == "queue":
        message = {"type": "admin_queue"}
    elif args.cmd == "stats":
        message = {"type": "admin_stats"}
    else:
        message = {"type": "renumber"}

    resp = staff_request(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        operator_token=args.operator_token,
        message=message,
    )
    print(f"[staff] {format_response(resp)}")


if __name__ == "__main__":
    main()

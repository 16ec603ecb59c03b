from __future__ import annotations

# Customer client.
#
# A customer is a short-lived process:
# - connect to broker
# - publish one request (join / position / cancel)
# - wait for the correlated response
# - print it and exit
#
# `watch` is the long-lived exception: it follows the queue event topic
# and re-asks for the authoritative position on every event.

import argparse
import logging
import threading
import time
from typing import Any

from .mqtt_client import MqttClient
from .mqtt_topics import queue_events, queue_requests, queue_responses
from .settings import add_mqtt_args


def _request(*, mqtt_host: str, mqtt_port: int, namespace: str, message: dict[str, Any]) -> dict[str, Any]:
    # Use a unique client id so multiple customers can run concurrently.
    client_id = f"customer-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()

    reply_topic = queue_responses(client_id, namespace)
    mqtt.subscribe(reply_topic)

    try:
        return mqtt.request(
            request_topic=queue_requests(namespace),
            response_topic=reply_topic,
            message={**message, "client_id": client_id},
            timeout=5.0,
        )
    finally:
        mqtt.stop()


def join_queue(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    name: str,
    phone: str,
    estimated_service_minutes: int | None = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {"type": "join_queue", "name": name, "phone": phone}
    if estimated_service_minutes is not None:
        message["estimated_service_minutes"] = estimated_service_minutes
    return _request(mqtt_host=mqtt_host, mqtt_port=mqtt_port, namespace=namespace, message=message)


def queue_position(*, mqtt_host: str, mqtt_port: int, namespace: str, customer_id: str) -> dict[str, Any]:
    return _request(
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        namespace=namespace,
        message={"type": "queue_position", "customer_id": customer_id},
    )


def cancel(*, mqtt_host: str, mqtt_port: int, namespace: str, customer_id: str) -> dict[str, Any]:
    return _request(
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        namespace=namespace,
        message={"type": "cancel_by_customer", "customer_id": customer_id},
    )


def describe_position(resp: dict[str, Any]) -> str:
    status = resp.get("status")
    if status == "waiting":
        return (
            f"you are number {resp['position']} "
            f"({resp['people_ahead']} ahead, about {resp['estimated_wait_minutes']} min)"
        )
    if status == "in_service":
        return "it's your turn!"
    if status == "completed":
        return "service completed, thank you"
    if status == "cancelled":
        return "your place was cancelled"
    return f"error: {resp.get('message', resp)}"


def watch(*, mqtt_host: str, mqtt_port: int, namespace: str, customer_id: str) -> None:
    client_id = f"watch-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()
    reply_topic = queue_responses(client_id, namespace)
    mqtt.subscribe(reply_topic)

    # Any queue change may move us; events only say *that* something changed.
    # Handlers run on the network thread, so the refresh happens here instead.
    changed = threading.Event()
    mqtt.add_handler(lambda _topic, _msg: changed.set())
    mqtt.subscribe(queue_events(namespace), qos=1)
    changed.set()
    try:
        while True:
            if changed.wait(timeout=1.0):
                changed.clear()
                resp = mqtt.request(
                    request_topic=queue_requests(namespace),
                    response_topic=reply_topic,
                    message={"type": "queue_position", "customer_id": customer_id, "client_id": client_id},
                    timeout=5.0,
                )
                print(f"[customer] {describe_position(resp)}")
    except KeyboardInterrupt:
        pass
    finally:
        mqtt.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Customer client (MQTT)")
    add_mqtt_args(parser)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_join = sub.add_parser("join", help="join the queue")
    p_join.add_argument("--name", required=True)
    p_join.add_argument("--phone", required=True)
    p_join.add_argument("--estimated-minutes", type=int, default=None)

    for cmd, help_text in (
        ("status", "show your current position"),
        ("cancel", "leave the queue"),
        ("watch", "follow your position live"),
    ):
        p = sub.add_parser(cmd, help=help_text)
        p.add_argument("--customer-id", required=True)

    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    conn = {"mqtt_host": args.mqtt_host, "mqtt_port": args.mqtt_port, "namespace": args.namespace}

    if args.cmd == "join":
        resp = join_queue(
            **conn,
            name=args.name,
            phone=args.phone,
            estimated_service_minutes=args.estimated_minutes,
        )
        if resp.get("type") == "joined":
            print(f"[customer] you are number {resp['position']} (customer id {resp['customer_id']})")
        else:
            print(f"[customer] error: {resp}")
    elif args.cmd == "status":
        print(f"[customer] {describe_position(queue_position(**conn, customer_id=args.customer_id))}")
    elif args.cmd == "cancel":
        resp = cancel(**conn, customer_id=args.customer_id)
        if resp.get("type") == "cancelled":
            print("[customer] you are out of the queue")
        else:
            print(f"[customer] error: {resp}")
    elif args.cmd == "watch":
        watch(**conn, customer_id=args.customer_id)


if __name__ == "__main__":
    main()

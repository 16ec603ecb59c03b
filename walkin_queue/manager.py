from __future__ import annotations

# The queue server.
#
# This file contains two layers:
# 1) `QueueService` (pure logic, easy to unit test): wires the store,
#    sequencer, state machine, admission and notifier together and enforces
#    operator authorization.
# 2) `MqttQueueService` + `main()` (integration with the MQTT broker).

import argparse
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable

from .admission import AdmissionController, AdmissionResult
from .auth import OperatorAuthorizer
from .errors import ErrorResponse, QueueError, Unauthorized, ValidationError
from .models import QueueEntry
from .mqtt_topics import queue_requests, status_updates
from .notifier import AdminStats, ChangeNotifier, EventBus, PositionReport
from .rate_limit import SlidingWindowRateLimiter
from .sequencer import PositionSequencer, RenumberRetrier
from .settings import QueueSettings, add_mqtt_args, add_server_args
from .state_machine import QueueStateMachine
from .store import RecordStore
from .validation import validate_customer_id

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)


class QueueService:
    """Core business logic (testable without MQTT)."""

    def __init__(
        self,
        store: RecordStore,
        *,
        authorizer: OperatorAuthorizer,
        bus: EventBus | None = None,
        settings: QueueSettings | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        settings = settings or QueueSettings()
        self.settings = settings
        self.store = store
        self.authorizer = authorizer

        self.sequencer = PositionSequencer(store, allow_fallback=settings.allow_fallback_insert)
        self.retrier = RenumberRetrier(self.sequencer)
        self.notifier = notifier or ChangeNotifier(
            store, bus, default_service_minutes=settings.default_service_minutes
        )
        self.machine = QueueStateMachine(
            store,
            self.sequencer,
            self.notifier,
            retrier=self.retrier,
            hard_delete_cancellations=settings.hard_delete_cancellations,
        )
        if rate_limiter is None:
            rate_limiter = SlidingWindowRateLimiter(
                max_requests=settings.rate_limit, window_seconds=settings.rate_window
            )
        self.admission = AdmissionController(
            self.sequencer,
            self.notifier,
            rate_limiter=rate_limiter,
            default_service_minutes=settings.default_service_minutes,
        )

    def close(self) -> None:
        self.retrier.stop()
        self.store.close()

    def _require_operator(self, token: str | None) -> None:
        if not self.authorizer.is_authorized_operator(token):
            raise Unauthorized("operator login required")

    # -------------------- customer operations --------------------

    def join_queue(
        self,
        name: object,
        phone: object,
        estimated_service_minutes: int | None = None,
        *,
        customer_id: str | None = None,
        caller: str | None = None,
    ) -> AdmissionResult:
        return self.admission.admit(
            name, phone, estimated_service_minutes, customer_id=customer_id, caller=caller
        )

    def queue_position(self, customer_id: object) -> PositionReport:
        return self.notifier.position_report(validate_customer_id(customer_id))

    def cancel_by_customer(self, customer_id: object) -> QueueEntry | None:
        # Knowing the customer id is the authorization.
        return self.machine.cancel_by_customer(validate_customer_id(customer_id))

    # -------------------- operator operations --------------------

    def add_walk_in(
        self,
        token: str | None,
        name: object,
        phone: object = None,
        estimated_service_minutes: int | None = None,
    ) -> AdmissionResult:
        self._require_operator(token)
        return self.admission.admit(name, phone, estimated_service_minutes, is_walk_in=True)

    def call_next(self, token: str | None) -> QueueEntry:
        self._require_operator(token)
        return self.machine.call_next()

    def complete_service(
        self, token: str | None, entry_id: str, duration_minutes: int | None = None
    ) -> QueueEntry:
        self._require_operator(token)
        return self.machine.complete_service(entry_id, duration_minutes)

    def cancel_entry(self, token: str | None, entry_id: str) -> QueueEntry:
        self._require_operator(token)
        return self.machine.cancel_entry(entry_id)

    def admin_queue(self, token: str | None) -> list[QueueEntry]:
        self._require_operator(token)
        return self.store.select_active()

    def admin_stats(self, token: str | None) -> AdminStats:
        self._require_operator(token)
        return self.notifier.admin_stats()

    def renumber(self, token: str | None) -> list[QueueEntry]:
        self._require_operator(token)
        return self.sequencer.renumber()


def _entry_id(msg: dict[str, Any]) -> str:
    entry_id = msg.get("entry_id")
    if not isinstance(entry_id, str) or not entry_id:
        raise ValidationError("entry_id required")
    return entry_id


class MqttQueueService:
    """MQTT adapter around the QueueService business logic."""

    def __init__(
        self,
        *,
        mqtt: MqttClient,
        service: QueueService,
        namespace: str,
    ) -> None:
        self.mqtt = mqtt
        self.service = service
        self.namespace = namespace

        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "join_queue": self._join_queue,
            "queue_position": self._queue_position,
            "cancel_by_customer": self._cancel_by_customer,
            "add_walk_in": self._add_walk_in,
            "call_next": self._call_next,
            "complete_service": self._complete_service,
            "cancel_entry": self._cancel_entry,
            "admin_queue": self._admin_queue,
            "admin_stats": self._admin_stats,
            "renumber": self._renumber,
        }

        self._stop_event = threading.Event()
        self._status_thread: threading.Thread | None = None

    def start(self, *, publish_status_every: float = 5.0) -> None:
        self.mqtt.subscribe(queue_requests(self.namespace))
        self.mqtt.add_handler(self._handle_message)

        self._status_thread = threading.Thread(
            target=self._status_publisher_loop,
            args=(publish_status_every,),
            daemon=True,
        )
        self._status_thread.start()

    def stop(self) -> None:
        """Stop background threads. Call before disconnecting MQTT."""
        self._stop_event.set()
        t = self._status_thread
        if t and t.is_alive():
            t.join(timeout=1.0)

    def _status_publisher_loop(self, interval: float) -> None:
        """Broadcast queue snapshots so displays can resync from the store."""
        while not self._stop_event.is_set():
            try:
                self.mqtt.publish(status_updates(self.namespace), self.service.notifier.snapshot())
            except QueueError as exc:
                logger.warning("status snapshot skipped: %s", exc.message)
            self._stop_event.wait(interval)

    def _reply(self, reply_to: str, corr_id: str | None, message: dict[str, Any]) -> None:
        msg = dict(message)
        if corr_id is not None:
            msg["corr_id"] = corr_id
        self.mqtt.publish(reply_to, msg)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        if topic != queue_requests(self.namespace):
            return
        mtype = msg.get("type")
        corr_id = msg.get("corr_id") if isinstance(msg.get("corr_id"), str) else None
        reply_to = msg.get("reply_to") if isinstance(msg.get("reply_to"), str) else None
        if not reply_to:
            return

        handler = self._handlers.get(mtype) if isinstance(mtype, str) else None
        if handler is None:
            self._reply(reply_to, corr_id, ErrorResponse("bad_request", f"unknown request type {mtype!r}").to_message())
            return

        try:
            response = handler(msg)
        except QueueError as exc:
            if exc.retryable:
                logger.warning("%s failed (retryable): %s", mtype, exc.message)
            else:
                logger.info("%s rejected: %s %s", mtype, exc.code, exc.message)
            response = exc.to_response().to_message()
        except Exception:
            logger.exception("unexpected error handling %s", mtype)
            response = ErrorResponse("internal_error", "internal server error", retryable=True).to_message()
        self._reply(reply_to, corr_id, response)

    # -------------------- customer requests --------------------

    def _join_queue(self, msg: dict[str, Any]) -> dict[str, Any]:
        result = self.service.join_queue(
            msg.get("name"),
            msg.get("phone"),
            msg.get("estimated_service_minutes"),
            customer_id=msg.get("customer_id"),
            caller=str(msg.get("client_id") or msg.get("reply_to")),
        )
        return result.to_message()

    def _queue_position(self, msg: dict[str, Any]) -> dict[str, Any]:
        return self.service.queue_position(msg.get("customer_id")).to_message()

    def _cancel_by_customer(self, msg: dict[str, Any]) -> dict[str, Any]:
        self.service.cancel_by_customer(msg.get("customer_id"))
        # Same answer whether or not something was cancelled.
        return {"type": "cancelled"}

    # -------------------- operator requests --------------------

    def _add_walk_in(self, msg: dict[str, Any]) -> dict[str, Any]:
        result = self.service.add_walk_in(
            msg.get("operator_token"),
            msg.get("name"),
            msg.get("phone"),
            msg.get("estimated_service_minutes"),
        )
        return result.to_message()

    def _call_next(self, msg: dict[str, Any]) -> dict[str, Any]:
        entry = self.service.call_next(msg.get("operator_token"))
        return {"type": "now_serving", "entry": entry.to_message()}

    def _complete_service(self, msg: dict[str, Any]) -> dict[str, Any]:
        entry = self.service.complete_service(
            msg.get("operator_token"), _entry_id(msg), msg.get("duration_minutes")
        )
        return {"type": "service_completed", "entry": entry.to_message()}

    def _cancel_entry(self, msg: dict[str, Any]) -> dict[str, Any]:
        entry = self.service.cancel_entry(msg.get("operator_token"), _entry_id(msg))
        return {"type": "cancelled", "entry": entry.to_message()}

    def _admin_queue(self, msg: dict[str, Any]) -> dict[str, Any]:
        queue = self.service.admin_queue(msg.get("operator_token"))
        return {"type": "admin_queue", "queue": [e.to_message() for e in queue], "total": len(queue)}

    def _admin_stats(self, msg: dict[str, Any]) -> dict[str, Any]:
        return self.service.admin_stats(msg.get("operator_token")).to_message()

    def _renumber(self, msg: dict[str, Any]) -> dict[str, Any]:
        queue = self.service.renumber(msg.get("operator_token"))
        return {"type": "renumbered", "queue": [e.to_message() for e in queue], "total": len(queue)}


def main() -> None:
    # Import MQTT dependencies only when running the real service.
    from .mqtt_client import MqttClient, MqttEventBus
    from .auth import TokenAuthorizer
    from .store import open_store

    parser = argparse.ArgumentParser(description="Walk-in queue server (MQTT)")
    add_mqtt_args(parser)
    add_server_args(parser)
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = QueueSettings.from_args(args)

    if not settings.operator_tokens:
        print("[server] warning: no operator token configured, staff requests will be refused")

    store = open_store(settings.database_url, timeout=settings.store_timeout)
    mqtt_client = MqttClient(client_id=f"queue-server-{int(time.time())}", host=settings.mqtt_host, port=settings.mqtt_port)
    mqtt_client.start()

    service = QueueService(
        store,
        authorizer=TokenAuthorizer(settings.operator_tokens),
        bus=MqttEventBus(mqtt_client, namespace=settings.namespace),
        settings=settings,
    )
    adapter = MqttQueueService(mqtt=mqtt_client, service=service, namespace=settings.namespace)
    adapter.start(publish_status_every=settings.publish_status_every)

    print(
        f"[server] connected to MQTT {settings.mqtt_host}:{settings.mqtt_port}, "
        f"namespace={settings.namespace}, store={settings.database_url}"
    )

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        adapter.stop()
        mqtt_client.stop()
        service.close()


if __name__ == "__main__":
    main()

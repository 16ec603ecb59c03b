from __future__ import annotations

# Runtime settings shared by the server and the CLI clients.
#
# Every entry point takes the same argparse flags; `add_*_args` registers them
# and `QueueSettings.from_args` collects the parsed values.

import argparse
import os
from dataclasses import dataclass, field

from .models import DEFAULT_SERVICE_MINUTES

DEFAULT_NAMESPACE = "walkin/v1"
OPERATOR_TOKEN_ENV = "WALKIN_OPERATOR_TOKEN"


@dataclass(frozen=True)
class QueueSettings:
    mqtt_host: str = "127.0.0.1"
    mqtt_port: int = 1883
    namespace: str = DEFAULT_NAMESPACE
    database_url: str = "memory://"
    store_timeout: float = 5.0
    operator_tokens: tuple[str, ...] = field(default_factory=tuple)
    rate_limit: int = 10
    rate_window: float = 60.0
    default_service_minutes: int = DEFAULT_SERVICE_MINUTES
    publish_status_every: float = 5.0
    allow_fallback_insert: bool = True
    hard_delete_cancellations: bool = False

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "QueueSettings":
        tokens = list(getattr(args, "operator_token", None) or [])
        if not tokens and os.environ.get(OPERATOR_TOKEN_ENV):
            tokens.append(os.environ[OPERATOR_TOKEN_ENV])
        return cls(
            mqtt_host=args.mqtt_host,
            mqtt_port=args.mqtt_port,
            namespace=args.namespace,
            database_url=getattr(args, "database_url", cls.database_url),
            store_timeout=getattr(args, "store_timeout", cls.store_timeout),
            operator_tokens=tuple(tokens),
            rate_limit=getattr(args, "rate_limit", cls.rate_limit),
            rate_window=getattr(args, "rate_window", cls.rate_window),
            publish_status_every=getattr(args, "publish_status_every", cls.publish_status_every),
            allow_fallback_insert=not getattr(args, "no_fallback_insert", False),
            hard_delete_cancellations=getattr(args, "hard_delete_cancellations", False),
        )


def add_mqtt_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--mqtt-host", default="127.0.0.1")
    p.add_argument("--mqtt-port", type=int, default=1883)
    p.add_argument("--namespace", default=DEFAULT_NAMESPACE)
    p.add_argument("--log-level", default="WARNING", help="DEBUG, INFO, WARNING, ERROR")


def add_server_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--database-url",
        default="memory://",
        help="memory:// or a SQLAlchemy URL such as sqlite:///queue.db",
    )
    p.add_argument("--store-timeout", type=float, default=5.0, help="seconds before a store call gives up")
    p.add_argument(
        "--operator-token",
        action="append",
        default=None,
        help=f"token accepted for staff requests (repeatable; default ${OPERATOR_TOKEN_ENV})",
    )
    p.add_argument("--rate-limit", type=int, default=10, help="joins allowed per caller per window")
    p.add_argument("--rate-window", type=float, default=60.0, help="rate limit window in seconds")
    p.add_argument(
        "--publish-status-every",
        type=float,
        default=5.0,
        help="seconds between broadcast queue snapshots",
    )
    p.add_argument(
        "--no-fallback-insert",
        action="store_true",
        help="fail joins instead of using the non-atomic insert path",
    )
    p.add_argument(
        "--hard-delete-cancellations",
        action="store_true",
        help="(legacy) delete cancelled entries instead of keeping them for audit",
    )

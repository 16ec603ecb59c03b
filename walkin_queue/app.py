from __future__ import annotations

# Single-entrypoint runner.
#
#     python -m walkin_queue.app server [--database-url sqlite:///queue.db] --operator-token T
#     python -m walkin_queue.app customer join --name Ana --phone 555-0001
#     python -m walkin_queue.app staff call-next
#
# Each subcommand forwards the rest of the command line to the module that
# implements it, so `app <cmd> -h` shows that module's full help.

import argparse
import sys


def main() -> None:
    parser = argparse.ArgumentParser(description="Walk-in Queue System (MQTT) - main entrypoint")
    parser.add_argument("cmd", choices=("server", "customer", "staff"), help="server, customer or staff")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="arguments for the subcommand")
    args = parser.parse_args()

    if args.cmd == "server":
        from .manager import main as run
    elif args.cmd == "customer":
        from .customer import main as run
    else:
        from .staff import main as run

    _dispatch_to_module_main(run, args.args)


def _dispatch_to_module_main(module_main, argv: list[str]) -> None:
    old_argv = sys.argv[:]
    try:
        sys.argv = [old_argv[0], *argv]
        module_main()
    finally:
        sys.argv = old_argv


if __name__ == "__main__":
    main()

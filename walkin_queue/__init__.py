"""First-come-first-served walk-in queue (e.g. a barbershop) over MQTT.

Customers join remotely or are added as walk-ins by staff, the operator calls
the next customer and completes or cancels service, and every change is
published so displays can show live positions and wait estimates.

Components:
- a record store (in-memory or SQLAlchemy) as the single source of truth
- the position sequencer, state machine, admission controller and notifier
- a Queue Server exposing them over MQTT request/response topics
- customer and staff command-line clients

See `python -m walkin_queue.app -h` for how to run.
"""

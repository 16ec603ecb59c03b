from walkin_queue.customer import describe_position
from walkin_queue.staff import format_response


def test_describe_position():
    waiting = {"status": "waiting", "position": 3, "people_ahead": 2, "estimated_wait_minutes": 30}
    assert describe_position(waiting) == "you are number 3 (2 ahead, about 30 min)"
    assert describe_position({"status": "in_service"}) == "it's your turn!"
    assert describe_position({"type": "error", "message": "customer not found in the queue"}) == (
        "error: customer not found in the queue"
    )


def test_format_response():
    entry = {"position": 1, "name": "Ana", "status": "in_service", "id": "e1"}
    assert format_response({"type": "now_serving", "entry": entry}) == "now serving #1 Ana (in_service, id e1)"
    assert format_response({"type": "admin_queue", "queue": [], "total": 0}) == "0 in queue\n(queue is empty)"
    err = {"type": "error", "code": "timeout", "message": "slow", "retryable": True}
    assert format_response(err) == "error timeout: slow (try again)"
    stats = {
        "type": "admin_stats",
        "total_in_queue": 2,
        "total_served_today": 5,
        "avg_service_minutes": 18,
        "estimated_wait_minutes": 36,
    }
    assert "served today: 5" in format_response(stats)

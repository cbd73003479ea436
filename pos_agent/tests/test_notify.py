import json

from pos_agent.notify import ActivityLog, Notifier


def test_publish_without_subscribers_is_a_noop():
    n = Notifier()
    n.publish("order.saved", {"order_id": "A"})
    n.drain()
    assert n._thread is None


def test_activity_log_appends_json_lines(tmp_path):
    path = tmp_path / "activity.jsonl"
    n = Notifier()
    n.subscribe(ActivityLog(str(path)))
    n.publish("order.saved", {"order_id": "A", "status": "HELD"})
    n.publish("order.saved", {"order_id": "B", "status": "COMPLETED"})
    n.drain()

    lines = [json.loads(x) for x in path.read_text(encoding="utf-8").splitlines()]
    assert lines == [
        {"event": "order.saved", "order_id": "A", "status": "HELD"},
        {"event": "order.saved", "order_id": "B", "status": "COMPLETED"},
    ]

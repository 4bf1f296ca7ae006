"""Tests for topickeys metrics."""

from topickeys.metrics import metrics, timed_db_operation


def test_timings_report_count_and_average():
    metrics.record_request("health", 2.0)
    metrics.record_request("health", 4.0)

    assert metrics.to_dict()["requests"] == {"health": {"count": 2, "avg_ms": 3.0}}


def test_timed_db_operation_records():
    with timed_db_operation("keys_for_topic"):
        pass

    assert metrics.to_dict()["db_operations"]["keys_for_topic"]["count"] == 1


def test_counters_and_caches():
    metrics.increment("reconcile_added", 3)
    metrics.record_cache_hit("topic_key")
    metrics.record_cache_miss("topic_key")

    data = metrics.to_dict()
    assert data["counters"] == {"reconcile_added": 3}
    assert data["cache"] == {"topic_key": {"hits": 1, "misses": 1}}


def test_reset():
    metrics.increment("unwrap")
    metrics.reset()
    assert metrics.to_dict() == {"requests": {}, "db_operations": {}, "cache": {}, "counters": {}}

from gdbcopilot.llm.metrics import MetricsCollector


def test_counters_and_running_mean():
    m = MetricsCollector()
    m.record_request("anthropic", 0.1, True, tokens=30)
    m.record_request("anthropic", 0.3, False, error="boom")
    m.record_retry("anthropic")
    m.record_cache_hit("anthropic")
    m.record_cache_miss("openai")
    m.record_circuit_trip("anthropic")
    m.record_context_trim()

    a = m.provider("anthropic")
    assert a.total_requests == 2
    assert a.successful_requests == 1
    assert a.failed_requests == 1
    assert a.last_error == "boom"
    assert abs(a.average_latency_ms - 200.0) < 1e-6
    assert a.tokens_used == 30

    snap = m.snapshot()
    assert snap["global"]["total_requests"] == 2
    assert snap["global"]["cache_misses"] == 1
    assert snap["global"]["context_trims"] == 1
    assert snap["global"]["circuit_breaker_trips"] == 1
    assert set(snap["providers"]) == {"anthropic", "openai"}

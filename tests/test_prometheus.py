from timecapsule.prometheus import DeliveryMetrics


def test_delivery_metrics_counters_and_gauge():
    metrics = DeliveryMetrics()

    metrics.inc_sent()
    metrics.inc_failed()
    metrics.inc_anomaly()
    metrics.inc_run("periodic")
    metrics.inc_run("")
    metrics.inc_resolution("not_found")
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b"tc_sent_total 1.0" in output
    assert b"tc_status_write_anomalies_total 1.0" in output
    assert b'tc_dispatch_runs_total{trigger="manual"} 1.0' in output
    assert b'tc_access_resolutions_total{outcome="not_found"} 1.0' in output
    assert b"tc_pending_deliveries 3.0" in output


def test_registries_are_independent():
    first, second = DeliveryMetrics(), DeliveryMetrics()
    first.inc_sent()
    assert second.registry.get_sample_value("tc_sent_total") == 0.0

from postcard_fulfillment.prometheus import FulfillmentMetrics


def test_fulfillment_metrics_counters_and_gauge():
    metrics = FulfillmentMetrics()

    metrics.inc_submitted()
    metrics.inc_submitted()
    metrics.inc_dispatch_failure()
    metrics.inc_retry()
    metrics.inc_design("ok")
    metrics.inc_campaign("sent")
    metrics.inc_webhook("")
    metrics.processing_started()
    metrics.processing_started()
    metrics.processing_finished()

    output = metrics.generate_latest()
    assert b"pf_mailpieces_submitted_total 2.0" in output
    assert b"pf_dispatch_failures_total 1.0" in output
    assert b'pf_designs_processed_total{outcome="ok"} 1.0' in output
    assert b'pf_campaigns_finished_total{status="sent"} 1.0' in output
    assert b'pf_webhook_events_total{status="ignored"} 1.0' in output
    assert b"pf_campaigns_processing 1.0" in output


def test_registries_are_independent():
    first = FulfillmentMetrics()
    second = FulfillmentMetrics()
    first.inc_retry()
    assert first.registry.get_sample_value("pf_dispatch_retries_total") == 1
    assert second.registry.get_sample_value("pf_dispatch_retries_total") == 0

from __future__ import annotations

from datetime import timedelta

from listing_ingest_application.workflows.snapshot_steps import CompletionTiming, SnapshotIngest


def _timing(**overrides) -> CompletionTiming:
    values = dict(
        poll_interval_seconds=30,
        poll_backoff_coefficient=2.0,
        poll_max_interval_seconds=300,
        poll_max_retries=24,
        webhook_check_interval_seconds=300,
        webhook_max_interval_seconds=1800,
        webhook_max_retries=6,
        deadline_seconds=3 * 3600,
    )
    values.update(overrides)
    return CompletionTiming(**values)


def test_poll_schedule_backs_off_to_the_cap():
    policy = _timing().retry_policy("poll")

    assert policy.initial_interval == timedelta(seconds=30)
    assert policy.backoff_coefficient == 2.0
    assert policy.maximum_interval == timedelta(seconds=300)
    assert policy.maximum_attempts == 25


def test_webhook_safety_net_poll_backs_off_exponentially():
    policy = _timing().retry_policy("webhook")

    assert policy.initial_interval == timedelta(seconds=300)
    assert policy.backoff_coefficient == 2.0
    assert policy.maximum_interval == timedelta(seconds=1800)
    assert policy.maximum_attempts == 7


def test_webhook_cap_never_below_first_interval():
    policy = _timing(webhook_check_interval_seconds=600, webhook_max_interval_seconds=60).retry_policy("webhook")

    assert policy.maximum_interval == timedelta(seconds=600)


def test_snapshot_ingest_errors_sum_every_lost_record():
    ingest = SnapshotIngest(provider_handle="s_1", skipped_lines=2, rejected=1, failed=3, stored=10)

    assert ingest.errors == 6

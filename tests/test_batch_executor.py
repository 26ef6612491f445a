from fakes import FakeSource

from pagesmith.config import load_runtime_config
from pagesmith.events import JOB_KIND, ProgressBus
from pagesmith.executors import BatchJobExecutor, build_registry
from pagesmith.models import JobStatus, JobType
from pagesmith.services.job_service import enqueue_job, get_job, get_job_logs, run_claimed_job
from pagesmith.storage import cancel_job, claim_job, create_job, init_db


def _claimed(tmp_path, payload, job_type="contractor_enrichment"):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    job = enqueue_job(conn, config, job_type, payload)
    return conn, config, claim_job(conn, job.id, "worker-1")


def test_batch_counts_item_failures_without_failing_job(tmp_path):
    targets = [f"contractor-{i}" for i in range(25)]
    conn, config, job = _claimed(tmp_path, {"target_ids": targets, "batch_size": 10})
    source = FakeSource(failing={"contractor-3", "contractor-11", "contractor-24"})
    bus = ProgressBus()
    executor = BatchJobExecutor(
        config.enrichment, {JobType.CONTRACTOR_ENRICHMENT: source}, bus=bus
    )

    outcome = executor.run(conn, job)

    assert outcome.status == JobStatus.COMPLETED
    assert outcome.result["processed_items"] == 22
    assert outcome.result["failed_items"] == 3
    assert outcome.result["batches"] == 3
    assert [item["target_id"] for item in outcome.result["errors"]] == [
        "contractor-3",
        "contractor-11",
        "contractor-24",
    ]
    assert source.seen == targets

    stored = get_job(conn, job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.processed_items == 22
    assert stored.failed_items == 3
    assert stored.percent_complete == 100

    snapshot = bus.snapshot(JOB_KIND, job.id)
    assert snapshot.status == "completed"
    assert snapshot.terminal is True
    assert snapshot.data["processed_items"] == 22

    events = [entry.event for entry in get_job_logs(conn, job.id)]
    assert events.count("item_failed") == 3
    assert events[-1] == "batch_completed"


def test_empty_target_list_completes_immediately(tmp_path):
    conn, config, job = _claimed(tmp_path, {"target_ids": []}, job_type="review_enrichment")
    source = FakeSource()
    executor = BatchJobExecutor(
        config.enrichment, {JobType.REVIEW_ENRICHMENT: source}, bus=ProgressBus()
    )

    outcome = executor.run(conn, job)

    assert outcome.status == JobStatus.COMPLETED
    assert outcome.result["processed_items"] == 0
    assert outcome.result["failed_items"] == 0
    assert source.seen == []
    assert get_job(conn, job.id).percent_complete == 100


def test_continuous_mode_follows_discovered_ids_up_to_max_depth(tmp_path):
    conn, config, job = _claimed(
        tmp_path,
        {"target_ids": ["a"], "continuous": True, "max_depth": 1},
        job_type="image_enrichment",
    )
    source = FakeSource(follow={"a": ["b", "c", "a"], "b": ["d"]})
    executor = BatchJobExecutor(
        config.enrichment, {JobType.IMAGE_ENRICHMENT: source}, bus=ProgressBus()
    )

    outcome = executor.run(conn, job)

    assert outcome.status == JobStatus.COMPLETED
    assert source.seen == ["a", "b", "c"]
    assert outcome.result["total_items"] == 3
    assert outcome.result["discovered_items"] == 2
    assert get_job(conn, job.id).total_items == 3


def test_follow_ids_ignored_without_continuous(tmp_path):
    conn, config, job = _claimed(tmp_path, {"target_ids": ["a"], "max_depth": 3})
    source = FakeSource(follow={"a": ["b"]})
    executor = BatchJobExecutor(
        config.enrichment, {JobType.CONTRACTOR_ENRICHMENT: source}, bus=ProgressBus()
    )

    outcome = executor.run(conn, job)

    assert source.seen == ["a"]
    assert outcome.result["total_items"] == 1


def test_cancel_is_observed_between_items(tmp_path):
    targets = [f"t{i}" for i in range(20)]
    conn, config, job = _claimed(tmp_path, {"target_ids": targets, "batch_size": 4})

    def _cancel_at_t5(target_id):
        if target_id == "t5":
            assert cancel_job(conn, job.id)

    source = FakeSource(on_enrich=_cancel_at_t5)
    bus = ProgressBus()
    executor = BatchJobExecutor(
        config.enrichment, {JobType.CONTRACTOR_ENRICHMENT: source}, bus=bus
    )

    outcome = executor.run(conn, job)

    assert outcome.status == JobStatus.CANCELLED
    assert len(source.seen) == 6
    stored = get_job(conn, job.id)
    assert stored.status == JobStatus.CANCELLED
    assert stored.processed_items == 5
    assert bus.snapshot(JOB_KIND, job.id).status == "cancelled"


def test_missing_source_fails_the_job(tmp_path):
    conn, config, job = _claimed(tmp_path, {"target_ids": ["a"]})
    executor = BatchJobExecutor(config.enrichment, {}, bus=ProgressBus())

    outcome = executor.run(conn, job)

    assert outcome.status == JobStatus.FAILED
    stored = get_job(conn, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.last_error.startswith("no_enrichment_source")


def test_undecodable_payload_fails_at_claim_time(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    created = create_job(
        conn,
        JobType.CONTRACTOR_ENRICHMENT,
        {"schema_version": 2, "target_ids": ["a"]},
        total_items=1,
    )
    job = claim_job(conn, created.id, "worker-1")
    source = FakeSource()
    registry = build_registry(
        config.enrichment, {JobType.CONTRACTOR_ENRICHMENT: source}, bus=ProgressBus()
    )

    outcome = run_claimed_job(conn, registry, job)

    assert outcome.status == JobStatus.FAILED
    assert source.seen == []
    assert get_job(conn, job.id).last_error.startswith("invalid_payload")


def test_options_and_depth_reach_the_source(tmp_path):
    conn, config, job = _claimed(
        tmp_path, {"target_ids": ["a"], "options": {"refresh_photos": True}}
    )
    received = {}

    class _Recorder(FakeSource):
        def enrich(self, target_id, options):
            received.update(options)
            return super().enrich(target_id, options)

    executor = BatchJobExecutor(
        config.enrichment, {JobType.CONTRACTOR_ENRICHMENT: _Recorder()}, bus=ProgressBus()
    )
    executor.run(conn, job)

    assert received == {"refresh_photos": True, "max_depth": 0}

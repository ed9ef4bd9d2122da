"""End-to-end tests for the import run lifecycle in app.services.ingestion_runs."""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.core.errors import (
    FetchError,
    InvalidFilterError,
    InvalidStateError,
    NotFoundOrForbiddenError,
    WriteError,
)
from app.db.base import Base
from app.db.models.import_run import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    ImportRun,
)
from app.db.models.product import ImportedProduct
from app.db.session import SessionLocal, build_engine
from app.services import ingestion_runs, progress_tracker
from app.services.batch_writer import write_batch as real_write_batch
from app.services.filtering import FilterParams
from conftest import OTHER_OWNER, OWNER


def _execute(run_id):
    return ingestion_runs.execute_run(run_id, session_factory=SessionLocal)


def _products(db, run_id):
    return db.scalars(
        select(ImportedProduct)
        .where(ImportedProduct.import_run_id == run_id)
        .order_by(ImportedProduct.id)
    ).all()


def _csv(count, start=0):
    lines = ["name,category,price,stock"]
    lines += [f"Product {i},Category {i % 5},{i}.50,{i}" for i in range(start, start + count)]
    return ("\n".join(lines) + "\n").encode()


@pytest.fixture
def csv_run(make_run, stage_source):
    """A running run whose source is a staged CSV with the given content."""
    def _make(content, **overrides):
        locator = stage_source(content, "products.csv")
        return make_run(file_name="products.csv", source_locator=locator, **overrides)
    return _make


class TestInitiateRun:

    def test_creates_running_run_and_enqueues(self, db_session, mock_enqueue):
        run = ingestion_runs.initiate_run(
            db_session, OWNER, "products.xlsx", "https://files.example.com/p.xlsx"
        )

        assert run.status == STATUS_RUNNING
        assert run.processed_rows == 0
        assert run.total_rows is None
        assert run.owner_id == OWNER
        assert run.started_at is not None
        mock_enqueue.assert_called_once_with(run.id)

    def test_run_is_queryable_before_execution(self, db_session):
        run = ingestion_runs.initiate_run(
            db_session, OWNER, "products.xlsx", "https://files.example.com/p.xlsx"
        )
        assert ingestion_runs.get_run(db_session, run.id, OWNER).status == STATUS_RUNNING

    def test_enqueue_failure_fails_the_run(self, db_session, mock_enqueue, reload_run):
        mock_enqueue.side_effect = RuntimeError("broker down")

        run = ingestion_runs.initiate_run(
            db_session, OWNER, "products.xlsx", "https://files.example.com/p.xlsx"
        )

        stored = reload_run(run.id)
        assert stored.status == STATUS_FAILED
        assert stored.error_message == "Failed to start import: broker down"


class TestExecuteRun:

    def test_three_row_sheet(self, db_session, make_run, make_xlsx, stage_source, reload_run):
        content = make_xlsx([
            {"name": "Widget", "category": "Tools", "price": 9.99, "stock": 5},
            {"name": "Gadget", "category": "Tools", "price": "12.50", "stock": "lots"},
            {"name": "Broken", "category": "Tools", "price": "abc", "stock": 1},
        ])
        run = make_run(source_locator=stage_source(content))

        assert _execute(run.id) == STATUS_COMPLETED

        stored = reload_run(run.id)
        assert stored.status == STATUS_COMPLETED
        assert stored.total_rows == 3
        assert stored.processed_rows == 3
        assert stored.error_message is None
        assert stored.completed_at is not None

        products = _products(db_session, run.id)
        assert [p.name for p in products] == ["Widget", "Gadget"]
        assert products[0].price == Decimal("9.99")
        assert products[0].stock == 5
        assert products[1].stock == 0

    def test_final_snapshot_counts_outcomes(self, csv_run, mock_redis):
        content = b"name,category,price\nA,x,1\nA,x,2\nB,x,\n"
        run = csv_run(content)

        _execute(run.id)

        payload = json.loads(mock_redis.set.call_args.args[1])
        assert payload["status"] == STATUS_COMPLETED
        assert payload["meta"] == {
            "processed": 3,
            "total": 3,
            "inserted": 1,
            "rejected": 1,
            "duplicates": 1,
        }

    def test_rows_advance_in_batches(self, db_session, csv_run, reload_run):
        run = csv_run(_csv(250))
        checkpoints = []
        real_advance = progress_tracker.advance

        def recording_advance(db, run_id, delta, attempt=None):
            checkpoints.append(delta)
            return real_advance(db, run_id, delta, attempt)

        with patch.object(progress_tracker, "advance", side_effect=recording_advance):
            _execute(run.id)

        assert checkpoints == [100, 100, 50]
        assert reload_run(run.id).processed_rows == 250
        assert len(_products(db_session, run.id)) == 250

    def test_empty_sheet_completes(self, db_session, csv_run, reload_run):
        run = csv_run(b"name,category,price\n")

        assert _execute(run.id) == STATUS_COMPLETED

        stored = reload_run(run.id)
        assert stored.total_rows == 0
        assert stored.processed_rows == 0
        assert stored.progress == 1.0
        assert _products(db_session, run.id) == []

    def test_fetch_timeout_fails_run(self, make_run, reload_run, mock_redis):
        run = make_run()
        with patch(
            "app.services.ingestion_runs.fetch_source",
            side_effect=FetchError("Timed out after 30s fetching source file"),
        ):
            assert _execute(run.id) == STATUS_FAILED

        stored = reload_run(run.id)
        assert stored.status == STATUS_FAILED
        assert stored.processed_rows == 0
        assert stored.total_rows is None
        assert "Timed out" in stored.error_message
        payload = json.loads(mock_redis.set.call_args.args[1])
        assert payload["status"] == STATUS_FAILED

    def test_unreadable_workbook_fails_run(self, make_run, stage_source, reload_run):
        run = make_run(source_locator=stage_source(b"not a workbook", "broken.xlsx"))

        assert _execute(run.id) == STATUS_FAILED

        stored = reload_run(run.id)
        assert stored.total_rows is None
        assert stored.error_message.startswith("Could not read excel file")

    def test_write_failure_keeps_committed_batches(self, db_session, csv_run, reload_run):
        run = csv_run(_csv(250))
        calls = {"count": 0}

        def flaky_write_batch(db, run_id, records):
            calls["count"] += 1
            if calls["count"] == 3:
                raise WriteError("Failed to save products: disk full")
            return real_write_batch(db, run_id, records)

        with patch("app.services.ingestion_runs.write_batch", side_effect=flaky_write_batch):
            assert _execute(run.id) == STATUS_FAILED

        stored = reload_run(run.id)
        assert stored.total_rows == 250
        assert stored.processed_rows == 200
        assert stored.error_message == "Failed to save products: disk full"
        assert len(_products(db_session, run.id)) == 200

        ingestion_runs.retry_run(db_session, run.id, OWNER)
        assert _execute(run.id) == STATUS_COMPLETED

        stored = reload_run(run.id)
        assert stored.processed_rows == 250
        assert stored.error_message is None
        assert len(_products(db_session, run.id)) == 250

    def test_unexpected_error_is_recorded_not_raised(self, csv_run, reload_run):
        run = csv_run(_csv(3))
        with patch(
            "app.services.ingestion_runs.transform_row",
            side_effect=RuntimeError("unexpected cell"),
        ):
            assert _execute(run.id) == STATUS_FAILED
        assert reload_run(run.id).error_message == "unexpected cell"

    def test_stops_when_run_is_failed_underneath(self, db_session, csv_run, reload_run):
        run = csv_run(_csv(250))

        def reclaiming_write_batch(db, run_id, records):
            progress_tracker.mark_failed(db, run_id, "Run abandoned")
            return real_write_batch(db, run_id, records)

        with patch(
            "app.services.ingestion_runs.write_batch", side_effect=reclaiming_write_batch
        ):
            assert _execute(run.id) == STATUS_FAILED

        stored = reload_run(run.id)
        assert stored.error_message == "Run abandoned"
        assert stored.processed_rows == 0
        assert _products(db_session, run.id) == []

    def test_reclaim_and_retry_mid_run_stops_stale_worker(
        self, db_session, csv_run, reload_run, mock_enqueue
    ):
        run = csv_run(_csv(250))
        calls = {"count": 0}

        def write_then_get_replaced(db, run_id, records):
            calls["count"] += 1
            if calls["count"] == 2:
                # Operator reclaims the stalled run and the owner retries it
                progress_tracker.mark_failed(db_session, run_id, "Run abandoned")
                ingestion_runs.retry_run(db_session, run_id, OWNER)
            return real_write_batch(db, run_id, records)

        with patch(
            "app.services.ingestion_runs.write_batch", side_effect=write_then_get_replaced
        ):
            assert _execute(run.id) == STATUS_RUNNING

        stored = reload_run(run.id)
        assert stored.attempt == 2
        assert stored.status == STATUS_RUNNING
        assert stored.processed_rows == 0
        assert stored.total_rows is None
        assert _products(db_session, run.id) == []
        mock_enqueue.assert_called_once_with(run.id)

        assert _execute(run.id) == STATUS_COMPLETED
        stored = reload_run(run.id)
        assert stored.processed_rows == stored.total_rows == 250
        assert len(_products(db_session, run.id)) == 250

    def test_retry_during_fetch_stops_stale_worker(self, db_session, csv_run, reload_run):
        run = csv_run(_csv(3))
        real_fetch = ingestion_runs.fetch_source

        def slow_fetch(locator):
            progress_tracker.mark_failed(db_session, run.id, "Run abandoned")
            ingestion_runs.retry_run(db_session, run.id, OWNER)
            return real_fetch(locator)

        with patch("app.services.ingestion_runs.fetch_source", side_effect=slow_fetch):
            assert _execute(run.id) == STATUS_RUNNING

        stored = reload_run(run.id)
        assert stored.attempt == 2
        assert stored.total_rows is None
        assert stored.processed_rows == 0

    def test_missing_run_is_skipped(self):
        assert _execute("00000000-0000-0000-0000-000000000000") is None

    def test_terminal_run_is_not_reprocessed(self, make_run, reload_run):
        run = make_run(status=STATUS_COMPLETED, total_rows=3, processed_rows=3)
        with patch("app.services.ingestion_runs.fetch_source") as fetch:
            assert _execute(run.id) == STATUS_COMPLETED
        fetch.assert_not_called()
        assert reload_run(run.id).processed_rows == 3


class TestRetryRun:

    def test_resets_counters_and_deletes_products_before_enqueue(
        self, db_session, make_run, mock_enqueue, reload_run
    ):
        run = make_run(
            status=STATUS_FAILED, error_message="boom", total_rows=4, processed_rows=2
        )
        real_write_batch(db_session, run.id, [
            {"name": "A", "category": "x", "price": Decimal("1"), "stock": 0, "description": None},
            {"name": "B", "category": "x", "price": Decimal("2"), "stock": 0, "description": None},
        ])
        db_session.commit()

        seen_at_enqueue = {}

        def capture(run_id):
            seen_at_enqueue["products"] = ingestion_runs.count_products(db_session, run_id)
            seen_at_enqueue["status"] = reload_run(run_id).status

        mock_enqueue.side_effect = capture

        retried = ingestion_runs.retry_run(db_session, run.id, OWNER)

        assert seen_at_enqueue == {"products": 0, "status": STATUS_RUNNING}
        assert retried.status == STATUS_RUNNING
        assert retried.processed_rows == 0
        assert retried.total_rows is None
        assert retried.attempt == 2
        assert retried.error_message is None
        assert retried.completed_at is None

    @pytest.mark.parametrize("state", [STATUS_COMPLETED, STATUS_RUNNING])
    def test_only_failed_runs_can_retry(self, db_session, make_run, mock_enqueue, reload_run, state):
        run = make_run(status=state, total_rows=5, processed_rows=5)

        with pytest.raises(InvalidStateError) as exc_info:
            ingestion_runs.retry_run(db_session, run.id, OWNER)

        assert exc_info.value.status == state
        stored = reload_run(run.id)
        assert stored.status == state
        assert stored.processed_rows == 5
        mock_enqueue.assert_not_called()

    def test_foreign_run_is_not_found(self, db_session, make_run, mock_enqueue, reload_run):
        run = make_run(status=STATUS_FAILED, error_message="boom")

        with pytest.raises(NotFoundOrForbiddenError):
            ingestion_runs.retry_run(db_session, run.id, OTHER_OWNER)

        assert reload_run(run.id).status == STATUS_FAILED
        mock_enqueue.assert_not_called()

    def test_unknown_run_is_not_found(self, db_session):
        with pytest.raises(NotFoundOrForbiddenError):
            ingestion_runs.retry_run(db_session, "missing", OWNER)

    def test_second_retry_loses(self, db_session, make_run, mock_enqueue):
        run = make_run(status=STATUS_FAILED, error_message="boom")

        ingestion_runs.retry_run(db_session, run.id, OWNER)
        with pytest.raises(InvalidStateError):
            ingestion_runs.retry_run(db_session, run.id, OWNER)

        assert mock_enqueue.call_count == 1

    def test_concurrent_retries_have_one_winner(self, tmp_path, mock_enqueue):
        engine = build_engine(f"sqlite:///{tmp_path / 'runs.db'}")
        Base.metadata.create_all(engine)
        factory = sessionmaker(bind=engine, autoflush=False)
        first, second = factory(), factory()
        try:
            run = ImportRun(
                owner_id=OWNER,
                file_name="products.xlsx",
                source_locator="https://files.example.com/p.xlsx",
                status=STATUS_FAILED,
                error_message="boom",
            )
            first.add(run)
            first.commit()

            # Both callers have observed the run as failed before either retries
            assert first.get(ImportRun, run.id).status == STATUS_FAILED
            assert second.get(ImportRun, run.id).status == STATUS_FAILED

            winner = ingestion_runs.retry_run(first, run.id, OWNER)
            with pytest.raises(InvalidStateError):
                ingestion_runs.retry_run(second, run.id, OWNER)

            assert winner.attempt == 2
            second.expire_all()
            stored = second.get(ImportRun, run.id)
            assert stored.status == STATUS_RUNNING
            assert stored.attempt == 2
            mock_enqueue.assert_called_once_with(run.id)
        finally:
            first.close()
            second.close()
            engine.dispose()

    def test_enqueue_failure_fails_retried_run(self, db_session, make_run, mock_enqueue):
        run = make_run(status=STATUS_FAILED, error_message="boom")
        mock_enqueue.side_effect = RuntimeError("broker down")

        retried = ingestion_runs.retry_run(db_session, run.id, OWNER)

        assert retried.status == STATUS_FAILED
        assert retried.error_message == "Failed to start import: broker down"


class TestQueries:

    def test_get_run_is_owner_scoped(self, db_session, make_run):
        run = make_run()
        assert ingestion_runs.get_run(db_session, run.id, OWNER).id == run.id
        with pytest.raises(NotFoundOrForbiddenError):
            ingestion_runs.get_run(db_session, run.id, OTHER_OWNER)

    def test_list_runs_only_returns_own_runs(self, db_session, make_run):
        mine = {make_run().id, make_run(status=STATUS_FAILED).id}
        make_run(owner_id=OTHER_OWNER)

        page = ingestion_runs.list_runs(db_session, OWNER, FilterParams())

        assert page.total == 2
        assert {run.id for run in page.items} == mine

    def test_list_runs_filtered_by_status(self, db_session, make_run):
        failed = make_run(status=STATUS_FAILED)
        make_run()

        page = ingestion_runs.list_runs(
            db_session, OWNER, FilterParams(field="status", value=STATUS_FAILED)
        )

        assert [run.id for run in page.items] == [failed.id]

    def test_list_runs_rejects_unknown_field(self, db_session):
        with pytest.raises(InvalidFilterError):
            ingestion_runs.list_runs(
                db_session, OWNER, FilterParams(field="owner_id", value=OTHER_OWNER)
            )

    def test_list_records(self, db_session, csv_run):
        run = csv_run(_csv(10))
        _execute(run.id)

        page = ingestion_runs.list_records(db_session, run.id, OWNER, FilterParams())
        assert page.total == 10
        assert [p.name for p in page.items][:2] == ["Product 0", "Product 1"]

        page = ingestion_runs.list_records(
            db_session, run.id, OWNER,
            FilterParams(field="price", operator="gte", value="7", page_size=2),
        )
        assert page.total == 3
        assert [p.name for p in page.items] == ["Product 7", "Product 8"]

    def test_list_records_is_owner_scoped(self, db_session, make_run):
        run = make_run()
        with pytest.raises(NotFoundOrForbiddenError):
            ingestion_runs.list_records(db_session, run.id, OTHER_OWNER, FilterParams())


class TestReclaimStaleRuns:

    def test_reclaims_only_stale_running_runs(self, db_session, make_run, reload_run):
        old = datetime.now(timezone.utc) - timedelta(hours=3)
        stale = make_run(updated_at=old, started_at=old, processed_rows=40)
        fresh = make_run()
        finished = make_run(status=STATUS_COMPLETED, updated_at=old, started_at=old)

        reclaimed = ingestion_runs.reclaim_stale_runs(
            db_session, older_than=timedelta(hours=1)
        )

        assert reclaimed == [stale.id]
        stored = reload_run(stale.id)
        assert stored.status == STATUS_FAILED
        assert stored.processed_rows == 40
        assert stored.error_message.startswith("Run abandoned: no progress since")
        assert reload_run(fresh.id).status == STATUS_RUNNING
        assert reload_run(finished.id).status == STATUS_COMPLETED

    def test_reclaimed_run_can_be_retried(self, db_session, make_run, mock_enqueue):
        old = datetime.now(timezone.utc) - timedelta(hours=3)
        run = make_run(updated_at=old, started_at=old)
        ingestion_runs.reclaim_stale_runs(db_session, older_than=timedelta(hours=1))

        retried = ingestion_runs.retry_run(db_session, run.id, OWNER)

        assert retried.status == STATUS_RUNNING
        mock_enqueue.assert_called_once_with(run.id)

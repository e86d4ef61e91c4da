import io
from pathlib import Path

import pytest
from sqlalchemy import func, select

from catalog_importer.core.enums import BatchStatus, ErrorType, Severity
from catalog_importer.db.models import BatchJob, BatchRowError, Category, Product, ProductAttribute
from catalog_importer.services import batch_engine as batch_engine_module
from catalog_importer.services.batch_engine import BatchEngine
from tests.factories import csv_upload, product_row


def _three_rows(middle=None):
    return [
        product_row(product_sku="ROW-1", product_name="First"),
        middle or product_row(product_sku="ROW-2", product_name="Second", sale_price="120", discount_percentage="0"),
        product_row(product_sku="ROW-3", product_name="Third"),
    ]


def _job(session_factory, batch_id):
    with session_factory() as session:
        return session.get(BatchJob, batch_id)


def _entries(session_factory, batch_id, **filters):
    with session_factory() as session:
        query = select(BatchRowError).where(BatchRowError.batch_id == batch_id)
        for column, value in filters.items():
            query = query.where(getattr(BatchRowError, column) == value)
        return session.scalars(query.order_by(BatchRowError.id)).all()


def _product_count(session_factory):
    with session_factory() as session:
        return session.scalar(select(func.count(Product.id)))


# -- creation and file attachment -------------------------------------------


def test_create_batch_requires_a_name(batch_engine):
    result = batch_engine.create_batch("   ")

    assert not result.success
    assert result.code == "MISSING_BATCH_NAME"


def test_create_batch_starts_pending_with_default_retry_ceiling(batch_engine, settings):
    result = batch_engine.create_batch("Autumn", description="Knitwear", meta={"source": "ops"})

    assert result.success
    assert result.data.status == BatchStatus.PENDING.value
    assert result.data.max_retries == settings.default_max_retries
    assert result.data.meta == {"source": "ops"}


def test_create_batch_rejects_an_unknown_catalog(batch_engine, session_factory):
    result = batch_engine.create_batch("Autumn", catalog_id=999)

    assert result.code == "CATALOG_NOT_FOUND"
    with session_factory() as session:
        assert session.scalar(select(func.count(BatchJob.id))) == 0


def test_attach_rejects_non_csv_uploads(batch_engine):
    batch_id = batch_engine.create_batch("Autumn").data.id

    result = batch_engine.attach_file(batch_id, io.BytesIO(b"x"), "products.xlsx")

    assert result.code == "INVALID_FILE_TYPE"


def test_attach_rejects_oversized_uploads(session_factory, settings, uploads):
    engine = BatchEngine(session_factory, settings=settings.model_copy(update={"max_upload_bytes": 10}), uploads_dir=uploads)
    batch_id = engine.create_batch("Autumn").data.id

    result = engine.attach_file(batch_id, csv_upload([product_row()]), "products.csv")

    assert result.code == "FILE_TOO_LARGE"
    assert list(uploads.iterdir()) == []


def test_attaching_again_replaces_the_stored_file(batch_engine, make_batch, uploads):
    batch_id = make_batch([product_row()])
    first_path = batch_engine.get_batch(batch_id).data.file_path

    result = batch_engine.attach_file(batch_id, csv_upload([product_row(product_sku="NEW")]), "v2.csv")

    assert result.success
    assert result.data.original_filename == "v2.csv"
    assert not Path(first_path).exists()
    assert [path.name for path in uploads.iterdir()] == [Path(result.data.file_path).name]


def test_unknown_batch_is_reported(batch_engine):
    result = batch_engine.start("does-not-exist")

    assert result.code == "BATCH_NOT_FOUND"


# -- starting ------------------------------------------------------------------


def test_start_without_file_logs_a_system_error(batch_engine, session_factory):
    batch_id = batch_engine.create_batch("Autumn").data.id

    result = batch_engine.start(batch_id)

    assert result.code == "FILE_PATH_MISSING"
    assert _job(session_factory, batch_id).status == BatchStatus.PENDING.value
    (entry,) = _entries(session_factory, batch_id, severity=Severity.ERROR.value)
    assert entry.type == ErrorType.SYSTEM.value


def test_start_with_vanished_file(batch_engine, make_batch):
    batch_id = make_batch([product_row()])
    Path(batch_engine.get_batch(batch_id).data.file_path).unlink()

    result = batch_engine.start(batch_id)

    assert result.code == "FILE_NOT_FOUND"


def test_all_valid_rows_complete_the_batch(batch_engine, make_batch, session_factory):
    batch_id = make_batch([product_row(product_sku="A"), product_row(product_sku="B")])
    file_path = batch_engine.get_batch(batch_id).data.file_path

    result = batch_engine.start(batch_id)

    assert result.success
    job = _job(session_factory, batch_id)
    assert job.status == BatchStatus.COMPLETED.value
    assert (job.total_records, job.processed_records, job.success_count, job.error_count) == (2, 2, 2, 0)
    assert job.last_processed_row == 2
    assert job.completed_at is not None
    assert not Path(file_path).exists()
    assert _product_count(session_factory) == 2


def test_one_invalid_row_fails_the_batch_but_keeps_the_others(batch_engine, make_batch, session_factory):
    batch_id = make_batch(_three_rows())

    result = batch_engine.start(batch_id)

    assert not result.success
    assert result.code == "BATCH_PROCESSING_ERRORS"
    assert [detail["row"] for detail in result.details] == [2]
    job = _job(session_factory, batch_id)
    assert job.status == BatchStatus.FAILED.value
    assert (job.total_records, job.success_count, job.error_count) == (3, 2, 1)
    (entry,) = _entries(session_factory, batch_id, type=ErrorType.VALIDATION.value, severity=Severity.ERROR.value)
    assert entry.row == 2
    assert entry.field == "sale_price"
    assert _product_count(session_factory) == 2
    assert Path(job.file_path).exists()


def test_warnings_are_logged_without_failing_the_row(batch_engine, make_batch, session_factory):
    batch_id = make_batch([product_row(cost_price="90")])

    assert batch_engine.start(batch_id).success
    (warning,) = _entries(session_factory, batch_id, severity=Severity.WARNING.value)
    assert warning.row == 1
    assert warning.type == ErrorType.VALIDATION.value


def test_product_fields_and_attributes_are_written(batch_engine, make_batch, session_factory):
    row = product_row(tags="cotton, winter", status="draft", featured="true", attr_color="White,Grey")
    batch_id = make_batch([row])

    assert batch_engine.start(batch_id).success

    with session_factory() as session:
        product = session.scalar(select(Product))
        assert product.slug == "duv-001"
        assert product.batch_id == batch_id
        assert product.tags == ["cotton", "winter"]
        assert product.is_active is False
        assert product.is_featured is True
        assert session.scalar(select(func.count(ProductAttribute.id))) == 1


def test_reference_data_survives_a_failed_product_write(batch_engine, make_batch, session_factory, monkeypatch):
    def _failing_insert(session, product):
        raise RuntimeError("disk full")

    monkeypatch.setattr(batch_engine_module, "insert_product", _failing_insert)
    batch_id = make_batch([product_row(category_name="Quilts")])

    result = batch_engine.start(batch_id)

    assert result.code == "BATCH_PROCESSING_ERRORS"
    (entry,) = _entries(session_factory, batch_id, type=ErrorType.PROCESSING.value)
    assert entry.row == 1
    assert entry.message == "disk full"
    with session_factory() as session:
        assert session.scalar(select(Category).where(Category.name == "Quilts")) is not None
    assert _product_count(session_factory) == 0


def test_bad_header_fails_the_run_with_a_system_error(make_batch, batch_engine, session_factory):
    batch_id = make_batch([{"product_name": "Lamp"}], headers=["product_name"])

    result = batch_engine.start(batch_id)

    assert result.code == "BATCH_PROCESSING_FAILED"
    assert _job(session_factory, batch_id).status == BatchStatus.FAILED.value
    (entry,) = _entries(session_factory, batch_id, type=ErrorType.SYSTEM.value, severity=Severity.ERROR.value)
    assert entry.message.startswith("System error: Missing required column(s)")
    audit = [entry.message for entry in _entries(session_factory, batch_id, severity=Severity.INFO.value)]
    assert "Batch failed after a system error" in audit


def test_progress_is_published_while_running(batch_engine, make_batch, published_progress):
    batch_id = make_batch([product_row(product_sku="A"), product_row(product_sku="B")])

    batch_engine.start(batch_id)

    statuses = [event["status"] for event in published_progress if event["batch_id"] == batch_id]
    assert statuses[-1] == BatchStatus.COMPLETED.value
    assert published_progress[-1]["processed"] == 2


# -- lifecycle transitions ---------------------------------------------------


@pytest.mark.parametrize(
    "action, allowed",
    [
        ("pause", ["processing"]),
        ("resume", ["paused", "resumable"]),
        ("retry", ["failed"]),
    ],
)
def test_actions_rejected_for_pending_batches(batch_engine, make_batch, action, allowed):
    batch_id = make_batch([product_row()])

    result = getattr(batch_engine, action)(batch_id)

    assert result.code == "INVALID_BATCH_STATE"
    assert result.details == {"current": "pending", "allowed": allowed}


def test_completed_batch_cannot_be_cancelled_or_restarted(batch_engine, make_batch):
    batch_id = make_batch([product_row()])
    batch_engine.start(batch_id)

    assert batch_engine.cancel(batch_id).code == "INVALID_BATCH_STATE"
    assert batch_engine.start(batch_id).code == "INVALID_BATCH_STATE"


def test_cancel_pending_batch_removes_its_file(batch_engine, make_batch, session_factory):
    batch_id = make_batch([product_row()])
    file_path = batch_engine.get_batch(batch_id).data.file_path

    result = batch_engine.cancel(batch_id)

    assert result.success
    assert result.data.status == BatchStatus.CANCELLED.value
    assert result.data.canceled_at is not None
    assert not Path(file_path).exists()
    messages = [entry.message for entry in _entries(session_factory, batch_id)]
    assert "Batch was manually cancelled while in pending state" in messages


def _interrupt_after_first_row(monkeypatch, action):
    original = BatchEngine.process_row

    def _process_row(self, session, job, source_row, progress):
        progress = original(self, session, job, source_row, progress)
        if source_row.index == 1 and "id" in batch_id_holder:
            assert getattr(self, action)(batch_id_holder.pop("id")).success
        return progress

    batch_id_holder = {}
    monkeypatch.setattr(BatchEngine, "process_row", _process_row)
    return batch_id_holder


def test_pause_stops_the_loop_and_resume_continues_additively(batch_engine, make_batch, session_factory, monkeypatch):
    rows = [product_row(product_sku=f"P-{index}") for index in range(1, 4)]
    batch_id = make_batch(rows)
    holder = _interrupt_after_first_row(monkeypatch, "pause")
    holder["id"] = batch_id

    halted = batch_engine.start(batch_id)

    assert halted.code == "BATCH_HALTED"
    job = _job(session_factory, batch_id)
    assert job.status == BatchStatus.RESUMABLE.value
    assert (job.processed_records, job.last_processed_row) == (1, 1)
    assert _product_count(session_factory) == 1

    resumed = batch_engine.resume(batch_id)

    assert resumed.success, resumed.error
    job = _job(session_factory, batch_id)
    assert job.status == BatchStatus.COMPLETED.value
    assert (job.total_records, job.processed_records, job.success_count, job.error_count) == (3, 3, 3, 0)
    assert job.resumed_at is not None
    assert _product_count(session_factory) == 3
    messages = [entry.message for entry in _entries(session_factory, batch_id)]
    assert "Batch was manually paused at row 1" in messages
    assert "Batch is being resumed from row 1" in messages


def test_cancel_during_processing_halts_after_the_current_row(batch_engine, make_batch, session_factory, monkeypatch):
    rows = [product_row(product_sku=f"C-{index}") for index in range(1, 4)]
    batch_id = make_batch(rows)
    holder = _interrupt_after_first_row(monkeypatch, "cancel")
    holder["id"] = batch_id

    result = batch_engine.start(batch_id)

    assert result.code == "BATCH_HALTED"
    job = _job(session_factory, batch_id)
    assert job.status == BatchStatus.CANCELLED.value
    assert job.processed_records == 1
    assert _product_count(session_factory) == 1
    assert not Path(job.file_path).exists()


def test_pause_after_the_last_row_is_acknowledged_not_failed(batch_engine, make_batch, session_factory, monkeypatch):
    batch_id = make_batch([product_row(product_sku="LAST-1")])
    original = BatchEngine.process_row

    def _process_row(self, session, job, source_row, progress):
        progress = original(self, session, job, source_row, progress)
        assert self.pause(batch_id).success
        return progress

    monkeypatch.setattr(BatchEngine, "process_row", _process_row)
    # The pause lands after the loop's final status check.
    monkeypatch.setattr(batch_engine, "_halt_reason", lambda session, batch_id, run_token: None)

    result = batch_engine.start(batch_id)

    assert result.code == "BATCH_HALTED"
    job = _job(session_factory, batch_id)
    assert job.status == BatchStatus.RESUMABLE.value
    assert job.processed_records == 1
    assert _entries(session_factory, batch_id, type=ErrorType.SYSTEM.value, severity=Severity.ERROR.value) == []


def test_resume_uses_the_larger_of_cursor_and_processed_count(batch_engine, make_batch, session_factory):
    rows = [product_row(product_sku=f"R-{index}") for index in range(1, 4)]
    batch_id = make_batch(rows)
    with session_factory() as session:
        job = session.get(BatchJob, batch_id)
        job.status = BatchStatus.PAUSED.value
        job.processed_records = 2
        job.success_count = 2
        job.last_processed_row = 1
        session.commit()

    result = batch_engine.resume(batch_id)

    assert result.success
    job = _job(session_factory, batch_id)
    assert (job.processed_records, job.success_count, job.last_processed_row) == (3, 3, 3)
    assert _product_count(session_factory) == 1


def test_retry_clears_the_log_and_reprocesses_from_the_start(batch_engine, make_batch, session_factory):
    with session_factory() as session:
        session.add(Product(name="Existing", slug="duv-001", sku="DUV-001", price=1, cost_price=1))
        session.commit()
    batch_id = make_batch([product_row()])
    assert batch_engine.start(batch_id).code == "BATCH_PROCESSING_ERRORS"

    with session_factory() as session:
        session.delete(session.scalar(select(Product)))
        session.commit()
    result = batch_engine.retry(batch_id)

    assert result.success, result.error
    job = _job(session_factory, batch_id)
    assert job.status == BatchStatus.COMPLETED.value
    assert (job.retry_count, job.processed_records, job.success_count, job.error_count) == (1, 1, 1, 0)
    assert _entries(session_factory, batch_id, type=ErrorType.VALIDATION.value) == []
    first_entry = _entries(session_factory, batch_id)[0]
    assert first_entry.message == "Starting retry attempt #1"


def test_retry_is_refused_at_the_ceiling(batch_engine, make_batch, session_factory):
    batch_id = make_batch([product_row(sale_price="150", discount_percentage="0")], max_retries=1)
    batch_engine.start(batch_id)

    assert batch_engine.retry(batch_id).code == "BATCH_PROCESSING_ERRORS"
    result = batch_engine.retry(batch_id)

    assert result.code == "RETRY_LIMIT_REACHED"
    assert _job(session_factory, batch_id).retry_count == 1


# -- dispatching and run ownership ---------------------------------------------


def test_dispatcher_receives_the_stamped_run_token(session_factory, settings, uploads):
    calls = []
    engine = BatchEngine(session_factory, settings=settings, uploads_dir=uploads, dispatcher=lambda *args: calls.append(args))
    batch_id = engine.create_batch("Queued").data.id
    engine.attach_file(batch_id, csv_upload([product_row()]), "products.csv")

    result = engine.start(batch_id)

    assert result.success
    assert result.data.status == BatchStatus.PROCESSING.value
    ((dispatched_id, token),) = calls
    assert dispatched_id == batch_id
    assert token == result.data.run_token
    assert engine.run(batch_id, token).success


def test_stale_run_token_does_not_process(session_factory, settings, uploads):
    engine = BatchEngine(session_factory, settings=settings, uploads_dir=uploads, dispatcher=lambda *args: None)
    batch_id = engine.create_batch("Queued").data.id
    engine.attach_file(batch_id, csv_upload([product_row()]), "products.csv")
    engine.start(batch_id)

    result = engine.run(batch_id, "stale-token")

    assert result.code == "BATCH_HALTED"
    assert _job(session_factory, batch_id).processed_records == 0
    assert _product_count(session_factory) == 0


def _unreachable_broker(batch_id, run_token):
    raise ConnectionError("broker unreachable")


def test_failed_dispatch_fails_the_batch_instead_of_leaving_it_running(session_factory, settings, uploads):
    engine = BatchEngine(session_factory, settings=settings, uploads_dir=uploads, dispatcher=_unreachable_broker)
    batch_id = engine.create_batch("Queued").data.id
    engine.attach_file(batch_id, csv_upload([product_row()]), "products.csv")

    result = engine.start(batch_id)

    assert result.code == "DISPATCH_FAILED"
    assert result.error["details"] == "broker unreachable"
    job = _job(session_factory, batch_id)
    assert job.status == BatchStatus.FAILED.value
    assert job.run_token is None
    assert job.failed_at is not None
    (entry,) = _entries(session_factory, batch_id, type=ErrorType.SYSTEM.value, severity=Severity.ERROR.value)
    assert "broker unreachable" in entry.message
    assert engine.retry(batch_id).code == "DISPATCH_FAILED"
    assert _job(session_factory, batch_id).retry_count == 1


def test_failed_dispatch_on_resume(session_factory, settings, uploads):
    engine = BatchEngine(session_factory, settings=settings, uploads_dir=uploads, dispatcher=_unreachable_broker)
    batch_id = engine.create_batch("Queued").data.id
    engine.attach_file(batch_id, csv_upload([product_row()]), "products.csv")
    with session_factory() as session:
        session.get(BatchJob, batch_id).status = BatchStatus.RESUMABLE.value
        session.commit()

    result = engine.resume(batch_id)

    assert result.code == "DISPATCH_FAILED"
    assert _job(session_factory, batch_id).status == BatchStatus.FAILED.value


# -- queries, reports and deletion ---------------------------------------------


def test_list_batches_filters_by_status(batch_engine, make_batch):
    done = make_batch([product_row()])
    waiting = batch_engine.create_batch("Waiting").data.id
    batch_engine.start(done)

    pending = batch_engine.list_batches(status="pending").data
    everything = batch_engine.list_batches().data

    assert [job.id for job in pending] == [waiting]
    assert {job.id for job in everything} == {done, waiting}


def test_error_summary_and_export(batch_engine, make_batch):
    batch_id = make_batch(_three_rows())
    batch_engine.start(batch_id)

    summary = batch_engine.error_summary(batch_id).data
    export = batch_engine.export_errors(batch_id).data

    assert summary["validation"]["error"] == 1
    assert summary["system"]["info"] >= 1
    assert export.splitlines()[0] == "row,field,type,severity,message,created_at"
    assert "Sale price cannot be greater than regular price" in export


def test_list_errors_filters(batch_engine, make_batch):
    batch_id = make_batch(_three_rows())
    batch_engine.start(batch_id)

    entries = batch_engine.list_errors(batch_id, type="validation", severity="error").data

    assert [(entry.row, entry.field) for entry in entries] == [(2, "sale_price")]


def test_list_errors_rejects_unknown_filters(batch_engine, make_batch):
    batch_id = make_batch([product_row()])

    by_type = batch_engine.list_errors(batch_id, type="bogus")
    by_severity = batch_engine.list_errors(batch_id, severity="fatal")

    assert by_type.code == "INVALID_FILTER"
    assert "validation" in by_type.error["message"]
    assert by_severity.code == "INVALID_FILTER"


def test_delete_batch_removes_log_and_file(batch_engine, make_batch, session_factory):
    batch_id = make_batch(_three_rows())
    batch_engine.start(batch_id)
    file_path = _job(session_factory, batch_id).file_path

    result = batch_engine.delete_batch(batch_id)

    assert result.success
    assert _job(session_factory, batch_id) is None
    assert _entries(session_factory, batch_id) == []
    assert not Path(file_path).exists()
    with session_factory() as session:
        assert session.scalar(select(Product.batch_id)) is None


# -- end-to-end properties ---------------------------------------------------


def test_row_missing_product_name_fails_only_that_row(batch_engine, make_batch, session_factory):
    batch_id = make_batch(_three_rows(middle=product_row(product_sku="ROW-2", product_name="")))

    batch_engine.start(batch_id)

    job = _job(session_factory, batch_id)
    assert (job.total_records, job.success_count, job.error_count) == (3, 2, 1)
    assert job.status == BatchStatus.FAILED.value
    (entry,) = _entries(session_factory, batch_id, type=ErrorType.VALIDATION.value)
    assert (entry.row, entry.field) == (2, "product_name")


def test_pause_of_pending_batch_leaves_it_pending(batch_engine, make_batch, session_factory):
    batch_id = make_batch([product_row()])

    assert batch_engine.pause(batch_id).code == "INVALID_BATCH_STATE"
    assert _job(session_factory, batch_id).status == BatchStatus.PENDING.value


def test_repeated_attribute_values_link_one_option_each(batch_engine, make_batch, session_factory):
    batch_id = make_batch([product_row(attr_color="Red, Blue, Blue")])

    batch_engine.start(batch_id)

    with session_factory() as session:
        selection = session.scalar(select(ProductAttribute))
        assert len(selection.selected_options) == 2
        assert len(set(selection.selected_options)) == 2


def test_processed_never_exceeds_total(batch_engine, make_batch, published_progress):
    batch_id = make_batch(_three_rows())

    batch_engine.start(batch_id)

    assert all(event["processed"] <= event["total"] for event in published_progress)

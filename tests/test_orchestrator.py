"""
End-to-end tests for pre-flight and import execution.
"""
import pytest

from app.db.models import Asset, ImportHistory, Location, MaintenanceSchedule, MaintenanceTask, User, WorkOrder
from app.domain.imports import orchestrator
from app.domain.imports.errors import ConfigurationError, OrchestrationError, UnknownActorError, ValidationError
from app.domain.imports.history import STATUS_COMPLETED, STATUS_FAILED, STATUS_PARTIAL
from app.domain.imports.orchestrator import execute_import, run_preflight
from tests.utils.builders import ACME_ADMIN_ID, ACME_ID, GLOBEX_ADMIN_ID, GLOBEX_ID, mappings_for


def ledger_entries(session_factory):
    with session_factory() as session:
        return session.query(ImportHistory).all()


class TestPreflight:

    def test_reports_validation_duplicates_and_conflicts(self, session_factory, seeded):
        rows = [{"Name": "Pump 1"}, {"Name": "pump 1"}, {"Name": "Fan", "Year": "soon"}]
        report = run_preflight(rows, mappings_for(name="Name", year="Year"), "assets", ACME_ID,
                               session_factory=session_factory)

        assert report.validation.valid is False
        assert report.validation.errors == ['Row 3: Year must be a number, got "soon"']
        assert report.duplicates == ['Duplicate Name: "Pump 1" found in rows 1 and 2']
        assert report.conflicts == ['Asset with name "Pump 1" already exists']
        assert report.can_proceed is False

    def test_clean_batch_can_proceed(self, session_factory, seeded):
        report = run_preflight([{"Name": "Fan"}], mappings_for(name="Name"), "assets", ACME_ID,
                               session_factory=session_factory)
        assert report.can_proceed is True

    def test_preflight_writes_nothing(self, session_factory, seeded):
        run_preflight([{"Name": "Fan"}], mappings_for(name="Name"), "assets", ACME_ID,
                      session_factory=session_factory)
        assert ledger_entries(session_factory) == []


class TestExecuteImport:

    def test_users_example(self, session_factory, seeded):
        rows = [{"Name": "A. Lee", "Email": "a@x.com", "Role": "manager"}]
        result = execute_import(
            "users", mappings_for(name="Name", email="Email", role="Role"), rows,
            ACME_ADMIN_ID, ACME_ID, file_name="users.csv", session_factory=session_factory,
        )

        assert result.success is True
        assert result.status == STATUS_COMPLETED
        assert (result.imported_count, result.skipped_count) == (1, 0)
        assert result.errors == []
        with session_factory() as session:
            user = session.query(User).filter(User.email == "a@x.com").one()
            entry = session.query(ImportHistory).one()
        assert user.role == "MANAGER"
        assert user.organization_id == ACME_ID
        assert user.import_id == result.import_id
        assert entry.import_id == result.import_id
        assert entry.status == STATUS_COMPLETED
        assert entry.file_name == "users.csv"
        assert entry.can_rollback is True

    def test_one_bad_row_is_skipped_and_the_rest_imported(self, session_factory, seeded):
        rows = [{"Name": f"Bay {number}"} for number in range(1, 6)]
        rows[2] = {"Name": "Plant A"}
        result = execute_import("locations", mappings_for(name="Name"), rows, ACME_ADMIN_ID, ACME_ID,
                                session_factory=session_factory, batch_size=2)

        assert result.success is True
        assert result.status == STATUS_PARTIAL
        assert (result.imported_count, result.skipped_count) == (4, 1)
        assert result.duplicates == ['Row 3: Duplicate Name "Plant A" - this record already exists']

    def test_invalid_rows_raise_and_write_nothing(self, session_factory, seeded):
        rows = [{"Name": "Fan", "Year": "soon"}]
        with pytest.raises(ValidationError) as exc_info:
            execute_import("assets", mappings_for(name="Name", year="Year"), rows, ACME_ADMIN_ID, ACME_ID,
                           session_factory=session_factory)

        assert exc_info.value.errors == ['Row 1: Year must be a number, got "soon"']
        assert ledger_entries(session_factory) == []
        with session_factory() as session:
            assert session.query(Asset).filter(Asset.name == "Fan").count() == 0

    def test_actor_must_belong_to_the_tenant(self, session_factory, seeded):
        with pytest.raises(UnknownActorError):
            execute_import("locations", mappings_for(name="Name"), [{"Name": "Bay"}], GLOBEX_ADMIN_ID, ACME_ID,
                           session_factory=session_factory)
        assert ledger_entries(session_factory) == []

    def test_unknown_entity_type(self, session_factory, seeded):
        with pytest.raises(ConfigurationError):
            execute_import("spaceships", [], [], ACME_ADMIN_ID, ACME_ID, session_factory=session_factory)

    def test_lookups_resolve_inside_the_tenant(self, session_factory, seeded):
        rows = [{"Title": "Fix pump", "Asset": "Pump 1"}, {"Title": "Fix boiler", "Asset": "Boiler"}]
        result = execute_import("work_orders", mappings_for(title="Title", asset_name="Asset"), rows,
                                GLOBEX_ADMIN_ID, GLOBEX_ID, session_factory=session_factory)

        assert result.imported_count == 2
        assert result.warnings == ['Row 2: Asset "Boiler" not found; Asset left empty']
        with session_factory() as session:
            fixed = session.query(WorkOrder).filter(WorkOrder.title == "Fix pump").one()
            boiler = session.query(WorkOrder).filter(WorkOrder.title == "Fix boiler").one()
        assert fixed.asset_id == seeded["globex_asset_id"]
        assert fixed.organization_id == GLOBEX_ID
        assert boiler.asset_id is None

    def test_preventive_work_orders_derive_tasks_and_schedules(self, session_factory, seeded):
        rows = [
            {"Title": "Inspect pump", "Type": "Preventive", "Recurrence": "Monthly|1",
             "Asset": "Pump 1", "Status": "Completed", "Time": "0:45:00"},
            {"Title": "Grease pump bearings", "Type": "Preventive", "Recurrence": "quarterly",
             "Asset": "101", "Status": "In Progress"},
            {"Title": "Replace fan belt", "Type": "Reactive", "Asset": "Pump 1"},
        ]
        mappings = mappings_for(title="Title", work_type="Type", recurrence="Recurrence",
                                asset_name="Asset", status="Status", estimated_hours="Time")
        result = execute_import("work_orders", mappings, rows, ACME_ADMIN_ID, ACME_ID,
                                session_factory=session_factory)

        assert result.status == STATUS_COMPLETED
        assert result.imported_count == 3
        assert result.derived["tasks_created"] == 2
        assert result.derived["schedules_created"] == 2
        assert result.derived["work_orders_linked"] == 3
        assert result.derived["completed_history"] == 1
        assert result.derived["follow_up_work_orders_created"] == 1

        with session_factory() as session:
            inspected = session.query(WorkOrder).filter(WorkOrder.title == "Inspect pump").one()
            greased = {
                work_order.status: work_order
                for work_order in session.query(WorkOrder).filter(WorkOrder.title == "Grease pump bearings")
            }
            belt = session.query(WorkOrder).filter(WorkOrder.title == "Replace fan belt").one()
            schedules = {s.title: s for s in session.query(MaintenanceSchedule)}
            tasks = {t.title: t for t in session.query(MaintenanceTask)}

        assert inspected.status == "COMPLETED"
        assert inspected.completed_at is not None
        assert inspected.estimated_hours == pytest.approx(0.75)
        assert set(greased) == {"IN_PROGRESS", "OPEN"}
        assert greased["IN_PROGRESS"].due_date is None
        assert greased["OPEN"].due_date is not None
        assert greased["OPEN"].asset_id == seeded["acme_asset_id"]
        assert greased["OPEN"].import_id == result.import_id
        assert inspected.maintenance_schedule_id == schedules["Inspect pump"].id
        assert {wo.maintenance_schedule_id for wo in greased.values()} == {schedules["Grease pump bearings"].id}
        assert belt.maintenance_schedule_id is None
        assert schedules["Grease pump bearings"].frequency == "3 months"
        assert tasks["Inspect pump"].type == "INSPECTION"
        assert tasks["Inspect pump"].estimated_minutes == 45
        assert tasks["Grease pump bearings"].type == "LUBRICATION"
        assert all(task.import_id == result.import_id for task in tasks.values())

    def test_rejected_preventive_row_keeps_its_status(self, session_factory, seeded):
        rows = [{"Title": "Flush pump", "Status": "Rejected", "Work Type": "Preventive",
                 "Recurrence": "Monthly|1", "Asset": "Pump 1"}]
        mappings = mappings_for(title="Title", status="Status", work_type="Work Type",
                                recurrence="Recurrence", asset_name="Asset")
        result = execute_import("work_orders", mappings, rows, ACME_ADMIN_ID, ACME_ID,
                                session_factory=session_factory)

        assert result.imported_count == 1
        with session_factory() as session:
            statuses = sorted(wo.status for wo in session.query(WorkOrder).filter(WorkOrder.title == "Flush pump"))
        assert statuses == ["CANCELED", "OPEN"]

    def test_reimporting_does_not_stack_open_follow_ups(self, session_factory, seeded):
        rows = [{"Title": "Flush pump", "Status": "On Hold", "Work Type": "Preventive",
                 "Recurrence": "Monthly|1", "Asset": "Pump 1"}]
        mappings = mappings_for(title="Title", status="Status", work_type="Work Type",
                                recurrence="Recurrence", asset_name="Asset")
        execute_import("work_orders", mappings, rows, ACME_ADMIN_ID, ACME_ID, session_factory=session_factory)
        again = execute_import("work_orders", mappings, rows, ACME_ADMIN_ID, ACME_ID,
                               session_factory=session_factory)

        assert again.derived["follow_up_work_orders_reused"] == 1
        with session_factory() as session:
            open_count = session.query(WorkOrder).filter(WorkOrder.status == "OPEN").count()
        assert open_count == 1

    def test_lookup_warnings_from_derived_records_are_reported_once(self, session_factory, seeded):
        rows = [{"Title": "Flush pump", "Status": "On Hold", "Work Type": "Preventive",
                 "Recurrence": "Monthly|1", "Asset": "Pump 1", "Assigned": "ghost@acme.test"}]
        mappings = mappings_for(title="Title", status="Status", work_type="Work Type",
                                recurrence="Recurrence", asset_name="Asset", assigned_to="Assigned")
        result = execute_import("work_orders", mappings, rows, ACME_ADMIN_ID, ACME_ID,
                                session_factory=session_factory)

        assert result.derived["follow_up_work_orders_created"] == 1
        assert result.warnings == ['Row 1: User "ghost@acme.test" not found; Assigned to left empty']

    def test_hierarchy_in_one_file_is_linked(self, session_factory, seeded):
        rows = [
            {"Name": "Room 1", "Parent": "Site"},
            {"Name": "Site"},
            {"Name": "Cabinet", "Parent": "Room 1"},
            {"Name": "Annex", "Parent": "Plant A"},
            {"Name": "Shed", "Parent": "Nowhere"},
        ]
        result = execute_import("locations", mappings_for(name="Name", parent="Parent"), rows,
                                ACME_ADMIN_ID, ACME_ID, session_factory=session_factory)

        assert result.imported_count == 5
        assert result.derived["parents_linked"] == 3
        assert result.warnings == ['Row 5: Location "Nowhere" not found; Parent left empty']
        with session_factory() as session:
            locations = {
                location.name: location
                for location in session.query(Location).filter(Location.organization_id == ACME_ID)
            }
        assert locations["Room 1"].parent_id == locations["Site"].id
        assert locations["Cabinet"].parent_id == locations["Room 1"].id
        assert locations["Annex"].parent_id == seeded["acme_location_id"]
        assert locations["Site"].parent_id is None
        assert locations["Shed"].parent_id is None

    def test_parent_id_column_refers_to_source_ids(self, session_factory, seeded):
        rows = [
            {"ID": "7", "Name": "Pump housing", "Parent ID": "8"},
            {"ID": "8", "Name": "Pump skid"},
        ]
        result = execute_import("assets", mappings_for(legacy_id="ID", name="Name", parent_id="Parent ID"), rows,
                                ACME_ADMIN_ID, ACME_ID, session_factory=session_factory)

        assert result.imported_count == 2
        with session_factory() as session:
            assets = {asset.name: asset for asset in session.query(Asset).filter(Asset.import_id == result.import_id)}
        assert assets["Pump housing"].parent_id == assets["Pump skid"].id

    def test_circular_parents_are_not_linked(self, session_factory, seeded):
        rows = [{"Name": "North", "Parent": "South"}, {"Name": "South", "Parent": "North"}]
        result = execute_import("locations", mappings_for(name="Name", parent="Parent"), rows,
                                ACME_ADMIN_ID, ACME_ID, session_factory=session_factory)

        assert result.derived["parents_linked"] == 1
        assert result.warnings == [
            'Row 2: Location "North" would make the record its own ancestor; Parent left empty'
        ]

    def test_partial_run_with_row_errors_is_not_a_success(self, session_factory, seeded, monkeypatch):
        real_transform = orchestrator.transform_rows

        def transform_dropping_last_row(rows, *args, **kwargs):
            result = real_transform(rows, *args, **kwargs)
            result.records.pop()
            result.errors.append(f"Row {len(rows)}: Name could not be read")
            return result

        monkeypatch.setattr(orchestrator, "transform_rows", transform_dropping_last_row)
        result = execute_import("locations", mappings_for(name="Name"), [{"Name": "Bay 1"}, {"Name": "Bay 2"}],
                                ACME_ADMIN_ID, ACME_ID, session_factory=session_factory)

        assert result.status == STATUS_PARTIAL
        assert result.imported_count == 1
        assert result.success is False

    def test_run_with_only_duplicates_is_not_a_success(self, session_factory, seeded):
        result = execute_import("locations", mappings_for(name="Name"), [{"Name": "Plant A"}],
                                ACME_ADMIN_ID, ACME_ID, session_factory=session_factory)

        assert result.status == STATUS_FAILED
        assert result.errors == []
        assert result.success is False

    def test_orchestration_failure_marks_the_ledger_failed(self, session_factory, seeded, monkeypatch):
        def broken_preload(*args, **kwargs):
            raise OrchestrationError("Failed to load assets lookups: connection reset")

        monkeypatch.setattr(orchestrator, "build_lookup_cache", broken_preload)

        with pytest.raises(OrchestrationError) as exc_info:
            execute_import("work_orders", mappings_for(title="Title", asset_name="Asset"),
                           [{"Title": "Fix", "Asset": "Pump 1"}], ACME_ADMIN_ID, ACME_ID,
                           session_factory=session_factory)

        [entry] = ledger_entries(session_factory)
        assert exc_info.value.import_id == entry.import_id
        assert entry.status == STATUS_FAILED
        assert entry.errors == ["Failed to load assets lookups: connection reset"]
        assert entry.can_rollback is False

    def test_timeout_keeps_committed_batches(self, session_factory, seeded):
        rows = [{"Name": f"Bay {number}"} for number in range(1, 4)]
        with pytest.raises(OrchestrationError) as exc_info:
            execute_import("locations", mappings_for(name="Name"), rows, ACME_ADMIN_ID, ACME_ID,
                           session_factory=session_factory, batch_timeout_seconds=0)

        [entry] = ledger_entries(session_factory)
        assert entry.status == STATUS_FAILED
        assert entry.imported_count == 0
        assert entry.skipped_count == 3
        assert "time budget" in entry.errors[-1]
        assert exc_info.value.import_id == entry.import_id

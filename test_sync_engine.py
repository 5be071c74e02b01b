"""
Tests for the BC <-> Premium reconciliation passes.

Runs both directions against in-memory BC and Dataverse fakes
(see conftest.py) with a fixed clock.
"""

import asyncio

import pytest


def _seed_project(fake_bc, project_no="PR00042"):
    """A BC project with one task in each section."""
    fake_bc.add_project(project_no, "Main Street Clinic")
    rows = [
        ("1000", "JOB NAME", {}),
        ("1010", "Layout", {"percentComplete": 0, "manualStartDate": "2025-02-03", "manualEndDate": "2025-02-07"}),
        ("1020", "Framing", {"percentComplete": 50}),
        ("3000", "REVENUE", {}),
        ("3010", "Progress billing", {"percentComplete": 0}),
        ("4000", "CHANGE ORDERS", {}),
        ("4010", "Extra outlet", {"percentComplete": 0}),
    ]
    return {
        task_no: fake_bc.add_task(projectNo=project_no, taskNo=task_no, description=description, **extra)
        for task_no, description, extra in rows
    }


class TestBcToPremium:
    """BC -> Premium project pass."""

    def test_first_pass_creates_only_synchronizable_tasks(self, fake_bc, fake_dataverse, make_context):
        """Headings and the Revenue section are skipped; the rest are created and linked."""
        from sync.bc_to_premium import sync_bc_to_premium

        tasks = _seed_project(fake_bc)
        summary = asyncio.run(sync_bc_to_premium(make_context(), project_nos=["PR00042"]))

        assert summary["projects"] == 1
        assert summary["tasks"] == 7
        assert summary["created"] == 3
        assert summary["skipped"] == 4
        assert summary["errors"] == 0
        assert summary["projectNos"] == ["PR00042"]

        assert fake_dataverse.projects_created == [{"msdyn_subject": "PR00042 - Main Street Clinic"}]
        created_titles = [payload["msdyn_subject"] for entity_set, payload in fake_dataverse.creates if entity_set == "msdyn_projecttasks"]
        assert created_titles == ["Layout", "Framing", "Extra outlet"]

        for task_no in ("1010", "1020", "4010"):
            linked = fake_bc.task(tasks[task_no]["systemId"])
            assert linked["plannerTaskId"]
            assert linked["plannerPlanId"]
            assert linked["syncLock"] is False
            assert linked["lastSyncAt"].startswith("2025-01-15T12:00:00")
        for task_no in ("1000", "3000", "3010", "4000"):
            assert fake_bc.task(tasks[task_no]["systemId"])["plannerTaskId"] == ""

    def test_task_payload_dates_and_percent(self, fake_bc, fake_dataverse, make_context):
        """Date-only BC values are pinned to noon UTC and bound to the project."""
        from sync.bc_to_premium import sync_bc_to_premium

        _seed_project(fake_bc)
        asyncio.run(sync_bc_to_premium(make_context(), project_nos=["PR00042"]))

        layout = next(p for _, p in fake_dataverse.creates if p.get("msdyn_subject") == "Layout")
        assert layout["msdyn_start"] == "2025-02-03T12:00:00.000Z"
        assert layout["msdyn_finish"] == "2025-02-07T12:00:00.000Z"
        assert layout["msdyn_percentcomplete"] == 0.0
        assert layout["msdyn_project@odata.bind"].startswith("/msdyn_projects(")

    def test_second_pass_is_idempotent(self, fake_bc, fake_dataverse, make_context):
        """Re-running with no BC changes writes nothing to Premium."""
        from sync.bc_to_premium import sync_bc_to_premium

        _seed_project(fake_bc)
        ctx = make_context()
        asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))
        creates, updates = len(fake_dataverse.creates), len(fake_dataverse.updates)

        summary = asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

        assert summary["created"] == 0
        assert summary["updated"] == 0
        assert summary["skipped"] == 7
        assert len(fake_dataverse.creates) == creates
        assert len(fake_dataverse.updates) == updates
        assert len(fake_dataverse.projects_created) == 1

    def test_changed_task_is_updated_with_if_match(self, fake_bc, fake_dataverse, make_context):
        """A BC edit after linking becomes a conditional update."""
        from sync.bc_to_premium import sync_bc_to_premium

        tasks = _seed_project(fake_bc)
        ctx = make_context()
        asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

        framing = fake_bc.task(tasks["1020"]["systemId"])
        etag = framing["lastPlannerEtag"]
        framing["percentComplete"] = 100

        summary = asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

        assert summary["updated"] == 1
        entity_set, task_id, payload, if_match = fake_dataverse.updates[-1]
        assert entity_set == "msdyn_projecttasks"
        assert task_id == framing["plannerTaskId"]
        assert payload["msdyn_percentcomplete"] == 100.0
        assert if_match == etag
        assert fake_bc.task(framing["systemId"])["lastPlannerEtag"] != etag

    def test_fresh_lock_skips_task(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        """A lock taken five minutes ago belongs to another writer."""
        from sync.bc_to_premium import sync_bc_to_premium

        task = fake_bc.add_task(taskNo="1010", description="Layout", syncLock=True, lastSyncAt=minutes_ago(5))
        summary = asyncio.run(sync_bc_to_premium(make_context(), project_nos=["PR00042"]))

        assert summary["skipped"] == 1
        assert summary["created"] == 0
        assert fake_dataverse.creates[-1][0] == "msdyn_projects"
        assert fake_bc.task(task["systemId"])["syncLock"] is True

    def test_stale_lock_is_reclaimed(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        """A lock older than the timeout is cleared and the task synced."""
        from sync.bc_to_premium import sync_bc_to_premium

        task = fake_bc.add_task(taskNo="1010", description="Layout", syncLock=True, lastSyncAt=minutes_ago(45))
        summary = asyncio.run(sync_bc_to_premium(make_context(), project_nos=["PR00042"]))

        assert summary["created"] == 1
        assert fake_bc.patches[0] == (task["systemId"], {"syncLock": False})
        stored = fake_bc.task(task["systemId"])
        assert stored["syncLock"] is False
        assert stored["plannerTaskId"]

    def test_disabled_project_is_not_synced(self, fake_bc, fake_dataverse, make_context):
        """Projects switched off in the settings store are skipped."""
        from sync.bc_to_premium import sync_bc_to_premium

        _seed_project(fake_bc)
        ctx = make_context()
        asyncio.run(ctx.project_settings.upsert("pr00042", disabled=True))

        summary = asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

        assert summary["projects"] == 0
        assert fake_dataverse.creates == []

    def test_task_ids_select_owning_project(self, fake_bc, fake_dataverse, make_context):
        """Targeted system ids narrow the pass to their tasks."""
        from sync.bc_to_premium import sync_bc_to_premium

        tasks = _seed_project(fake_bc)
        summary = asyncio.run(
            sync_bc_to_premium(make_context(), task_system_ids=[tasks["1020"]["systemId"].upper()])
        )

        assert summary["projectNos"] == ["PR00042"]
        assert summary["tasks"] == 1
        assert summary["created"] == 1

    def test_queue_rows_are_deleted_after_success(self, fake_bc, fake_dataverse, make_context):
        """With no explicit targets the BC sync queue drives the pass."""
        from sync.bc_to_premium import sync_bc_to_premium

        _seed_project(fake_bc)
        fake_bc.queue = [{"systemId": "{0f2f6c1e-0000-4000-8000-000000000001}", "projectNo": "PR00042"}]

        summary = asyncio.run(sync_bc_to_premium(make_context()))

        assert summary["projectNos"] == ["PR00042"]
        assert summary["created"] == 3
        assert fake_bc.deleted == [("premiumSyncQueue", "0f2f6c1e-0000-4000-8000-000000000001")]

    def test_change_feed_advances_cursor(self, fake_bc, fake_dataverse, make_context):
        """Projects named by the change feed are synced and the cursor saved."""
        from sync.bc_to_premium import sync_bc_to_premium

        _seed_project(fake_bc)
        fake_bc.changes = {"entity_set": "projectChanges", "items": [{"projectNo": "PR00042"}], "last_seq": 17}
        ctx = make_context()

        summary = asyncio.run(sync_bc_to_premium(ctx))

        assert summary["projectNos"] == ["PR00042"]
        assert asyncio.run(ctx.cursors.get("premium")) == 17

    def test_change_feed_cursor_holds_deferred_projects(self, fake_bc, fake_dataverse, make_context):
        """Projects cut by the per-run limit are picked up by later passes."""
        from sync.bc_to_premium import sync_bc_to_premium

        for project_no in ("PR1", "PR2", "PR3"):
            _seed_project(fake_bc, project_no)
        fake_bc.changes = {
            "entity_set": "projectChanges",
            "items": [
                {"projectNo": "PR1", "sequenceNo": 1},
                {"projectNo": "PR2", "sequenceNo": 2},
                {"projectNo": "PR3", "sequenceNo": 3},
            ],
            "last_seq": 3,
        }
        ctx = make_context(max_projects_per_run=1)

        synced = []
        cursors = []
        for _ in range(4):
            synced.extend(asyncio.run(sync_bc_to_premium(ctx))["projectNos"])
            cursors.append(asyncio.run(ctx.cursors.get("premium")))

        assert synced == ["PR1", "PR2", "PR3"]
        assert cursors == [1, 2, 3, 3]
        assert len(fake_dataverse.projects_created) == 3

    def test_unresolvable_project_raises_setup_error(self, fake_bc, make_context):
        """A project Premium cannot create aborts the pass."""
        from connectors.errors import SyncSetupError
        from sync.bc_to_premium import sync_bc_to_premium

        fake_bc.add_task(taskNo="1010", description="Layout")
        ctx = make_context()

        async def no_project(payload):
            return None

        ctx.dataverse.create_project = no_project
        with pytest.raises(SyncSetupError):
            asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

    def test_pass_metrics_recorded(self, fake_bc, fake_dataverse, make_context):
        """A completed pass shows up in the metrics summary."""
        from core.observability import get_metrics
        from sync.bc_to_premium import sync_bc_to_premium

        _seed_project(fake_bc)
        asyncio.run(sync_bc_to_premium(make_context(), project_nos=["PR00042"]))

        passes = get_metrics().get_summary()["passes"]
        assert passes["by_direction"]["bcToPremium"]["completed"] == 1


class TestScheduleBatch:
    """Operation-set writes through the schedule API."""

    def test_batch_executes_once_then_stamps_bc(self, fake_bc, fake_dataverse, make_context):
        """Creates are queued in one operation set; BC links are written after it runs."""
        from sync.bc_to_premium import sync_bc_to_premium

        tasks = _seed_project(fake_bc)
        patches_at_execute = []
        fake_dataverse.on_execute = lambda _: patches_at_execute.append(len(fake_bc.patches))
        ctx = make_context(use_schedule_api=True, preserve_task_order=False)

        summary = asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

        assert summary["created"] == 3
        assert summary["errors"] == 0
        assert fake_dataverse.executed == ["opset-1"]
        assert patches_at_execute == [0]
        assert [kind for kind, _ in fake_dataverse.operation_sets["opset-1"]] == ["create", "create", "create"]
        created_titles = [p["msdyn_subject"] for entity_set, p in fake_dataverse.creates if entity_set == "msdyn_projecttasks"]
        assert created_titles == ["Layout", "Framing", "Extra outlet"]

        rows = fake_dataverse.rows["msdyn_projecttasks"]
        for task_no in ("1010", "1020", "4010"):
            linked = fake_bc.task(tasks[task_no]["systemId"])
            assert linked["plannerTaskId"] in rows
            assert linked["syncLock"] is False

    def test_execute_failure_retries_each_task_directly(self, fake_bc, fake_dataverse, make_context):
        """A failed batch applies nothing, so every queued task is created on its own."""
        from sync.bc_to_premium import sync_bc_to_premium

        tasks = _seed_project(fake_bc)
        fake_dataverse.fail_execute = True
        ctx = make_context(use_schedule_api=True, preserve_task_order=False)

        summary = asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

        assert summary["created"] == 3
        assert summary["errors"] == 0
        assert fake_dataverse.executed == ["opset-1"]
        rows = fake_dataverse.rows["msdyn_projecttasks"]
        assert len(rows) == 3
        assert [u for u in fake_dataverse.updates if u[0] == "msdyn_projecttasks"] == []
        for task_no in ("1010", "1020", "4010"):
            assert fake_bc.task(tasks[task_no]["systemId"])["plannerTaskId"] in rows

    def test_capacity_error_clears_finished_sets(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        """Completed operation sets are deleted once to make room for a new one."""
        from sync.bc_to_premium import sync_bc_to_premium

        _seed_project(fake_bc)
        finished = fake_dataverse.add_row("msdyn_operationsets", statecode=1, msdyn_completedon=minutes_ago(120))
        running = fake_dataverse.add_row("msdyn_operationsets", statecode=0)
        fake_dataverse.capacity_errors = 1
        ctx = make_context(use_schedule_api=True, preserve_task_order=False)

        summary = asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

        remaining = fake_dataverse.rows["msdyn_operationsets"]
        assert finished["msdyn_operationsetid"] not in remaining
        assert running["msdyn_operationsetid"] in remaining
        assert fake_dataverse.executed == ["opset-1"]
        assert summary["created"] == 3


class TestAssignments:
    """BC assignee -> project team member -> resource assignment."""

    def test_assignee_records_created_once(self, fake_bc, fake_dataverse, make_context):
        """The team member and assignment are created on the first pass only."""
        from sync.bc_to_premium import sync_bc_to_premium

        resource = fake_dataverse.add_row("bookableresources", name="Alex Kim")
        task = fake_bc.add_task(taskNo="1010", description="Layout", percentComplete=0, assignedPersonName="Alex Kim")
        ctx = make_context()

        asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

        teams = list(fake_dataverse.rows["msdyn_projectteams"].values())
        assignments = list(fake_dataverse.rows["msdyn_resourceassignments"].values())
        assert len(teams) == 1
        assert len(assignments) == 1
        assert teams[0]["_msdyn_bookableresourceid_value"] == resource["bookableresourceid"]
        linked = fake_bc.task(task["systemId"])
        assert assignments[0]["_msdyn_taskid_value"] == linked["plannerTaskId"]
        assert assignments[0]["_msdyn_projectteamid_value"] == teams[0]["msdyn_projectteamid"]

        linked["percentComplete"] = 50
        summary = asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))

        assert summary["updated"] == 1
        created_sets = [entity_set for entity_set, _ in fake_dataverse.creates]
        assert created_sets.count("msdyn_projectteams") == 1
        assert created_sets.count("msdyn_resourceassignments") == 1

    def test_unknown_assignee_is_ignored(self, fake_bc, fake_dataverse, make_context):
        from sync.bc_to_premium import sync_bc_to_premium

        fake_bc.add_task(taskNo="1010", description="Layout", assignedPersonName="Nobody Here")

        summary = asyncio.run(sync_bc_to_premium(make_context(), project_nos=["PR00042"]))

        assert summary["created"] == 1
        assert not fake_dataverse.rows.get("msdyn_projectteams")
        assert not fake_dataverse.rows.get("msdyn_resourceassignments")


class TestSections:
    """Task ordering and section rules."""

    def test_sort_by_numeric_parts(self):
        from sync.sections import sort_tasks_by_task_no

        tasks = [{"taskNo": "1010"}, {"taskNo": "200"}, {"taskNo": "1010.2"}, {"taskNo": "1010.10"}, {"taskNo": "A"}]
        ordered = [t["taskNo"] for t in sort_tasks_by_task_no(tasks)]
        assert ordered == ["A", "200", "1010", "1010.2", "1010.10"]

    def test_revenue_section_skipped_until_next_heading(self):
        from sync.sections import SectionTracker

        tracker = SectionTracker()
        decisions = [
            tracker.should_skip({"taskNo": no, "description": desc})
            for no, desc in [
                ("1000", "JOB NAME"),
                ("1010", "Layout"),
                ("1099", "TOTAL"),
                ("3000", "REVENUE"),
                ("3010", "Billing"),
                ("4000", "CHANGE ORDERS"),
                ("4010", "Extra"),
            ]
        ]
        assert decisions == [True, False, True, True, True, True, False]

    def test_allowlist(self):
        from sync.sections import build_allowed_task_numbers, is_allowed_task_no

        allowlist = build_allowed_task_numbers(["1010", "T-1020", "junk"])
        assert allowlist == {1010, 1020}
        assert is_allowed_task_no("1020", allowlist)
        assert not is_allowed_task_no("1030", allowlist)
        assert is_allowed_task_no("anything", set())


class TestDuplicateLinks:
    """Duplicate counterpart-link resolution."""

    def test_primary_prefers_plan_then_last_sync(self, fake_bc, minutes_ago):
        from sync.linkage import resolve_duplicate_links

        shared = "9a3c1a55-1111-4222-8333-444455556666"
        no_plan = fake_bc.add_task(taskNo="1010", plannerTaskId=shared, lastSyncAt=minutes_ago(1))
        older = fake_bc.add_task(taskNo="1020", plannerTaskId=shared, plannerPlanId="p", lastSyncAt=minutes_ago(60))
        newer = fake_bc.add_task(taskNo="1030", plannerTaskId=shared, plannerPlanId="p", lastSyncAt=minutes_ago(10))
        tasks = [dict(no_plan), dict(older), dict(newer)]

        cleared = asyncio.run(resolve_duplicate_links(fake_bc, tasks))

        assert cleared == 2
        assert fake_bc.task(newer["systemId"])["plannerTaskId"] == shared
        assert fake_bc.task(older["systemId"])["plannerTaskId"] == ""
        assert fake_bc.task(no_plan["systemId"])["plannerTaskId"] == ""
        assert [t["plannerTaskId"] for t in tasks] == ["", "", shared]

    def test_failed_clear_still_unlinks_in_memory(self, fake_bc):
        from sync.linkage import resolve_duplicate_links

        shared = "9a3c1a55-1111-4222-8333-444455556666"
        keep = fake_bc.add_task(taskNo="1010", plannerTaskId=shared, plannerPlanId="p")
        extra = fake_bc.add_task(taskNo="1020", plannerTaskId=shared)
        fake_bc.fail_patch_for.add(extra["systemId"].lower())
        tasks = [dict(keep), dict(extra)]

        assert asyncio.run(resolve_duplicate_links(fake_bc, tasks)) == 0
        assert tasks[1]["plannerTaskId"] == ""
        assert tasks[0]["plannerTaskId"] == shared


class TestSyncLock:
    """Lock protocol around BC task writes."""

    def test_write_refuses_lock_taken_since_read(self, fake_bc, make_context, minutes_ago):
        """The task is re-read before claiming; a fresh lock held elsewhere blocks the write."""
        from sync.sync_lock import TaskLockedError

        task = fake_bc.add_task(taskNo="1010", description="Layout")
        local = dict(task)
        fake_bc.task(task["systemId"]).update(syncLock=True, lastSyncAt=minutes_ago(1))

        with pytest.raises(TaskLockedError):
            asyncio.run(make_context().lock.write(local, {"plannerTaskId": "9a3c1a55-1111-4222-8333-444455556666"}))
        assert fake_bc.patches == []

    def test_write_reclaims_stale_lock_then_claims_and_clears(self, fake_bc, make_context, minutes_ago):
        from sync.sync_lock import LOCK_FIELD

        task = fake_bc.add_task(taskNo="1010", description="Layout")
        local = dict(task)
        fake_bc.task(task["systemId"]).update(syncLock=True, lastSyncAt=minutes_ago(45))
        link = "9a3c1a55-1111-4222-8333-444455556666"

        asyncio.run(make_context().lock.write(local, {"plannerTaskId": link}))

        assert [payload for _, payload in fake_bc.patches] == [
            {LOCK_FIELD: False},
            {LOCK_FIELD: True},
            {"plannerTaskId": link, LOCK_FIELD: False},
        ]
        assert fake_bc.task(task["systemId"])[LOCK_FIELD] is False

    def test_schema_without_lock_field_writes_once(self, fake_bc, make_context):
        """No lock round-trip when BC task metadata has no syncLock field."""
        fake_bc.task_fields = {"systemId", "taskNo", "plannerTaskId"}
        task = fake_bc.add_task(taskNo="1010", description="Layout")
        link = "9a3c1a55-1111-4222-8333-444455556666"

        asyncio.run(make_context().lock.write(dict(task), {"plannerTaskId": link}))

        assert [payload for _, payload in fake_bc.patches] == [{"plannerTaskId": link}]


class TestPercentMapping:
    """Percent conversion between BC and Premium."""

    @pytest.mark.parametrize("value", [0, 50, 100])
    def test_percent_survives_both_directions(self, value):
        from core.config import DataverseMappingConfig
        from sync.mapping import from_dataverse_percent, normalize_bc_percent, to_dataverse_percent

        mapping = DataverseMappingConfig()
        premium = to_dataverse_percent(value, mapping.percent_scale, mapping.percent_min, mapping.percent_max)

        assert normalize_bc_percent(from_dataverse_percent(premium, mapping.percent_scale)) == value

    def test_fractional_range_round_trip(self):
        """A 0..1 Premium range maps 50 to 0.5 and back."""
        from sync.mapping import from_dataverse_percent, normalize_bc_percent, to_dataverse_percent

        premium = to_dataverse_percent(50, 100, 0, 1)

        assert premium == 0.5
        assert normalize_bc_percent(from_dataverse_percent(premium, 100)) == 50


class TestPremiumToBc:
    """Premium -> BC change application."""

    TASK_ID = "5b1e0f3c-aaaa-4bbb-8ccc-dddddddddddd"
    PROJECT_ID = "7c2d4e6f-1234-4abc-9def-000000000042"

    def _linked_task(self, fake_bc, minutes_ago, **extra):
        fields = dict(
            taskNo="1010",
            description="Layout",
            percentComplete=0,
            manualStartDate="2025-02-03",
            manualEndDate="2025-02-07",
            plannerTaskId=self.TASK_ID,
            plannerPlanId=self.PROJECT_ID,
            lastPlannerEtag='W/"1"',
            lastSyncAt=minutes_ago(10),
            systemModifiedAt=minutes_ago(10),
        )
        fields.update(extra)
        return fake_bc.add_task(**fields)

    def _row(self, **extra):
        row = {
            "msdyn_projecttaskid": self.TASK_ID,
            "msdyn_subject": "Layout and survey",
            "msdyn_percentcomplete": 49.6,
            "msdyn_start": "2025-02-04T12:00:00Z",
            "msdyn_finish": "2025-02-10T12:00:00Z",
            "_msdyn_project_value": self.PROJECT_ID,
            "@odata.etag": 'W/"9"',
        }
        row.update(extra)
        return row

    def test_change_feed_row_patches_bc(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        from sync.premium_to_bc import sync_premium_changes

        task = self._linked_task(fake_bc, minutes_ago)
        fake_dataverse.changes = [self._row()]
        ctx = make_context()

        summary = asyncio.run(sync_premium_changes(ctx))

        assert summary["changed"] == 1
        assert summary["updated"] == 1
        assert summary["deltaLinkSaved"] is True
        stored = fake_bc.task(task["systemId"])
        assert stored["description"] == "Layout and survey"
        assert stored["percentComplete"] == 50
        assert stored["manualStartDate"] == "2025-02-04"
        assert stored["manualEndDate"] == "2025-02-10"
        assert stored["lastPlannerEtag"] == 'W/"9"'
        assert stored["syncLock"] is False
        assert asyncio.run(ctx.premium_writes.was_marked(task["systemId"].lower()))
        assert asyncio.run(ctx.deltas.get("msdyn_projecttasks")) == fake_dataverse.next_delta_link

    def test_stored_delta_link_is_resumed(self, fake_bc, fake_dataverse, make_context):
        from sync.premium_to_bc import sync_premium_changes

        ctx = make_context()
        asyncio.run(ctx.deltas.save("msdyn_projecttasks", "https://org.example/delta?$deltatoken=1"))

        asyncio.run(sync_premium_changes(ctx))

        assert fake_dataverse.delta_links_read == ["https://org.example/delta?$deltatoken=1"]

    def test_own_write_is_not_echoed(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        """A row BC just wrote is not applied back to BC."""
        from sync.premium_to_bc import sync_premium_changes

        self._linked_task(fake_bc, minutes_ago)
        fake_dataverse.changes = [self._row()]
        ctx = make_context()
        asyncio.run(ctx.bc_writes.mark([self.TASK_ID]))

        summary = asyncio.run(sync_premium_changes(ctx))

        assert summary["skipped"] == 1
        assert fake_bc.patches == []

    def test_bc_newer_wins_with_prefer_bc(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        from sync.premium_to_bc import sync_premium_changes

        self._linked_task(fake_bc, minutes_ago, systemModifiedAt=minutes_ago(1))
        fake_dataverse.changes = [self._row()]

        summary = asyncio.run(sync_premium_changes(make_context()))

        assert summary["skipped"] == 1
        assert fake_bc.patches == []

    def test_unchanged_row_is_skipped(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        from sync.premium_to_bc import sync_premium_changes

        self._linked_task(fake_bc, minutes_ago)
        fake_dataverse.changes = [
            self._row(
                msdyn_subject="Layout",
                msdyn_percentcomplete=0,
                msdyn_start="2025-02-03T12:00:00Z",
                msdyn_finish="2025-02-07T12:00:00Z",
                **{"@odata.etag": 'W/"1"'},
            )
        ]

        summary = asyncio.run(sync_premium_changes(make_context()))

        assert summary["skipped"] == 1
        assert fake_bc.patches == []

    def test_removed_row_clears_link(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        from sync.premium_to_bc import sync_premium_changes

        task = self._linked_task(fake_bc, minutes_ago)
        fake_dataverse.changes = [{"msdyn_projecttaskid": self.TASK_ID, "@removed": {"reason": "deleted"}}]

        summary = asyncio.run(sync_premium_changes(make_context()))

        assert summary["cleared"] == 1
        stored = fake_bc.task(task["systemId"])
        assert stored["plannerTaskId"] == ""
        assert stored["plannerPlanId"] == ""
        assert stored["lastPlannerEtag"] == ""

    def test_removed_row_ignored_when_configured(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        from sync.premium_to_bc import sync_premium_changes

        task = self._linked_task(fake_bc, minutes_ago)
        fake_dataverse.changes = [{"msdyn_projecttaskid": self.TASK_ID, "@removed": {"reason": "deleted"}}]

        summary = asyncio.run(sync_premium_changes(make_context(delete_behavior="ignore")))

        assert summary["skipped"] == 1
        assert fake_bc.task(task["systemId"])["plannerTaskId"] == self.TASK_ID

    def test_task_ids_apply_existing_row(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        """Webhook-driven runs ignore prefer-BC by default."""
        from sync.premium_to_bc import sync_premium_task_ids

        task = self._linked_task(fake_bc, minutes_ago, systemModifiedAt=minutes_ago(1))
        fake_dataverse.add_row("msdyn_projecttasks", **self._row())

        summary = asyncio.run(sync_premium_task_ids(make_context(), [self.TASK_ID, self.TASK_ID]))

        assert summary["taskIds"] == [self.TASK_ID]
        assert summary["updated"] == 1
        assert fake_bc.task(task["systemId"])["description"] == "Layout and survey"

    def test_task_ids_missing_row_clears_link(self, fake_bc, fake_dataverse, make_context, minutes_ago):
        from sync.premium_to_bc import sync_premium_task_ids

        task = self._linked_task(fake_bc, minutes_ago)

        summary = asyncio.run(sync_premium_task_ids(make_context(), [self.TASK_ID]))

        assert summary["cleared"] == 1
        assert fake_bc.task(task["systemId"])["plannerTaskId"] == ""

    def test_round_trip_does_not_echo(self, fake_bc, fake_dataverse, make_context):
        """Rows created by a BC pass come back on the feed and are skipped."""
        from sync.bc_to_premium import sync_bc_to_premium
        from sync.premium_to_bc import sync_premium_changes

        _seed_project(fake_bc)
        ctx = make_context()
        asyncio.run(sync_bc_to_premium(ctx, project_nos=["PR00042"]))
        patches = len(fake_bc.patches)
        fake_dataverse.changes = list(fake_dataverse.rows["msdyn_projecttasks"].values())

        summary = asyncio.run(sync_premium_changes(ctx))

        assert summary["changed"] == 3
        assert summary["updated"] == 0
        assert len(fake_bc.patches) == patches

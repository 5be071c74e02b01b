"""
Tests for the legacy BC <-> Planner mode.
"""

import asyncio

import pytest


class FakeGraph:
    """Plans, buckets and tasks held in dicts; every mutation is recorded."""

    def __init__(self):
        self.plans = {}
        self.buckets = {}
        self.tasks = {}
        self.details = {}
        self.task_updates = []
        self.detail_updates = []
        self.delta_pages = {}
        self.fail_create_plan = False
        self._n = 0

    def _id(self, prefix):
        self._n += 1
        return f"{prefix}-{self._n}"

    async def list_plans_for_group(self, group_id):
        return list(self.plans.values())

    async def get_plan(self, plan_id):
        return self.plans[plan_id]

    async def create_plan(self, group_id, title):
        if self.fail_create_plan:
            raise RuntimeError("Graph POST planner/plans -> 403: Forbidden")
        plan = {"id": self._id("plan"), "title": title, "owner": group_id}
        self.plans[plan["id"]] = plan
        return plan

    async def list_buckets(self, plan_id):
        return [b for b in self.buckets.values() if b["planId"] == plan_id]

    async def create_bucket(self, plan_id, name):
        bucket = {"id": self._id("bucket"), "planId": plan_id, "name": name}
        self.buckets[bucket["id"]] = bucket
        return bucket

    async def get_bucket(self, bucket_id):
        return self.buckets[bucket_id]

    async def create_task(self, payload):
        task = {"id": self._id("pt"), "@odata.etag": 'W/"1"', **payload}
        self.tasks[task["id"]] = task
        self.details[task["id"]] = {"@odata.etag": 'W/"d1"', "description": ""}
        return task

    async def get_task(self, task_id):
        if task_id not in self.tasks:
            raise RuntimeError(f"Graph GET planner/tasks/{task_id} -> 404: Not Found")
        return dict(self.tasks[task_id])

    async def get_task_details(self, task_id):
        return dict(self.details[task_id])

    async def update_task(self, task_id, payload, etag):
        self.task_updates.append((task_id, dict(payload), etag))
        self.tasks[task_id].update(payload)
        self.tasks[task_id]["@odata.etag"] = 'W/"2"'

    async def update_task_details(self, task_id, payload, etag):
        self.detail_updates.append((task_id, dict(payload), etag))
        self.details[task_id].update(payload)

    async def list_plan_tasks_delta(self, plan_id, delta_link=None):
        page = self.delta_pages.get(plan_id)
        if isinstance(page, Exception):
            raise page
        return page


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def planner_ctx(fake_bc, graph, kv, now_ms):
    from core.config import PlannerSyncConfig
    from sync.planner_sync import PlannerContext

    def build(**overrides):
        config = PlannerSyncConfig(group_id="group-1", **overrides)
        return PlannerContext(bc=fake_bc, graph=graph, kv=kv, config=config, clock=lambda: now_ms)

    return build


def _seed_project(fake_bc):
    fake_bc.add_project("PR00042", "Main Street Clinic")
    heading = fake_bc.add_task(taskNo="1000", description="JOB NAME", taskType="Heading")
    layout = fake_bc.add_task(
        taskNo="1010", description="Layout", taskType="Posting", percentComplete=100, startDate="2025-02-03", endDate="2025-02-07"
    )
    revenue = fake_bc.add_task(taskNo="3000", description="REVENUE", taskType="Heading")
    billing = fake_bc.add_task(taskNo="3010", description="Progress billing", taskType="Posting")
    return heading, layout, revenue, billing


class TestFieldMapping:
    """Pure helpers used by both directions."""

    @pytest.mark.parametrize(
        "description,expected",
        [
            ("job name", ("Pre-Construction", False)),
            ("Change Orders", ("Change Orders", False)),
            ("REVENUE", (None, True)),
            ("  ", ("General", False)),
            ("Site Work", ("Site Work", False)),
        ],
    )
    def test_bucket_from_heading(self, description, expected):
        from sync.planner_sync import resolve_bucket_from_heading

        assert resolve_bucket_from_heading(description) == expected

    def test_percent_buckets(self):
        from sync.planner_sync import to_bc_percent, to_planner_percent

        assert [to_planner_percent(v) for v in (None, 0, 1, 99, 100, 120)] == [0, 0, 50, 50, 100, 100]
        assert [to_bc_percent(v) for v in (None, 0, 49, 50, 100)] == [0, 0, 0, 50, 100]

    def test_planner_dates(self):
        from sync.planner_sync import normalize_date_only, to_planner_date

        assert to_planner_date("2025-02-03") == "2025-02-03T00:00:00.000Z"
        assert to_planner_date("2025-02-03T18:30:00Z") == "2025-02-03T00:00:00.000Z"
        assert to_planner_date("0001-01-01") is None
        assert to_planner_date("") is None
        assert normalize_date_only("2025-03-01T00:00:00Z") == "2025-03-01"

    def test_titles_and_description(self):
        from sync.planner_sync import build_planner_title, format_planner_description

        assert build_planner_title({"taskNo": "1010", "description": "Layout"}, "PR00042 - ") == "PR00042 - 1010 - Layout"
        assert build_planner_title({}) == "Untitled Task"
        description = format_planner_description({"projectNo": "PR00042", "taskNo": "1010", "budgetTotalCost": 0})
        assert description.splitlines()[:2] == ["ProjectNo: PR00042", "TaskNo: 1010"]
        assert "BudgetTotalCost: 0" in description

    def test_plan_urls(self):
        from core.config import PlannerSyncConfig
        from sync.planner_sync import build_planner_plan_url, resolve_planner_base_url

        assert build_planner_plan_url(None, "") is None
        assert build_planner_plan_url("p1", "", "tenant 1") == (
            "https://planner.cloud.microsoft/webui/plan/p1/view/board?tid=tenant%201"
        )
        assert build_planner_plan_url("p1", "https://planner.office.com") == "https://planner.office.com/plan/p1"
        base = resolve_planner_base_url(PlannerSyncConfig(tenant_domain="contoso.com"))
        assert build_planner_plan_url("p1", base) == "https://tasks.office.com/contoso.com/Home/PlanViews/p1"


class TestBcToPlanner:
    """Pushing BC posting tasks into plans and buckets."""

    def test_creates_plan_bucket_and_task(self, fake_bc, graph, planner_ctx):
        from sync.planner_sync import sync_bc_to_planner

        _, layout, _, billing = _seed_project(fake_bc)

        summary = asyncio.run(sync_bc_to_planner(planner_ctx(), project_no="PR00042"))

        assert summary["created"] == 1
        assert summary["tasks"] == 4
        plan_id = summary["plans"][0]["planId"]
        assert graph.plans[plan_id]["title"] == "PR00042"
        assert [b["name"] for b in graph.buckets.values()] == ["Pre-Construction"]
        created = next(iter(graph.tasks.values()))
        assert created["title"] == "1010 - Layout"
        assert created["percentComplete"] == 100
        assert created["startDateTime"] == "2025-02-03T00:00:00.000Z"
        assert graph.detail_updates[0][1]["description"].startswith("ProjectNo: PR00042")

        stored = fake_bc.task(layout["systemId"])
        assert stored["plannerTaskId"] == created["id"]
        assert stored["plannerPlanId"] == plan_id
        assert stored["plannerBucket"] == "Pre-Construction"
        assert stored["syncLock"] is False
        assert fake_bc.task(billing["systemId"])["plannerTaskId"] == ""

    def test_existing_plan_reused(self, fake_bc, graph, planner_ctx):
        from sync.planner_sync import sync_bc_to_planner

        _seed_project(fake_bc)
        graph.plans["plan-existing"] = {"id": "plan-existing", "title": "PR00042"}

        summary = asyncio.run(sync_bc_to_planner(planner_ctx(), project_no="PR00042"))

        assert summary["plans"][0]["planId"] == "plan-existing"
        assert len(graph.plans) == 1

    def test_default_plan_fallback_prefixes_titles(self, fake_bc, graph, planner_ctx):
        from sync.planner_sync import sync_bc_to_planner

        _seed_project(fake_bc)
        graph.fail_create_plan = True

        summary = asyncio.run(sync_bc_to_planner(planner_ctx(default_plan_id="plan-default"), project_no="PR00042"))

        assert summary["plans"][0]["planId"] == "plan-default"
        assert next(iter(graph.tasks.values()))["title"] == "PR00042 - 1010 - Layout"

    def test_plan_failure_without_fallback_raises(self, fake_bc, graph, planner_ctx):
        from core.observability import get_metrics
        from sync.planner_sync import sync_bc_to_planner

        _seed_project(fake_bc)
        graph.fail_create_plan = True

        with pytest.raises(RuntimeError, match="Plan creation failed"):
            asyncio.run(sync_bc_to_planner(planner_ctx(allow_default_plan_fallback=False), project_no="PR00042"))
        assert get_metrics().get_summary()["passes"]["by_direction"]["bcToPlanner"]["failed"] == 1

    def test_single_plan_requires_default(self, fake_bc, planner_ctx):
        from sync.planner_sync import sync_bc_to_planner

        _seed_project(fake_bc)

        with pytest.raises(ValueError):
            asyncio.run(sync_bc_to_planner(planner_ctx(sync_mode="singlePlan"), project_no="PR00042"))

    def test_linked_task_is_updated_with_stored_etag(self, fake_bc, graph, planner_ctx):
        from sync.planner_sync import sync_bc_to_planner

        _, layout, _, _ = _seed_project(fake_bc)
        graph.plans["plan-1"] = {"id": "plan-1", "title": "PR00042"}
        bucket = asyncio.run(graph.create_bucket("plan-1", "Pre-Construction"))
        asyncio.run(graph.create_task({"planId": "plan-1", "bucketId": bucket["id"], "title": "1010 - Layout"}))
        planner_id = next(iter(graph.tasks))
        fake_bc.task(layout["systemId"]).update(
            plannerTaskId=planner_id, plannerPlanId="plan-1", lastPlannerEtag='W/"1"'
        )

        summary = asyncio.run(sync_bc_to_planner(planner_ctx(), project_no="PR00042"))

        assert summary["updated"] == 1
        task_id, changes, etag = graph.task_updates[0]
        assert (task_id, etag) == (planner_id, 'W/"1"')
        assert changes["percentComplete"] == 100
        assert "title" not in changes
        assert fake_bc.task(layout["systemId"])["lastPlannerEtag"] == 'W/"2"'

    def test_fresh_lock_skips_task(self, fake_bc, graph, planner_ctx, minutes_ago):
        from sync.planner_sync import sync_bc_to_planner

        _, layout, _, _ = _seed_project(fake_bc)
        fake_bc.task(layout["systemId"]).update(syncLock=True, lastSyncAt=minutes_ago(2))

        summary = asyncio.run(sync_bc_to_planner(planner_ctx(), project_no="PR00042"))

        assert summary["skipped"] == 1
        assert graph.tasks == {}


class TestPlannerToBc:
    """Applying Planner changes to linked BC tasks."""

    def _linked(self, fake_bc, graph, **planner_fields):
        bucket = asyncio.run(graph.create_bucket("plan-1", "Installation"))
        planner = asyncio.run(
            graph.create_task({"planId": "plan-1", "bucketId": bucket["id"], "title": "1010 - Layout", **planner_fields})
        )
        graph.tasks[planner["id"]]["@odata.etag"] = 'W/"5"'
        bc_task = fake_bc.add_task(
            taskNo="1010",
            percentComplete=0,
            startDate=None,
            endDate=None,
            plannerTaskId=planner["id"],
            plannerPlanId="plan-1",
            lastPlannerEtag='W/"1"',
        )
        return bc_task, planner

    def test_notification_applies_changes(self, fake_bc, graph, planner_ctx):
        from sync.planner_sync import sync_planner_notification

        bc_task, planner = self._linked(
            fake_bc, graph, percentComplete=50, startDateTime="2025-03-01T00:00:00Z", dueDateTime="2025-03-05T00:00:00Z"
        )

        outcome = asyncio.run(sync_planner_notification(planner_ctx(), {"taskId": planner["id"]}))

        assert outcome == "updated"
        stored = fake_bc.task(bc_task["systemId"])
        assert stored["percentComplete"] == 50
        assert stored["startDate"] == "2025-03-01"
        assert stored["endDate"] == "2025-03-05"
        assert stored["plannerBucket"] == "Installation"
        assert stored["lastPlannerEtag"] == 'W/"5"'
        assert stored["lastSyncAt"] == "2025-01-15T12:00:00.000Z"

    def test_unchanged_etag_and_unknown_task_skip(self, fake_bc, graph, planner_ctx):
        from sync.planner_sync import sync_planner_notification

        bc_task, planner = self._linked(fake_bc, graph)
        fake_bc.task(bc_task["systemId"])["lastPlannerEtag"] = 'W/"5"'
        ctx = planner_ctx()

        assert asyncio.run(sync_planner_notification(ctx, {"taskId": planner["id"]})) == "skipped"
        assert asyncio.run(sync_planner_notification(ctx, {"taskId": "pt-unknown"})) == "skipped"
        assert fake_bc.patches == []

    def test_deleted_planner_task_is_skipped(self, fake_bc, graph, planner_ctx):
        from sync.planner_sync import sync_planner_notification

        _, planner = self._linked(fake_bc, graph)
        del graph.tasks[planner["id"]]

        assert asyncio.run(sync_planner_notification(planner_ctx(), {"taskId": planner["id"]})) == "skipped"

    def test_queue_drains_and_counts_errors(self, fake_bc, graph, planner_ctx):
        from sync.planner_sync import enqueue_and_process_notifications

        _, planner = self._linked(fake_bc, graph, percentComplete=100)

        async def broken(planner_task_id):
            if planner_task_id == "pt-broken":
                raise RuntimeError("BC GET projectTasks -> 500")
            return await original(planner_task_id)

        original = fake_bc.find_project_task_by_planner_task_id
        fake_bc.find_project_task_by_planner_task_id = broken
        ctx = planner_ctx()

        counts = asyncio.run(
            enqueue_and_process_notifications(ctx, [{"taskId": planner["id"]}, {"taskId": "pt-broken"}])
        )

        assert counts == {"processed": 1, "errors": 1}
        assert asyncio.run(ctx.kv.lrange("planner:notifications", 0, -1)) == []

    def test_polling_uses_delta_feed(self, fake_bc, graph, planner_ctx):
        from sync.planner_sync import run_planner_polling_sync

        bc_task, planner = self._linked(fake_bc, graph, percentComplete=100)
        fake_bc.add_task(taskNo="1020", plannerTaskId="pt-untouched", plannerPlanId="plan-1")
        graph.delta_pages["plan-1"] = {"value": [{"id": planner["id"]}], "next_link": None, "delta_link": "delta-2"}
        ctx = planner_ctx()

        summary = asyncio.run(run_planner_polling_sync(ctx))

        assert summary["mode"] == "delta"
        assert summary["total"] == 2
        assert summary["processed"] == 1
        assert fake_bc.task(bc_task["systemId"])["percentComplete"] == 100
        assert asyncio.run(ctx.deltas.get("plan-1")) == "delta-2"

    def test_polling_falls_back_to_last_sync_window(self, fake_bc, graph, planner_ctx, minutes_ago):
        from sync.planner_sync import run_planner_polling_sync

        stale, planner = self._linked(fake_bc, graph, percentComplete=50)
        fake_bc.task(stale["systemId"])["lastSyncAt"] = minutes_ago(60)
        fake_bc.add_task(taskNo="1020", plannerTaskId="pt-recent", plannerPlanId="plan-1", lastSyncAt=minutes_ago(2))
        graph.delta_pages["plan-1"] = RuntimeError("Graph delta -> 400: Bad Request")
        ctx = planner_ctx()

        summary = asyncio.run(run_planner_polling_sync(ctx))

        assert summary["mode"] == "poll"
        assert summary["processed"] == 1
        assert summary["errors"] == 0
        assert fake_bc.task(stale["systemId"])["percentComplete"] == 50

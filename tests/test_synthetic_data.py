from __future__ import annotations

import asyncio
import csv
import io
import json
from uuid import uuid4

import pytest

from testdata_lifecycle.core.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from testdata_lifecycle.db.models import SyntheticDataTemplate
from testdata_lifecycle.services.field_generators import default_registry
from testdata_lifecycle.services.synthetic_data import SyntheticDataGenerator, TemplateService, render_records

from conftest import ALICE, BOB

ORDER_SCHEMA = {
    "order_id": {"generator": "sequence", "start": 1},
    "customer": {"generator": "faker", "provider": "name"},
    "amount": {"generator": "float", "min": 1, "max": 100, "precision": 2},
    "status": {"generator": "choice", "choices": ["new", "paid"]},
}


def template_payload(**overrides):
    payload = {"name": "orders", "schema_descriptor": ORDER_SCHEMA}
    payload.update(overrides)
    return payload


class TestTemplateService:
    @pytest.mark.asyncio
    async def test_create_and_get(self, templates):
        template = await templates.create_template(ALICE, template_payload(seed=3, output_format="csv"))
        assert template.owner_id == ALICE
        assert template.output_format == "csv"
        assert template.seed == 3
        assert (await templates.get_template(template.id, ALICE)).id == template.id

    @pytest.mark.asyncio
    async def test_duplicate_name_conflicts(self, templates):
        await templates.create_template(ALICE, template_payload())
        with pytest.raises(ConflictError):
            await templates.create_template(ALICE, template_payload())
        assert (await templates.create_template(BOB, template_payload())).owner_id == BOB

    @pytest.mark.asyncio
    async def test_inconsistent_descriptor_rejected(self, templates):
        with pytest.raises(ValidationError) as exc_info:
            await templates.create_template(
                ALICE, template_payload(schema_descriptor={"email": {"generator": "template", "pattern": "{user}"}})
            )
        assert "references undefined field 'user'" in str(exc_info.value)
        assert await templates.list_templates(ALICE) == []

    @pytest.mark.asyncio
    async def test_owner_scoping_and_delete(self, templates):
        template = await templates.create_template(ALICE, template_payload())
        template_id = template.id
        with pytest.raises(NotFoundError):
            await templates.get_template(template_id, BOB)
        with pytest.raises(NotFoundError):
            await templates.delete_template(template_id, BOB)
        await templates.delete_template(template_id, ALICE)
        with pytest.raises(NotFoundError):
            await templates.get_template(template_id, ALICE)


class TestGenerate:
    @pytest.mark.asyncio
    async def test_generate_into_repository(self, store, templates, generator, make_repository):
        repo = await make_repository(records=[{"order_id": 0}])
        template = await templates.create_template(ALICE, template_payload())

        report = await generator.generate(template.id, repo.id, 25, ALICE, seed=11)
        assert report.requested == 25
        assert report.written == 25
        assert report.failed == 0
        assert report.cancelled is False
        assert report.seed == 11

        records = await store.list_records(repo.id, ALICE)
        assert len(records) == 26
        assert records[0] == {"order_id": 0}
        assert [r["order_id"] for r in records[1:]] == list(range(1, 26))

    @pytest.mark.asyncio
    async def test_same_seed_reproduces_records(self, store, templates, generator, make_repository):
        a = await make_repository(name="a")
        b = await make_repository(name="b")
        template = await templates.create_template(ALICE, template_payload())

        await generator.generate(template.id, a.id, 12, ALICE, seed=99)
        await generator.generate(template.id, b.id, 12, ALICE, seed=99)
        assert await store.list_records(a.id, ALICE) == await store.list_records(b.id, ALICE)

    @pytest.mark.asyncio
    async def test_seed_is_reported_when_chosen(self, store, templates, generator, make_repository):
        a = await make_repository(name="a")
        b = await make_repository(name="b")
        template = await templates.create_template(ALICE, template_payload())

        first = await generator.generate(template.id, a.id, 5, ALICE)
        assert isinstance(first.seed, int)
        await generator.generate(template.id, b.id, 5, ALICE, seed=first.seed)
        assert await store.list_records(a.id, ALICE) == await store.list_records(b.id, ALICE)

    @pytest.mark.asyncio
    async def test_template_default_seed(self, templates, generator, make_repository):
        repo = await make_repository()
        template = await templates.create_template(ALICE, template_payload(seed=1234))
        report = await generator.generate(template.id, repo.id, 1, ALICE)
        assert report.seed == 1234

    @pytest.mark.asyncio
    async def test_failing_records_are_counted_not_fatal(self, session, store, app_settings, make_repository):
        registry = default_registry()

        def flaky(spec, ctx):
            if ctx.index in (10, 50, 90):
                raise RuntimeError(f"bad row {ctx.index}")
            return ctx.index

        registry.register("flaky", flaky)
        templates = TemplateService(session, registry=registry)
        generator = SyntheticDataGenerator(session, registry=registry, settings=app_settings)
        repo = await make_repository()
        template = await templates.create_template(
            ALICE, template_payload(schema_descriptor={"n": {"generator": "flaky"}})
        )

        report = await generator.generate(template.id, repo.id, 100, ALICE, seed=1)
        assert report.written == 97
        assert report.failed == 3
        assert report.errors == {10: "n: bad row 10", 50: "n: bad row 50", 90: "n: bad row 90"}
        assert await store.count_records(repo.id, ALICE) == 97

    @pytest.mark.asyncio
    async def test_cancel_keeps_generated_records(self, session, store, app_settings, make_repository):
        registry = default_registry()
        cancel = asyncio.Event()

        def tripwire(spec, ctx):
            if ctx.index == 15:
                cancel.set()
            return ctx.index

        registry.register("tripwire", tripwire)
        templates = TemplateService(session, registry=registry)
        generator = SyntheticDataGenerator(session, registry=registry, settings=app_settings)
        repo = await make_repository()
        template = await templates.create_template(
            ALICE, template_payload(schema_descriptor={"n": {"generator": "tripwire"}})
        )

        report = await generator.generate(template.id, repo.id, 100, ALICE, seed=1, cancel_event=cancel)
        assert report.cancelled is True
        assert report.written == 16
        assert [r["n"] for r in await store.list_records(repo.id, ALICE)] == list(range(16))

    @pytest.mark.asyncio
    async def test_invalid_stored_schema_fails_before_writing(self, session, store, generator, make_repository):
        repo = await make_repository()
        template = SyntheticDataTemplate(
            owner_id=ALICE, name="broken", schema_descriptor={"x": {"generator": "nope"}}, output_format="json"
        )
        session.add(template)
        await session.commit()

        with pytest.raises(ValidationError):
            await generator.generate(template.id, repo.id, 10, ALICE)
        assert await store.count_records(repo.id, ALICE) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [-1, 1001])
    async def test_count_bounds(self, templates, generator, make_repository, count):
        repo = await make_repository()
        template = await templates.create_template(ALICE, template_payload())
        with pytest.raises(ValidationError):
            await generator.generate(template.id, repo.id, count, ALICE)

    @pytest.mark.asyncio
    async def test_zero_count(self, templates, generator, make_repository):
        repo = await make_repository()
        template = await templates.create_template(ALICE, template_payload())
        report = await generator.generate(template.id, repo.id, 0, ALICE)
        assert report.written == 0

    @pytest.mark.asyncio
    async def test_inactive_repository_refused(self, store, templates, generator, make_repository):
        repo = await make_repository()
        repo_id = repo.id
        template = await templates.create_template(ALICE, template_payload())
        template_id = template.id
        await store.update_status(repo_id, "archived", ALICE)
        with pytest.raises(InvalidTransitionError):
            await generator.generate(template_id, repo_id, 5, ALICE)
        assert await store.count_records(repo_id, ALICE) == 0

    @pytest.mark.asyncio
    async def test_ownership_enforced(self, templates, generator, make_repository):
        bobs = await make_repository(name="bobs", owner=BOB)
        template = await templates.create_template(ALICE, template_payload())
        with pytest.raises(NotFoundError):
            await generator.generate(template.id, bobs.id, 5, ALICE)
        with pytest.raises(NotFoundError):
            await generator.generate(template.id, bobs.id, 5, BOB)
        with pytest.raises(NotFoundError):
            await generator.generate(uuid4(), bobs.id, 5, BOB)


class TestPreviewAndRender:
    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, store, templates, generator, make_repository):
        repo = await make_repository()
        template = await templates.create_template(ALICE, template_payload(output_format="ndjson"))
        text = generator.preview(template, 3, seed=5)
        lines = text.splitlines()
        assert len(lines) == 3
        assert [json.loads(line)["order_id"] for line in lines] == [1, 2, 3]
        assert await store.count_records(repo.id, ALICE) == 0

    def test_render_json(self):
        assert json.loads(render_records([{"a": 1}], "json")) == [{"a": 1}]

    def test_render_csv(self):
        text = render_records([{"a": 1, "b": None}, {"a": 2, "c": {"x": 1}}], "csv")
        rows = list(csv.DictReader(io.StringIO(text)))
        assert rows[0] == {"a": "1", "b": "", "c": ""}
        assert rows[1] == {"a": "2", "b": "", "c": '{"x": 1}'}

    def test_render_unknown_format(self):
        with pytest.raises(ValueError):
            render_records([], "xml")
